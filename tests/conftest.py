import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_token, hash_password
from chat import ChatHub, ChatStore
from database import get_db
from errors import EmailDeliveryError
from mailer import get_mailer
from main import app
from payments import get_payment_gateway
from schemas import new_user

PASSWORD = "secret123"
PASSWORD_HASH = hash_password(PASSWORD)

ADDRESS = {
    "street": "12 Bole Road",
    "city": "Addis Ababa",
    "state": "AA",
    "postal_code": "1000",
    "country": "Ethiopia",
}


class RecordingMailer:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send_order_confirmation(self, email, order):
        if self.fail:
            raise EmailDeliveryError("Failed to send order confirmation email: connection refused")
        self.sent.append((email, order))


class FakeGateway:
    def __init__(self):
        self.status = "succeeded"

    def intent_succeeded(self, intent_id):
        return self.status == "succeeded"

    def create_intent(self, amount):
        return f"pi_test_secret_{int(amount)}"


@pytest.fixture
def db():
    return mongomock.MongoClient().storefront


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, mailer, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.state.chat_store = ChatStore()
    app.state.chat_hub = ChatHub()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(name, email, role="user", referral_code=None):
        user = new_user(name, email, password=PASSWORD_HASH, role=role, referral_code=referral_code)
        user_id = db["user"].insert_one(user.model_dump()).inserted_id
        return db["user"].find_one({"_id": user_id})
    return _make


def auth(user):
    return {"Authorization": f"Bearer {create_token(user)}"}


@pytest.fixture
def buyer(make_user):
    return make_user("Abebe Kebede", "abebe@shopper.io")


@pytest.fixture
def admin(make_user):
    return make_user("Store Admin", "admin@shopper.io", role="admin")


@pytest.fixture
def make_product(db):
    def _make(name, price, stock=10, category="shirts"):
        product = {
            "name": name,
            "description": "",
            "price": price,
            "image": "",
            "category": category,
            "stock": stock,
            "low_stock_threshold": 5,
            "reviews": [],
        }
        return db["product"].insert_one(product).inserted_id
    return _make


@pytest.fixture
def make_bundle(db):
    def _make(product_ids, discount):
        bundle = {
            "name": "Starter pack",
            "description": "Two essentials",
            "products": [str(p) for p in product_ids],
            "discount": discount,
            "price": 0,
        }
        return db["bundle"].insert_one(bundle).inserted_id
    return _make
