import logging
import os
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from auth import Identity, check_password, create_token, decode_token, get_current_user, hash_password, require_admin
from chat import ChatHub, ChatStore, get_chat_hub, get_chat_store
from checkout import (
    CheckoutBody,
    cancel_order,
    fetch_by_ids,
    place_order,
    populate_order,
    populate_orders,
    update_order_status,
)
from database import as_utc, create_document, get_db, get_documents, now_utc, oid, serialize
from errors import Forbidden, NotFound, StoreError, Unauthorized, ValidationFailed
from mailer import Mailer, get_mailer
from payments import PaymentGateway, get_payment_gateway
from schemas import (
    Activity,
    Bundle,
    CartItem,
    Category,
    Discount,
    Feedback,
    Notification,
    Product,
    ProductUpdate,
    Referral,
    ReturnRequest,
    Review,
    Support,
    generate_referral_code,
    new_user,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.chat_store = ChatStore()
app.state.chat_hub = ChatHub()

# ---------------------- Errors ----------------------

@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message, **serialize(exc.extra)})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"message": "Invalid request data", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("%s %s error", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})

# ---------------------- Utilities ----------------------

def owner_or_admin(user: Identity, owner_id: Optional[str]):
    if user.id != owner_id and not user.is_admin:
        raise Forbidden("Not authorized")


def notify(db: Database, user_id: str, message: str):
    create_document(db, "notification", Notification(user_id=user_id, message=message))


def log_activity(db: Database, user_id: str, action: str, details: Optional[str] = None):
    create_document(db, "activity", Activity(user_id=user_id, action=action, details=details))


def find_or_404(db: Database, collection: str, id_str: str, message: str, projection=None) -> Dict[str, Any]:
    doc = db[collection].find_one({"_id": oid(id_str)}, projection)
    if not doc:
        raise NotFound(message)
    return doc


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role"),
        "referral_code": user.get("referral_code"),
    }

# ---------------------- Root & Health ----------------------

@app.get("/")
def read_root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            try:
                response["collections"] = database.db.list_collection_names()
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response

# ---------------------- Users & Auth ----------------------

class RegisterBody(BaseModel):
    name: str
    email: EmailStr
    password: str
    referral_code: Optional[str] = None


class LoginBody(BaseModel):
    email: str
    password: str


class ProfileBody(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None


class AdminUserBody(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[str] = None


@app.post("/api/users/register")
def register(body: RegisterBody, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": body.email}):
        raise ValidationFailed("User already exists")

    user = new_user(body.name, body.email, password=hash_password(body.password))
    while db["user"].find_one({"referral_code": user.referral_code}):
        user.referral_code = generate_referral_code(body.name)
    user_id = create_document(db, "user", user)

    if body.referral_code:
        referrer = db["user"].find_one({"referral_code": body.referral_code})
        if referrer:
            create_document(db, "referral", Referral(
                referrer_id=str(referrer["_id"]), referee_id=user_id, referral_code=body.referral_code,
            ))
            db["user"].update_one({"_id": referrer["_id"]}, {"$push": {"referred_users": user_id}})
            logger.info("User %s registered with referral code %s", user_id, body.referral_code)

    doc = db["user"].find_one({"_id": oid(user_id)})
    return {"token": create_token(doc), "user": public_user(doc)}


@app.post("/api/users/login")
def login(body: LoginBody, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": body.email})
    if not user or not check_password(body.password, user.get("password")):
        raise ValidationFailed("Invalid credentials")
    log_activity(db, str(user["_id"]), "login")
    return {"token": create_token(user), "user": public_user(user)}


def _profile(db: Database, user_id: str) -> Dict[str, Any]:
    user = find_or_404(db, "user", user_id, "User not found", {"password": 0})
    referred = fetch_by_ids(db, "user", user.get("referred_users", []), {"name": 1, "email": 1})
    user["referred_users"] = list(referred.values())
    return serialize(user)


@app.get("/api/users/profile")
def get_profile(user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    return _profile(db, user.id)


@app.put("/api/users/profile")
def update_profile(body: ProfileBody, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    find_or_404(db, "user", user.id, "User not found")
    changes: Dict[str, Any] = {}
    if body.name:
        changes["name"] = body.name
    if body.email:
        changes["email"] = body.email
    if body.password:
        changes["password"] = hash_password(body.password)
    if changes:
        db["user"].update_one({"_id": oid(user.id)}, {"$set": changes})
    return _profile(db, user.id)


@app.get("/api/users")
def list_users(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    return [serialize(u) for u in db["user"].find({}, {"password": 0})]


@app.put("/api/users/apply-referral-discount")
def apply_referral_discount(user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    doc = find_or_404(db, "user", user.id, "User not found")
    discount = doc.get("referral_discount") or 0
    if discount <= 0:
        raise ValidationFailed("No referral discount available")
    db["user"].update_one({"_id": doc["_id"]}, {"$set": {"referral_discount": 0}})
    log_activity(db, user.id, "Referral Discount Applied", f"Applied {discount}% discount to next order")
    return {"message": "Referral discount applied", "discount": discount}


@app.put("/api/users/{user_id}")
def admin_update_user(user_id: str, body: AdminUserBody, admin: Identity = Depends(require_admin),
                      db: Database = Depends(get_db)):
    user = find_or_404(db, "user", user_id, "User not found")
    if body.role and body.role not in ("user", "admin"):
        raise ValidationFailed("Role must be user or admin")
    changes = {k: v for k, v in body.model_dump().items() if v}
    if changes:
        db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    return serialize(db["user"].find_one({"_id": user["_id"]}, {"password": 0}))


@app.delete("/api/users/me")
def delete_me(user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    doc = find_or_404(db, "user", user.id, "User not found")
    logger.info("Deleting account %s and associated data", user.id)
    db["user"].delete_one({"_id": doc["_id"]})
    db["order"].delete_many({"user_id": user.id})
    db["notification"].delete_many({"user_id": user.id})
    db["activity"].delete_many({"user_id": user.id})
    db["referral"].delete_many({"$or": [{"referrer_id": user.id}, {"referee_id": user.id}]})
    for product in db["product"].find({"reviews.user_id": user.id}, {"reviews": 1}):
        kept = [r for r in product.get("reviews", []) if r.get("user_id") != user.id]
        db["product"].update_one({"_id": product["_id"]}, {"$set": {"reviews": kept}})
    return {"message": "Account and associated data deleted successfully"}


@app.delete("/api/users/{user_id}")
def admin_delete_user(user_id: str, admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    user = find_or_404(db, "user", user_id, "User not found")
    db["user"].delete_one({"_id": user["_id"]})
    return {"message": "User deleted successfully"}

# ---------------------- Products & Reviews ----------------------

class ReviewBody(BaseModel):
    rating: int
    comment: str


def _rating_stats(reviews: List[Dict[str, Any]]) -> Dict[str, Any]:
    approved = [r for r in reviews if not r.get("pending")]
    distribution = [0, 0, 0, 0, 0]
    for r in approved:
        if 1 <= r.get("rating", 0) <= 5:
            distribution[r["rating"] - 1] += 1
    average = round(sum(r["rating"] for r in approved) / len(approved), 1) if approved else 0
    return {"total_reviews": len(approved), "average_rating": average, "rating_distribution": distribution}


@app.get("/api/products")
def list_products(category: Optional[str] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, min_stock: Optional[int] = None,
                  max_stock: Optional[int] = None, sort: Optional[str] = None, search: Optional[str] = None,
                  db: Database = Depends(get_db)):
    filt: Dict[str, Any] = {}
    if category:
        filt["category"] = category
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond
    stock_cond = {}
    if min_stock is not None:
        stock_cond["$gte"] = min_stock
    if max_stock is not None:
        stock_cond["$lte"] = max_stock
    if stock_cond:
        filt["stock"] = stock_cond
    if search:
        filt["name"] = {"$regex": re.escape(search), "$options": "i"}

    products = [serialize(p) for p in db["product"].find(filt)]
    if sort == "price":
        products.sort(key=lambda p: p.get("price") or 0)
    elif sort == "name":
        products.sort(key=lambda p: (p.get("name") or "").lower())
    elif sort == "stock":
        products.sort(key=lambda p: p.get("stock") or 0)
    return products


@app.get("/api/products/analytics")
def product_analytics(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    stats = []
    for product in db["product"].find({}, {"name": 1, "reviews": 1}):
        reviews = product.get("reviews", [])
        average = round(sum(r.get("rating", 0) for r in reviews) / len(reviews), 1) if reviews else 0
        stats.append({"name": product.get("name"), "review_count": len(reviews), "average_rating": average})
    return stats


@app.get("/api/products/sales-analytics")
def sales_analytics(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    orders = populate_orders(db, list(db["order"].find()), product_fields=("category", "price"))
    by_category: Dict[str, Dict[str, float]] = {}
    for order in orders:
        for item in order.get("items", []):
            product = item.get("product")
            if not product or not product.get("category"):
                logger.warning("Skipping item without product/category in order %s", order["_id"])
                continue
            sales = by_category.setdefault(product["category"], {"total_sales": 0, "total_revenue": 0.0})
            quantity = item.get("quantity") or 0
            sales["total_sales"] += quantity
            sales["total_revenue"] += quantity * (product.get("price") or 0)
    return [
        {"category": c, "total_sales": s["total_sales"], "total_revenue": round(s["total_revenue"], 2)}
        for c, s in by_category.items()
    ]


@app.get("/api/products/recommendations")
def recommendations(user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    orders = populate_orders(db, list(db["order"].find({"user_id": user.id})), product_fields=("category",))
    ordered_ids, categories = set(), set()
    for order in orders:
        for item in order.get("items", []):
            if item.get("product"):
                ordered_ids.add(item["product"]["_id"])
                categories.add(item["product"].get("category"))

    picks: List[Dict[str, Any]] = []
    if categories:
        picks = list(db["product"].find({
            "category": {"$in": list(categories)},
            "_id": {"$nin": [ObjectId(i) for i in ordered_ids]},
        }).limit(5))

    if len(picks) < 5:
        seen = ordered_ids | {str(p["_id"]) for p in picks}
        popular = [p for p in db["product"].find() if str(p["_id"]) not in seen]
        popular.sort(key=lambda p: (len(p.get("reviews", [])), _rating_stats(p.get("reviews", []))["average_rating"]),
                     reverse=True)
        picks.extend(popular[:5 - len(picks)])

    return [
        {k: v for k, v in serialize(p).items() if k in ("_id", "name", "category", "price", "image")}
        for p in picks
    ]


@app.get("/api/products/related/{pid}")
def related_products(pid: str, db: Database = Depends(get_db)):
    product = find_or_404(db, "product", pid, "Product not found")
    related = db["product"].find({"category": product.get("category"), "_id": {"$ne": product["_id"]}}).limit(3)
    return [serialize(p) for p in related]


@app.get("/api/products/{pid}")
def get_product(pid: str, db: Database = Depends(get_db)):
    if not ObjectId.is_valid(pid):
        raise ValidationFailed("Invalid product ID format")
    product = find_or_404(db, "product", pid, "Product not found")
    out = serialize(product)
    out["rating_stats"] = _rating_stats(product.get("reviews", []))
    return out


@app.post("/api/products", status_code=201)
def admin_create_product(body: Product, admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    product_id = create_document(db, "product", body)
    return serialize(db["product"].find_one({"_id": oid(product_id)}))


@app.post("/api/products/{pid}/reviews", status_code=201)
def add_review(pid: str, body: ReviewBody, user: Identity = Depends(get_current_user),
               db: Database = Depends(get_db)):
    product = find_or_404(db, "product", pid, "Product not found")
    review = Review(user_id=user.id, rating=body.rating, comment=body.comment).model_dump()
    review["_id"] = ObjectId()
    db["product"].update_one({"_id": product["_id"]}, {"$push": {"reviews": review}})
    notify(db, user.id, f'Your review for "{product.get("name")}" has been submitted and is awaiting approval.')
    return serialize(review)


@app.put("/api/products/{pid}/reviews/{rid}/approve")
def approve_review(pid: str, rid: str, admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    product = find_or_404(db, "product", pid, "Product not found")
    reviews = product.get("reviews", [])
    review = next((r for r in reviews if str(r.get("_id")) == rid), None)
    if review is None:
        raise NotFound("Review not found")
    review["pending"] = False
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"reviews": reviews}})
    notify(db, review["user_id"], f'Your review for "{product.get("name")}" has been approved!')
    return serialize(review)


@app.put("/api/products/{pid}")
def admin_update_product(pid: str, body: ProductUpdate, admin: Identity = Depends(require_admin),
                         db: Database = Depends(get_db)):
    product = find_or_404(db, "product", pid, "Product not found")
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if changes:
        db["product"].update_one({"_id": product["_id"]}, {"$set": changes})
    updated = db["product"].find_one({"_id": product["_id"]})

    threshold = updated.get("low_stock_threshold", 5)
    if updated.get("stock", 0) < threshold:
        for admin_user in db["user"].find({"role": "admin"}, {"_id": 1}):
            notify(db, str(admin_user["_id"]),
                   f'Product "{updated.get("name")}" stock is low ({updated.get("stock")} units remaining).')
    return serialize(updated)


@app.delete("/api/products/{pid}")
def admin_delete_product(pid: str, admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    product = find_or_404(db, "product", pid, "Product not found")
    db["product"].delete_one({"_id": product["_id"]})
    return {"message": "Product deleted"}

# ---------------------- Categories ----------------------

class CategoryBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


@app.get("/api/categories")
def list_categories(db: Database = Depends(get_db)):
    return get_documents(db, "category")


@app.post("/api/categories", status_code=201)
def admin_add_category(body: CategoryBody, admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    if not body.name:
        raise ValidationFailed("Category name is required")
    category_id = create_document(db, "category", Category(name=body.name, description=body.description))
    return serialize(db["category"].find_one({"_id": oid(category_id)}))


@app.put("/api/categories/{cid}")
def admin_update_category(cid: str, body: CategoryBody, admin: Identity = Depends(require_admin),
                          db: Database = Depends(get_db)):
    if not body.name:
        raise ValidationFailed("Category name is required")
    category = find_or_404(db, "category", cid, "Category not found")
    db["category"].update_one({"_id": category["_id"]}, {"$set": {"name": body.name, "description": body.description}})
    return serialize(db["category"].find_one({"_id": category["_id"]}))


@app.delete("/api/categories/{cid}")
def admin_delete_category(cid: str, admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    category = find_or_404(db, "category", cid, "Category not found")
    db["category"].delete_one({"_id": category["_id"]})
    return {"message": "Category deleted"}

# ---------------------- Bundles ----------------------

class BundleBody(BaseModel):
    name: str
    description: str
    products: List[str]
    discount: float


def _build_bundle(db: Database, body: BundleBody) -> Bundle:
    found = fetch_by_ids(db, "product", body.products, {"price": 1})
    if len(found) != len(body.products):
        raise ValidationFailed("One or more products not found")
    total_price = sum(p.get("price") or 0 for p in found.values())
    return Bundle(
        name=body.name,
        description=body.description,
        products=body.products,
        discount=body.discount,
        price=round(total_price * (1 - body.discount / 100), 2),
    )


@app.get("/api/bundles")
def list_bundles(db: Database = Depends(get_db)):
    bundles = list(db["bundle"].find())
    product_ids = {pid for b in bundles for pid in b.get("products", [])}
    products = fetch_by_ids(db, "product", product_ids, {"name": 1, "price": 1, "image": 1, "category": 1})
    out = []
    for bundle in bundles:
        doc = serialize(bundle)
        doc["products"] = [serialize(products[p]) for p in bundle.get("products", []) if p in products]
        out.append(doc)
    return out


@app.post("/api/bundles", status_code=201)
def admin_create_bundle(body: BundleBody, admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    bundle_id = create_document(db, "bundle", _build_bundle(db, body))
    return serialize(db["bundle"].find_one({"_id": oid(bundle_id)}))


@app.put("/api/bundles/{bid}")
def admin_update_bundle(bid: str, body: BundleBody, admin: Identity = Depends(require_admin),
                        db: Database = Depends(get_db)):
    bundle = find_or_404(db, "bundle", bid, "Bundle not found")
    changes = _build_bundle(db, body).model_dump(exclude={"created_at"})
    db["bundle"].update_one({"_id": bundle["_id"]}, {"$set": changes})
    return serialize(db["bundle"].find_one({"_id": bundle["_id"]}))


@app.delete("/api/bundles/{bid}")
def admin_delete_bundle(bid: str, admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    bundle = find_or_404(db, "bundle", bid, "Bundle not found")
    db["bundle"].delete_one({"_id": bundle["_id"]})
    return {"message": "Bundle deleted successfully"}

# ---------------------- Discounts ----------------------

class DiscountBody(BaseModel):
    code: Optional[str] = None
    percentage: Optional[float] = None
    expires_at: Optional[datetime] = None


class DiscountCodeBody(BaseModel):
    code: Optional[str] = None


def _valid_percentage(value: Optional[float]) -> bool:
    return value is not None and 0 <= value <= 100


@app.get("/api/discounts")
def admin_list_discounts(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    return get_documents(db, "discount")


@app.post("/api/discounts", status_code=201)
def admin_create_discount(body: DiscountBody, admin: Identity = Depends(require_admin),
                          db: Database = Depends(get_db)):
    if not body.code or not _valid_percentage(body.percentage):
        raise ValidationFailed("Valid code and percentage (0-100) required")
    code = body.code.strip().upper()
    if db["discount"].find_one({"code": code}):
        raise ValidationFailed("Discount code already exists")
    discount_id = create_document(db, "discount", Discount(
        code=code, percentage=body.percentage, expires_at=body.expires_at,
    ))
    return serialize(db["discount"].find_one({"_id": oid(discount_id)}))


@app.put("/api/discounts/{did}")
def admin_update_discount(did: str, body: DiscountBody, admin: Identity = Depends(require_admin),
                          db: Database = Depends(get_db)):
    discount = find_or_404(db, "discount", did, "Discount not found")
    changes: Dict[str, Any] = {}
    if body.code:
        changes["code"] = body.code.strip().upper()
    if body.percentage is not None:
        if not _valid_percentage(body.percentage):
            raise ValidationFailed("Percentage must be 0-100")
        changes["percentage"] = body.percentage
    if "expires_at" in body.model_fields_set:
        changes["expires_at"] = body.expires_at
    if changes:
        db["discount"].update_one({"_id": discount["_id"]}, {"$set": changes})
    return serialize(db["discount"].find_one({"_id": discount["_id"]}))


@app.delete("/api/discounts/{did}")
def admin_delete_discount(did: str, admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    discount = find_or_404(db, "discount", did, "Discount not found")
    db["discount"].delete_one({"_id": discount["_id"]})
    return {"message": "Discount deleted"}


@app.post("/api/discounts/validate")
def validate_discount(body: DiscountCodeBody, user: Identity = Depends(get_current_user),
                      db: Database = Depends(get_db)):
    if not body.code or not body.code.strip():
        raise ValidationFailed("Valid discount code required")
    discount = db["discount"].find_one({"code": body.code.strip().upper(), "active": True})
    if not discount:
        raise ValidationFailed("Invalid or inactive discount code")
    expires_at = discount.get("expires_at")
    if expires_at and as_utc(expires_at) < now_utc():
        db["discount"].update_one({"_id": discount["_id"]}, {"$set": {"active": False}})
        raise ValidationFailed("Discount code expired")
    return {"percentage": discount["percentage"]}

# ---------------------- Referrals ----------------------

@app.get("/api/referrals")
def admin_list_referrals(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    referrals = list(db["referral"].find())
    user_ids = {r.get("referrer_id") for r in referrals} | {r.get("referee_id") for r in referrals}
    users = fetch_by_ids(db, "user", user_ids, {"name": 1, "email": 1, "referral_code": 1})
    out = []
    for referral in referrals:
        doc = serialize(referral)
        doc["referrer"] = serialize(users.get(referral.get("referrer_id")))
        referee = users.get(referral.get("referee_id"))
        doc["referee"] = {"_id": str(referee["_id"]), "name": referee.get("name"), "email": referee.get("email")} \
            if referee else None
        out.append(doc)
    return out

# ---------------------- Orders ----------------------

class StatusBody(BaseModel):
    status: str


@app.get("/api/orders")
def admin_list_orders(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    return populate_orders(db, list(db["order"].find()))


@app.get("/api/orders/my-orders")
def my_orders(user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    return populate_orders(db, list(db["order"].find({"user_id": user.id})))


@app.post("/api/orders", status_code=201)
def create_order(body: CheckoutBody, user: Identity = Depends(get_current_user), db: Database = Depends(get_db),
                 mailer: Mailer = Depends(get_mailer), gateway: PaymentGateway = Depends(get_payment_gateway)):
    return place_order(db, user, body, mailer, gateway)


@app.get("/api/orders/detail/{order_id}")
def order_detail(order_id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    order = find_or_404(db, "order", order_id, "Order not found")
    if not user.is_admin and order.get("user_id") != user.id:
        raise Forbidden("Not authorized to view this order")
    return populate_order(db, order, product_fields=("name", "price", "image"), user_fields=("email", "name"))


@app.get("/api/orders/analytics")
def order_analytics(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    orders = populate_orders(db, list(db["order"].find()))

    product_sales: Dict[str, Dict[str, Any]] = {}
    monthly: Dict[tuple, Dict[str, Any]] = {}
    for order in orders:
        for item in order.get("items", []):
            product = item.get("product")
            if not product:
                logger.warning("Skipping item with missing product in order %s", order["_id"])
                continue
            sales = product_sales.setdefault(
                product["_id"], {"name": product.get("name") or "Unknown Product", "quantity": 0, "revenue": 0.0}
            )
            quantity = item.get("quantity") or 0
            sales["quantity"] += quantity
            sales["revenue"] += quantity * (product.get("price") or 0)

        created = order.get("created_at") or now_utc()
        month = monthly.setdefault(
            (created.year, created.month),
            {"month": created.month, "year": created.year, "total_orders": 0, "total_revenue": 0.0},
        )
        month["total_orders"] += 1
        month["total_revenue"] += order.get("total") or 0

    return {
        "total_orders": len(orders),
        "total_revenue": round(sum(o.get("total") or 0 for o in orders), 2),
        "top_products": sorted(product_sales.values(), key=lambda s: s["quantity"], reverse=True)[:5],
        "monthly_sales": [monthly[k] for k in sorted(monthly)],
    }


@app.get("/api/orders/{user_id}")
def orders_for_user(user_id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    if not ObjectId.is_valid(user_id):
        raise ValidationFailed("Invalid userId")
    owner_or_admin(user, user_id)
    orders = list(db["order"].find({"user_id": user_id}))
    return populate_orders(db, orders, product_fields=("name", "price", "image"))


@app.put("/api/orders/{order_id}")
def admin_update_order_status(order_id: str, body: StatusBody, admin: Identity = Depends(require_admin),
                              db: Database = Depends(get_db)):
    return update_order_status(db, order_id, body.status)


@app.put("/api/orders/{order_id}/cancel")
def cancel_my_order(order_id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    return cancel_order(db, user, order_id)

# ---------------------- Cart & Wishlist ----------------------

class CartBody(BaseModel):
    items: List[CartItem] = []


class WishlistBody(BaseModel):
    product_id: str


@app.post("/api/cart", status_code=201)
def save_cart(body: CartBody, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    items = [i.model_dump() for i in body.items]
    db["cart"].update_one(
        {"user_id": user.id},
        {"$set": {"items": items, "updated_at": now_utc()}},
        upsert=True,
    )
    return serialize(db["cart"].find_one({"user_id": user.id}))


@app.get("/api/cart/{user_id}")
def get_cart(user_id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    owner_or_admin(user, user_id)
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFound("Cart not found")
    products = fetch_by_ids(db, "product", [i.get("product_id") for i in cart.get("items", [])])
    out = serialize(cart)
    for item in out["items"]:
        product = products.get(item["product_id"])
        item["product"] = serialize(product) if product else None
    return out


@app.post("/api/wishlist", status_code=201)
def add_to_wishlist(body: WishlistBody, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    if db["wishlist"].find_one({"user_id": user.id, "product_id": body.product_id}):
        raise ValidationFailed("Item already exists in the wishlist")
    item_id = create_document(db, "wishlist", {"user_id": user.id, "product_id": body.product_id})
    return serialize(db["wishlist"].find_one({"_id": oid(item_id)}))


@app.get("/api/wishlist/{user_id}")
def get_wishlist(user_id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    owner_or_admin(user, user_id)
    return {"items": [serialize(w) for w in db["wishlist"].find({"user_id": user_id})]}


@app.delete("/api/wishlist/{user_id}/{product_id}")
def remove_from_wishlist(user_id: str, product_id: str, user: Identity = Depends(get_current_user),
                         db: Database = Depends(get_db)):
    owner_or_admin(user, user_id)
    deleted = db["wishlist"].find_one_and_delete({"user_id": user_id, "product_id": product_id})
    if not deleted:
        raise NotFound("Item not found in the wishlist")
    return {"message": "Item removed from wishlist", "deleted_item": serialize(deleted)}

# ---------------------- Return Requests ----------------------

class ReturnBody(BaseModel):
    order_id: str
    reason: str


class ReturnDecisionBody(BaseModel):
    status: str


@app.post("/api/return-requests", status_code=201)
def submit_return(body: ReturnBody, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    order = db["order"].find_one({"_id": oid(body.order_id)})
    if not order or order.get("user_id") != user.id:
        raise Forbidden("Not authorized to return this order")
    if order.get("status") != "Delivered":
        raise ValidationFailed("Only delivered orders can be returned")
    if db["returnrequest"].find_one({"order_id": body.order_id, "user_id": user.id}):
        raise ValidationFailed("Return request already submitted for this order")

    create_document(db, "returnrequest", ReturnRequest(order_id=body.order_id, user_id=user.id, reason=body.reason))
    notify(db, user.id, f"Your return request for order #{body.order_id} has been submitted.")
    return {"message": "Return request submitted successfully"}


def _with_orders(db: Database, requests: List[Dict[str, Any]], with_user: bool = False) -> List[Dict[str, Any]]:
    orders = fetch_by_ids(db, "order", [r.get("order_id") for r in requests], {"status": 1, "total": 1})
    users = fetch_by_ids(db, "user", [r.get("user_id") for r in requests], {"name": 1, "email": 1}) if with_user else {}
    out = []
    for request in requests:
        doc = serialize(request)
        doc["order"] = serialize(orders.get(request.get("order_id")))
        if with_user:
            doc["user"] = serialize(users.get(request.get("user_id")))
        out.append(doc)
    return out


@app.get("/api/return-requests/my-requests")
def my_return_requests(user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    return _with_orders(db, list(db["returnrequest"].find({"user_id": user.id})))


@app.get("/api/return-requests")
def admin_list_returns(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    return _with_orders(db, list(db["returnrequest"].find()), with_user=True)


@app.put("/api/return-requests/{rid}")
def admin_decide_return(rid: str, body: ReturnDecisionBody, admin: Identity = Depends(require_admin),
                        db: Database = Depends(get_db)):
    if body.status not in ("Approved", "Rejected"):
        raise ValidationFailed("Status must be Approved or Rejected")
    request = find_or_404(db, "returnrequest", rid, "Return request not found")
    db["returnrequest"].update_one({"_id": request["_id"]}, {"$set": {"status": body.status, "updated_at": now_utc()}})
    notify(db, request["user_id"],
           f"Your return request for order #{request['order_id']} has been {body.status.lower()}.")
    if body.status == "Approved":
        update_order_status(db, request["order_id"], "Returned")
    return serialize(db["returnrequest"].find_one({"_id": request["_id"]}))

# ---------------------- Notifications & Activities ----------------------

class ReadBody(BaseModel):
    read: bool = True


@app.get("/api/notifications")
def unread_notifications(user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    cur = db["notification"].find({"user_id": user.id, "read": False}).sort("created_at", -1)
    return [serialize(n) for n in cur]


@app.put("/api/notifications/{nid}")
def mark_notification(nid: str, body: ReadBody, user: Identity = Depends(get_current_user),
                      db: Database = Depends(get_db)):
    notification = db["notification"].find_one({"_id": oid(nid), "user_id": user.id})
    if not notification:
        raise NotFound("Notification not found")
    db["notification"].update_one({"_id": notification["_id"]}, {"$set": {"read": body.read}})
    return serialize(db["notification"].find_one({"_id": notification["_id"]}))


def _with_user(db: Database, activities: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    users = fetch_by_ids(db, "user", [a.get("user_id") for a in activities], {"name": 1, "email": 1})
    out = []
    for activity in activities:
        doc = serialize(activity)
        doc["user"] = serialize(users.get(activity.get("user_id")))
        out.append(doc)
    return out


def daily_activity_counts(activities) -> List[Dict[str, Any]]:
    days: Dict[str, Dict[str, Any]] = {}
    for activity in activities:
        timestamp = activity.get("timestamp")
        if not timestamp:
            continue
        day = timestamp.date().isoformat()
        counts = days.setdefault(day, {"date": day, "logins": 0, "purchases": 0})
        if activity.get("action") == "login":
            counts["logins"] += 1
        elif activity.get("action") == "purchase":
            counts["purchases"] += 1
    return [days[d] for d in sorted(days)]


@app.get("/api/activities")
def admin_list_activities(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    return _with_user(db, list(db["activity"].find().sort("timestamp", -1)))


@app.get("/api/activities/me")
def my_activities(user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    return _with_user(db, list(db["activity"].find({"user_id": user.id}).sort("timestamp", -1).limit(5)))


@app.get("/api/activities/trends")
def activity_trends(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    return daily_activity_counts(db["activity"].find())[:30]


@app.get("/api/activities/heatmap")
def activity_heatmap(admin: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    since = now_utc() - timedelta(days=30)
    return daily_activity_counts(db["activity"].find({"timestamp": {"$gte": since}}))

# ---------------------- Support & Feedback ----------------------

class SupportBody(BaseModel):
    subject: str
    message: str


class FeedbackBody(BaseModel):
    order_id: str
    rating: int
    comment: Optional[str] = None


@app.post("/api/support", status_code=201)
def submit_support(body: SupportBody, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    support_id = create_document(db, "support", Support(user_id=user.id, subject=body.subject, message=body.message))
    return serialize(db["support"].find_one({"_id": oid(support_id)}))


@app.get("/api/support/{user_id}")
def support_requests(user_id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    owner_or_admin(user, user_id)
    return get_documents(db, "support", {"user_id": user_id})


@app.post("/api/feedback", status_code=201)
def submit_feedback(body: FeedbackBody, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    create_document(db, "feedback", Feedback(
        user_id=user.id, order_id=body.order_id, rating=body.rating, comment=body.comment,
    ))
    return {"message": "Feedback submitted successfully"}


@app.get("/api/feedback/order/{order_id}")
def order_feedback(order_id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    feedback = db["feedback"].find_one({"order_id": order_id, "user_id": user.id})
    return serialize(feedback) if feedback else {}

# ---------------------- Payments ----------------------

class PaymentIntentBody(BaseModel):
    amount: Optional[float] = None


class MobilePaymentBody(BaseModel):
    amount: Optional[float] = None
    phone: Optional[str] = None
    pnr: Optional[str] = None


@app.post("/api/create-payment-intent")
def create_payment_intent(body: PaymentIntentBody, user: Identity = Depends(get_current_user),
                          gateway: PaymentGateway = Depends(get_payment_gateway)):
    return {"client_secret": gateway.create_intent(body.amount)}


def _mobile_payment(provider: str, body: MobilePaymentBody):
    if not body.amount or not body.phone or not body.pnr:
        raise ValidationFailed("Amount, phone, and PNR required")
    # TODO: replace with the provider's payment API once merchant credentials are issued
    logger.info("%s payment requested: %s for %s, PNR: %s", provider, body.amount, body.phone, body.pnr)
    return {"message": f"{provider} payment initiated (stub)"}


@app.post("/api/telebirr/pay")
def telebirr_pay(body: MobilePaymentBody, user: Identity = Depends(get_current_user)):
    return _mobile_payment("Telebirr", body)


@app.post("/api/mpesa/pay")
def mpesa_pay(body: MobilePaymentBody, user: Identity = Depends(get_current_user)):
    return _mobile_payment("M-Pesa", body)

# ---------------------- Support Chat ----------------------

def _socket_identity(token: Optional[str]) -> Optional[Identity]:
    if not token:
        return None
    try:
        return decode_token(token)
    except Unauthorized:
        return None


async def _relay(db: Database, store: ChatStore, hub: ChatHub, conversation_id: str, message: Optional[str],
                 is_admin: bool):
    if not message:
        return
    msg = store.append(conversation_id, message, is_admin)
    await run_in_threadpool(
        log_activity, db, conversation_id, "Admin Replied" if is_admin else "User Messaged Support", message,
    )
    await hub.deliver(conversation_id, msg)


@app.websocket("/ws/chat/{user_id}")
async def chat_socket(websocket: WebSocket, user_id: str, token: Optional[str] = Query(None),
                      store: ChatStore = Depends(get_chat_store), hub: ChatHub = Depends(get_chat_hub),
                      db: Database = Depends(get_db)):
    identity = _socket_identity(token)
    if identity is None or (identity.id != user_id and not identity.is_admin):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()
    hub.join(user_id, websocket)
    await websocket.send_json({"type": "chatHistory", "messages": store.history(user_id)})
    try:
        while True:
            data = await websocket.receive_json()
            await _relay(db, store, hub, user_id, data.get("message"), identity.is_admin)
    except WebSocketDisconnect:
        logger.info("Chat client for %s disconnected", user_id)
    finally:
        hub.leave(websocket)


@app.websocket("/ws/chat-admin")
async def admin_chat_socket(websocket: WebSocket, token: Optional[str] = Query(None),
                            store: ChatStore = Depends(get_chat_store), hub: ChatHub = Depends(get_chat_hub),
                            db: Database = Depends(get_db)):
    identity = _socket_identity(token)
    if identity is None or not identity.is_admin:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()
    hub.join_admin(websocket)
    try:
        while True:
            data = await websocket.receive_json()
            if data.get("user_id"):
                await _relay(db, store, hub, data["user_id"], data.get("message"), True)
    except WebSocketDisconnect:
        logger.info("Admin chat client disconnected")
    finally:
        hub.leave(websocket)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
