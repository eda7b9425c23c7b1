from tests.conftest import auth


def test_notifications_unread_and_mark_read(client, db, buyer):
    uid = str(buyer["_id"])
    note_id = db["notification"].insert_one({"user_id": uid, "message": "hello", "read": False}).inserted_id

    assert len(client.get("/api/notifications", headers=auth(buyer)).json()) == 1

    res = client.put(f"/api/notifications/{note_id}", json={"read": True}, headers=auth(buyer))
    assert res.status_code == 200
    assert client.get("/api/notifications", headers=auth(buyer)).json() == []


def test_other_users_notification_not_found(client, db, buyer, make_user):
    other = make_user("Other Person", "other@shopper.io")
    note_id = db["notification"].insert_one({"user_id": str(other["_id"]), "message": "x", "read": False}).inserted_id
    assert client.put(f"/api/notifications/{note_id}", json={"read": True}, headers=auth(buyer)).status_code == 404


def test_cart_save_and_fetch(client, buyer, make_user, make_product):
    pid = make_product("Hoodie", 100)
    uid = str(buyer["_id"])

    res = client.post("/api/cart", json={"items": [{"product_id": str(pid), "quantity": 2}]}, headers=auth(buyer))
    assert res.status_code == 201

    cart = client.get(f"/api/cart/{uid}", headers=auth(buyer)).json()
    assert cart["items"][0]["quantity"] == 2
    assert cart["items"][0]["product"]["name"] == "Hoodie"

    stranger = make_user("Other Person", "other@shopper.io")
    assert client.get(f"/api/cart/{uid}", headers=auth(stranger)).status_code == 403
    assert client.get(f"/api/cart/{stranger['_id']}", headers=auth(stranger)).status_code == 404


def test_wishlist_add_list_remove(client, buyer, make_product):
    pid = str(make_product("Hoodie", 100))
    uid = str(buyer["_id"])

    assert client.post("/api/wishlist", json={"product_id": pid}, headers=auth(buyer)).status_code == 201
    assert client.post("/api/wishlist", json={"product_id": pid}, headers=auth(buyer)).status_code == 400
    assert len(client.get(f"/api/wishlist/{uid}", headers=auth(buyer)).json()["items"]) == 1

    assert client.delete(f"/api/wishlist/{uid}/{pid}", headers=auth(buyer)).status_code == 200
    assert client.delete(f"/api/wishlist/{uid}/{pid}", headers=auth(buyer)).status_code == 404


def test_activity_trends_count_logins(client, db, buyer, admin):
    client.post("/api/users/login", json={"email": buyer["email"], "password": "secret123"})
    client.post("/api/users/login", json={"email": admin["email"], "password": "secret123"})

    trends = client.get("/api/activities/trends", headers=auth(admin)).json()

    assert sum(day["logins"] for day in trends) == 2
    assert client.get("/api/activities/trends", headers=auth(buyer)).status_code == 403


def test_support_and_feedback(client, buyer):
    uid = str(buyer["_id"])
    res = client.post("/api/support", json={"subject": "Late", "message": "Where is my order?"}, headers=auth(buyer))
    assert res.status_code == 201
    assert client.get(f"/api/support/{uid}", headers=auth(buyer)).json()[0]["subject"] == "Late"

    assert client.get("/api/feedback/order/abc", headers=auth(buyer)).json() == {}
    res = client.post("/api/feedback", json={"order_id": "abc", "rating": 5, "comment": "Great"}, headers=auth(buyer))
    assert res.status_code == 201
    assert client.get("/api/feedback/order/abc", headers=auth(buyer)).json()["rating"] == 5


def test_mobile_payment_stub_requires_fields(client, buyer):
    res = client.post("/api/telebirr/pay", json={"amount": 100, "phone": "0911000000"}, headers=auth(buyer))
    assert res.status_code == 400
    assert res.json()["message"] == "Amount, phone, and PNR required"

    res = client.post("/api/mpesa/pay", json={"amount": 100, "phone": "0711000000", "pnr": "PNR1"},
                      headers=auth(buyer))
    assert res.status_code == 200


def test_payment_intent(client, buyer):
    res = client.post("/api/create-payment-intent", json={"amount": 2500}, headers=auth(buyer))
    assert res.json() == {"client_secret": "pi_test_secret_2500"}
