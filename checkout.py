"""
Order placement and the order state changes that follow it.

place_order recomputes the order total from live product and bundle data,
completes a pending referral for the buyer, stores the order and fires the
notification / activity / email side effects. Each step is a separate write;
nothing is rolled back when a later step fails.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel
from pymongo.database import Database

from auth import Identity
from database import create_document, maybe_oid, oid, serialize
from errors import Forbidden, NotFound, ValidationFailed
from schemas import (
    ORDER_STATUSES,
    REFERRAL_REWARD_PERCENT,
    Activity,
    Address,
    Notification,
    Order,
    OrderItem,
    PaymentMethod,
    StatusEntry,
)

logger = logging.getLogger(__name__)

TOTAL_TOLERANCE = Decimal("0.01")


class CheckoutLine(BaseModel):
    product_id: Optional[str] = None
    quantity: Optional[int] = None
    bundle_id: Optional[str] = None


class CheckoutBody(BaseModel):
    items: Optional[List[CheckoutLine]] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    payment_method: Optional[PaymentMethod] = None
    referral_code: Optional[str] = None
    pnr: Optional[str] = None
    total: Optional[float] = None
    payment_intent_id: Optional[str] = None


# ---------------------- Lookups ----------------------

def fetch_by_ids(db: Database, collection: str, ids: Iterable[Any],
                 projection: Optional[Dict[str, int]] = None) -> Dict[str, Dict[str, Any]]:
    """Bulk fetch documents keyed by their string id. Malformed ids are ignored."""
    object_ids = {o for o in (maybe_oid(i) for i in ids) if o is not None}
    if not object_ids:
        return {}
    cursor = db[collection].find({"_id": {"$in": list(object_ids)}}, projection)
    return {str(doc["_id"]): doc for doc in cursor}


def _key(id_str: Optional[str]) -> Optional[str]:
    parsed = maybe_oid(id_str)
    return str(parsed) if parsed is not None else None


def populate_orders(db: Database, orders: List[Dict[str, Any]], product_fields=("name", "price"),
                    user_fields=("email",)) -> List[Dict[str, Any]]:
    """Attach product and user details to each order for display."""
    product_ids = {item.get("product_id") for order in orders for item in order.get("items", [])}
    user_ids = {order.get("user_id") for order in orders}
    products = fetch_by_ids(db, "product", product_ids, {f: 1 for f in product_fields})
    users = fetch_by_ids(db, "user", user_ids, {f: 1 for f in user_fields})

    out = []
    for order in orders:
        doc = serialize(order)
        for item in doc.get("items", []):
            product = products.get(_key(item.get("product_id")))
            item["product"] = serialize(product) if product else None
        user = users.get(_key(doc.get("user_id")))
        doc["user"] = serialize(user) if user else None
        out.append(doc)
    return out


def populate_order(db: Database, order: Dict[str, Any], **kwargs) -> Dict[str, Any]:
    return populate_orders(db, [order], **kwargs)[0]


# ---------------------- Pricing ----------------------

def price_lines(lines: List[CheckoutLine], products: Dict[str, Dict[str, Any]],
                bundles: Dict[str, Dict[str, Any]]) -> Tuple[float, List[OrderItem]]:
    """
    Price each cart line against live catalog data.

    Lines whose product cannot be found are skipped. A bundle line gets the
    bundle's percentage taken off the product price; a missing bundle or a
    bundle without a discount leaves the price untouched.
    """
    total = 0.0
    items: List[OrderItem] = []
    for index, line in enumerate(lines, start=1):
        product = products.get(_key(line.product_id))
        if product is None:
            logger.warning("Item %d has invalid product_id: %s", index, line.product_id)
            continue

        price = float(product.get("price") or 0)
        if line.bundle_id:
            bundle = bundles.get(_key(line.bundle_id))
            discount = float(bundle.get("discount") or 0) if bundle else 0
            if discount > 0:
                discounted = price * (1 - discount / 100)
                logger.info("Applied %s%% bundle discount to %s: %s -> %s",
                            discount, product.get("name"), price, discounted)
                price = discounted
            else:
                logger.warning("Bundle %s not found or has no discount for item %d", line.bundle_id, index)

        quantity = line.quantity or 1
        total += price * quantity
        items.append(OrderItem(product_id=str(product["_id"]), quantity=quantity, bundle_id=line.bundle_id or None))
    return round(total, 2), items


def totals_disagree(client_total: float, server_total: float) -> bool:
    difference = abs(Decimal(str(client_total)) - Decimal(str(server_total)))
    return difference > TOTAL_TOLERANCE


# ---------------------- Referrals ----------------------

def complete_referral(db: Database, buyer: Identity, referral_code: str) -> Optional[Dict[str, Any]]:
    """
    Mark the buyer's pending referral as completed and reward the referrer.

    The reward is a balance for a later checkout; the current order is not
    discounted. Returns the referral document, or None when nothing matched.
    """
    referrer = db["user"].find_one({"referral_code": referral_code})
    if not referrer:
        return None
    referrer_id = str(referrer["_id"])
    referral = db["referral"].find_one({"referrer_id": referrer_id, "referee_id": buyer.id, "status": "Pending"})
    if not referral:
        return None

    db["referral"].update_one({"_id": referral["_id"]}, {"$set": {"status": "Completed"}})
    db["user"].update_one({"_id": referrer["_id"]}, {"$set": {"referral_discount": REFERRAL_REWARD_PERCENT}})
    create_document(db, "notification", Notification(
        user_id=referrer_id,
        message=f"Your referral was used! You earned a {REFERRAL_REWARD_PERCENT}% discount on your next order.",
    ))
    create_document(db, "activity", Activity(
        user_id=referrer_id,
        action="Referral Completed",
        details=f"Referred user {buyer.name or buyer.id} placed an order.",
    ))
    logger.info("Referral %s completed by user %s", referral["_id"], buyer.id)
    referral["status"] = "Completed"
    return referral


# ---------------------- Orders ----------------------

def place_order(db: Database, buyer: Identity, body: CheckoutBody, mailer, gateway=None) -> Dict[str, Any]:
    if body.items is None or not body.shipping_address or not body.billing_address or not body.payment_method:
        raise ValidationFailed("Missing required fields")

    if body.payment_intent_id:
        if gateway is None or not gateway.intent_succeeded(body.payment_intent_id):
            raise ValidationFailed("Payment not completed")

    products = fetch_by_ids(db, "product", [line.product_id for line in body.items])
    bundles = fetch_by_ids(db, "bundle", [line.bundle_id for line in body.items if line.bundle_id])

    total, items = price_lines(body.items, products, bundles)
    if not items:
        raise ValidationFailed("No valid items in order")

    if body.total and totals_disagree(body.total, total):
        logger.warning("Client total mismatch: client=%s server=%s", body.total, total)
        raise ValidationFailed(
            "Total mismatch between client and server calculation",
            client_total=body.total,
            server_total=total,
        )

    if body.referral_code:
        complete_referral(db, buyer, body.referral_code)

    order = Order(
        user_id=buyer.id,
        items=items,
        total=total,
        status_history=[StatusEntry(status="Pending")],
        shipping_address=body.shipping_address,
        billing_address=body.billing_address,
        payment_method=body.payment_method,
        referral_code=body.referral_code or None,
        pnr=body.pnr or None,
    )
    order_id = create_document(db, "order", order)
    logger.info("Order %s placed by user %s, total %.2f", order_id, buyer.id, total)

    populated = populate_order(db, db["order"].find_one({"_id": oid(order_id)}))

    create_document(db, "notification", Notification(
        user_id=buyer.id, message=f"Order #{order_id} placed successfully!",
    ))

    purchaser = db["user"].find_one({"_id": maybe_oid(buyer.id)}, {"email": 1})
    if not purchaser:
        raise NotFound("User not found")
    mailer.send_order_confirmation(purchaser["email"], populated)

    return populated


def cancel_order(db: Database, owner: Identity, order_id: str) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise NotFound("Order not found")
    if order.get("user_id") != owner.id:
        raise Forbidden("Not authorized")
    if order.get("status") != "Pending":
        raise ValidationFailed("Only pending orders can be canceled")

    # one write per line, so a failure part way leaves a partial restock
    for item in order.get("items", []):
        product_id = maybe_oid(item.get("product_id"))
        if product_id is None:
            continue
        db["product"].update_one({"_id": product_id}, {"$inc": {"stock": item.get("quantity") or 0}})

    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"status": "Canceled"}, "$push": {"status_history": StatusEntry(status="Canceled").model_dump()}},
    )
    create_document(db, "notification", Notification(
        user_id=owner.id, message=f"Your order #{order['_id']} has been canceled.",
    ))
    logger.info("Order %s canceled by owner %s", order["_id"], owner.id)
    return serialize(db["order"].find_one({"_id": order["_id"]}))


def update_order_status(db: Database, order_id: str, status: str) -> Dict[str, Any]:
    if status not in ORDER_STATUSES:
        raise ValidationFailed(f"Invalid status: {status}")
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise NotFound("Order not found")

    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"status": status}, "$push": {"status_history": StatusEntry(status=status).model_dump()}},
    )
    if order.get("user_id"):
        create_document(db, "notification", Notification(
            user_id=order["user_id"], message=f"Order #{order['_id']} status updated to {status}",
        ))
    else:
        logger.warning("Order %s has no user_id for notification", order["_id"])
    return populate_order(db, db["order"].find_one({"_id": order["_id"]}), user_fields=("name", "email"))
