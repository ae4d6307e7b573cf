"""
Order lifecycle.

An order is an immutable snapshot of the cart at checkout time. Stock is
reserved at creation with a conditional decrement per line and handed back
when the order is cancelled.

    PENDING -> CONFIRMED -> SHIPPED -> DELIVERED
    PENDING | CONFIRMED -> CANCELLED   (restock)

Admins may overwrite the status with any value; only a move into CANCELLED
has side effects.
"""
import logging
import math
import secrets
import string
import time
from typing import List, Optional

from bson.errors import InvalidId
from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from cart import clear_cart
from database import create_document, get_db, parse_object_id, serialize_doc, utcnow
from errors import Conflict, Internal, InvalidArgument, NotFound
from schemas import CANCELABLE_STATUSES, ORDER_STATUSES, Address, Order, OrderItem, Price
from security import require_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

ORDER_CODE_ALPHABET = string.digits + string.ascii_uppercase
ORDER_CODE_ATTEMPTS = 5


# ----------------------- Helpers -----------------------

def generate_order_code(now_ms: Optional[int] = None) -> str:
    """ORD + last 6 digits of the millisecond clock + 5 base36 characters."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(ORDER_CODE_ALPHABET) for _ in range(5))
    return f"ORD{str(now_ms)[-6:].zfill(6)}{suffix}"


def to_address(data) -> Address:
    if isinstance(data, Address):
        return data
    try:
        return Address(**(data or {}))
    except ValidationError as exc:
        errors = exc.errors()
        msg = errors[0].get("msg") if errors else "Invalid shipping address"
        raise InvalidArgument(f"Invalid shipping address: {msg}")


def merge_address(current: Optional[dict], update: Address) -> Address:
    """Field-by-field merge; fields missing from the update keep their value."""
    merged = dict(current or {})
    merged.update(update.model_dump(exclude_none=True))
    return to_address(merged)


def get_order(db, order_id: str, user_id: Optional[str] = None) -> dict:
    filt = {"_id": parse_object_id(order_id, "order id")}
    if user_id is not None:
        filt["user_id"] = user_id
    order = db["order"].find_one(filt)
    if not order:
        raise NotFound("Order not found")
    return order


def order_detail(order: dict) -> dict:
    payment = order.get("payment") or {}
    total = order.get("total_price") or {}
    created = order.get("created_at")
    detail = {
        "order": serialize_doc(order),
        "timeline": [
            {"status": "CREATED", "at": created},
            {"status": order.get("status"), "at": order.get("updated_at") or created},
        ],
        "payment_summary": {
            "method": payment.get("method", "COD"),
            "status": payment.get("status", "PENDING"),
            "total": total.get("amount"),
            "currency": total.get("currency"),
            "collected_at": payment.get("collected_at"),
        },
    }
    return serialize_doc(detail)


def paginate(db, filters: dict, page: int, limit: int, sort) -> dict:
    total_items = db["order"].count_documents(filters)
    cursor = db["order"].find(filters).sort(sort).skip((page - 1) * limit).limit(limit)
    return {
        "data": list(cursor),
        "meta": {
            "page": page,
            "limit": limit,
            "total_pages": max(math.ceil(total_items / limit), 1),
            "total_items": total_items,
        },
    }


# ----------------------- Inventory -----------------------

def reserve_stock(db, product_id: str, quantity: int) -> None:
    res = db["product"].update_one(
        {"_id": ObjectId(product_id), "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity, "sold": quantity}, "$set": {"updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise Conflict(f"Product {product_id} out of stock")


def reserve_lines(db, items: List[dict]) -> None:
    """Reserve every line or none of them."""
    reserved = []
    try:
        for it in items:
            reserve_stock(db, it["product_id"], int(it["quantity"]))
            reserved.append(it)
    except Exception:
        failed = restock(db, reserved)
        if failed:
            logger.error("Could not release reserved stock for products %s", failed)
        raise


def restock(db, items: List[dict]) -> List[str]:
    """Give each line's quantity back to its product.

    Best-effort: a failing line is logged and skipped. Returns the product ids
    that could not be restocked.
    """
    failures = []
    for it in items:
        product_id = it.get("product_id")
        qty = int(it.get("quantity") or 0)
        try:
            pid = ObjectId(product_id)
            res = db["product"].update_one({"_id": pid}, {"$inc": {"stock": qty}, "$set": {"updated_at": utcnow()}})
            if res.matched_count == 0:
                raise LookupError("product no longer exists")
            db["product"].update_one({"_id": pid, "sold": {"$gte": qty}}, {"$inc": {"sold": -qty}})
        except (PyMongoError, InvalidId, TypeError, LookupError) as exc:
            logger.warning("Failed to restock product %s: %s", product_id, exc)
            failures.append(str(product_id))
    return failures


# ----------------------- Lifecycle -----------------------

def _snapshot_cart(db, cart: dict):
    lines = []
    total = 0.0
    currency = None
    for item in cart["items"]:
        product = db["product"].find_one({"_id": ObjectId(item["product_id"])})
        if not product:
            raise InvalidArgument(f"Product {item['product_id']} not found")
        qty = int(item["quantity"])
        if product.get("stock", 0) < qty:
            raise Conflict(f"Product {product['_id']} out of stock")

        price = product.get("price") or {}
        unit = float(price.get("amount") or 0)
        line_currency = price.get("currency") or "BDT"
        if currency is None:
            currency = line_currency
        elif line_currency != currency:
            raise InvalidArgument("Cart mixes currencies; order each currency separately")

        line_total = round(unit * qty, 2)
        total += line_total
        lines.append(
            OrderItem(
                product_id=str(product["_id"]),
                title=product.get("title", ""),
                quantity=qty,
                unit_price=Price(amount=unit, currency=line_currency),
                price=Price(amount=line_total, currency=line_currency),
            )
        )
    return lines, Price(amount=round(total, 2), currency=currency or "BDT")


def _insert_order(db, fields: dict) -> dict:
    for _ in range(ORDER_CODE_ATTEMPTS):
        order = Order(order_code=generate_order_code(), **fields)
        try:
            order_id = create_document(db, "order", order)
        except DuplicateKeyError:
            # order_code is the only unique key besides the generated _id
            logger.info("Order code %s already taken, regenerating", order.order_code)
            continue
        return db["order"].find_one({"_id": ObjectId(order_id)})
    raise Internal("Could not allocate a unique order code")


def create_order(db, user: dict, shipping_address: Optional[Address] = None) -> dict:
    """Turn the user's cart into a PENDING order and reserve its stock."""
    address = shipping_address or user.get("shipping_address")
    if not address:
        raise InvalidArgument(
            "shipping_address is required in request body or user must have a saved shipping_address."
        )
    address = to_address(address)

    cart = db["cart"].find_one({"user_id": user["id"]})
    if not cart or not cart.get("items"):
        raise InvalidArgument("Cart is empty")

    lines, total = _snapshot_cart(db, cart)

    items = [line.model_dump() for line in lines]
    reserve_lines(db, items)
    try:
        order = _insert_order(
            db,
            {
                "user_id": user["id"],
                "items": lines,
                "total_price": total,
                "shipping_address": address,
                "status": "PENDING",
            },
        )
    except Exception:
        failed = restock(db, items)
        if failed:
            logger.error("Could not release reserved stock for products %s", failed)
        raise

    clear_cart(db, user["id"])
    logger.info("Order %s created for user %s, total %s %s", order["order_code"], user["id"], total.amount, total.currency)
    return order


def cancel_order(db, order_id: str, user_id: Optional[str] = None):
    """Cancel from PENDING/CONFIRMED and restock. Returns (order, restock_failures)."""
    order = get_order(db, order_id, user_id)
    if order.get("status") == "CANCELLED":
        raise Conflict("Order already cancelled")
    if order.get("status") not in CANCELABLE_STATUSES:
        raise Conflict("Order not cancelable at this stage")

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$in": list(CANCELABLE_STATUSES)}},
        {"$set": {"status": "CANCELLED", "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise Conflict("Order status changed, please retry")

    failures = restock(db, updated.get("items") or [])
    logger.info("Order %s cancelled", updated.get("order_code"))
    return updated, failures


def update_status(db, order_id: str, status: str):
    """Admin override. Returns (order, restock_failures, message)."""
    if status not in ORDER_STATUSES:
        raise InvalidArgument(f"Invalid status. Allowed: {', '.join(ORDER_STATUSES)}")

    order = get_order(db, order_id)
    current = order.get("status")
    if current == status:
        return order, [], "Status unchanged"

    # a cancelled order has already given its stock back
    reviving = current == "CANCELLED"
    if reviving:
        reserve_lines(db, order.get("items") or [])

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": {"status": status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        if reviving:
            restock(db, order.get("items") or [])
        raise Conflict("Order status changed, please retry")

    logger.info("Order %s status %s -> %s", updated.get("order_code"), current, status)
    if status == "CANCELLED":
        return updated, restock(db, updated.get("items") or []), "Order cancelled by admin"
    return updated, [], "Order status updated"


def update_address(db, order_id: str, update: Address, user_id: Optional[str] = None) -> dict:
    order = get_order(db, order_id, user_id)
    if order.get("status") not in CANCELABLE_STATUSES:
        raise Conflict("Order address cannot be updated at this stage")

    address = merge_address(order.get("shipping_address"), update)
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$in": list(CANCELABLE_STATUSES)}},
        {"$set": {"shipping_address": address.model_dump(), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise Conflict("Order address cannot be updated at this stage")
    return updated


def mark_cod_collected(db, order_id: str) -> dict:
    order = get_order(db, order_id)
    payment = order.get("payment") or {}
    if payment.get("method") != "COD":
        raise InvalidArgument("Order is not COD")
    if order.get("status") == "CANCELLED":
        raise Conflict("Cannot collect payment for a cancelled order")
    if payment.get("status") == "COLLECTED":
        raise Conflict("COD already collected")

    now = utcnow()
    updated = db["order"].find_one_and_update(
        {
            "_id": order["_id"],
            "payment.method": "COD",
            "payment.status": {"$ne": "COLLECTED"},
            "status": {"$ne": "CANCELLED"},
        },
        {"$set": {"payment.status": "COLLECTED", "payment.collected_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise Conflict("Order payment changed, please retry")
    return updated


# ----------------------- Routes -----------------------

class CreateOrderBody(BaseModel):
    shipping_address: Optional[Address] = None


class AddressUpdateBody(BaseModel):
    shipping_address: Address


@router.post("", status_code=201)
def place_order(body: Optional[CreateOrderBody] = None, user=Depends(require_user), db=Depends(get_db)):
    address = body.shipping_address if body else None
    order = create_order(db, user, address)
    return {"message": "Order created", "order": serialize_doc(order)}


@router.get("/me")
def get_my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(require_user),
    db=Depends(get_db),
):
    result = paginate(db, {"user_id": user["id"]}, page, limit, [("created_at", -1)])
    return {"data": [serialize_doc(o) for o in result["data"]], "meta": result["meta"]}


@router.get("/{order_id}")
def get_order_by_id(order_id: str, user=Depends(require_user), db=Depends(get_db)):
    return order_detail(get_order(db, order_id, user["id"]))


@router.post("/{order_id}/cancel")
def cancel_order_by_id(order_id: str, user=Depends(require_user), db=Depends(get_db)):
    order, failures = cancel_order(db, order_id, user["id"])
    return {"message": "Order cancelled", "order": serialize_doc(order), "restock_failures": failures}


@router.patch("/{order_id}/address")
def update_order_address(order_id: str, body: AddressUpdateBody, user=Depends(require_user), db=Depends(get_db)):
    order = update_address(db, order_id, body.shipping_address, user["id"])
    return {"message": "Address updated", "order": serialize_doc(order)}
