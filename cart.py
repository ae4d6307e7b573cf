import math
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from pymongo import ReturnDocument

from database import get_db, parse_object_id, serialize_doc, utcnow
from errors import Conflict, InvalidArgument, NotFound
from security import require_user

router = APIRouter(prefix="/cart", tags=["cart"])


# ----------------------- Store -----------------------

def cart_totals(cart: dict) -> dict:
    items = cart.get("items") or []
    return {
        "item_count": len(items),
        "total_quantity": sum(int(i.get("quantity") or 0) for i in items),
    }


def get_or_create_cart(db, user_id: str) -> dict:
    # single upsert so concurrent first access cannot create two carts
    return db["cart"].find_one_and_update(
        {"user_id": user_id},
        {"$setOnInsert": {"items": [], "created_at": utcnow(), "updated_at": utcnow()}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def add_item(db, user_id: str, product_id: str, quantity: int):
    """Increment the line for product_id or append a new one.

    Returns (cart, message).
    """
    pid = parse_object_id(product_id, "productId")
    if quantity is None or quantity <= 0:
        raise InvalidArgument("Quantity must be > 0")
    if not db["product"].find_one({"_id": pid}, {"_id": 1}):
        raise NotFound("Product not found")

    key = str(pid)
    get_or_create_cart(db, user_id)
    for _ in range(2):
        cart = db["cart"].find_one_and_update(
            {"user_id": user_id, "items.product_id": key},
            {"$inc": {"items.$.quantity": quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if cart:
            return cart, "Item quantity incremented"

        # only push when the line is still absent, otherwise go back and increment
        cart = db["cart"].find_one_and_update(
            {"user_id": user_id, "items.product_id": {"$ne": key}},
            {"$push": {"items": {"product_id": key, "quantity": quantity}}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if cart:
            return cart, "Item added to cart successfully"
    raise Conflict("Could not add item to cart, please retry")


def get_item(db, user_id: str, product_id: str) -> dict:
    key = str(parse_object_id(product_id, "productId"))
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFound("Cart not found")
    for item in cart.get("items") or []:
        if item.get("product_id") == key:
            return item
    raise NotFound("Item not found in cart")


def remove_item(db, user_id: str, product_id: str) -> dict:
    key = str(parse_object_id(product_id, "productId"))
    cart = db["cart"].find_one_and_update(
        {"user_id": user_id, "items.product_id": key},
        {"$pull": {"items": {"product_id": key}}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if cart:
        return cart
    if not db["cart"].find_one({"user_id": user_id}, {"_id": 1}):
        raise NotFound("Cart not found")
    raise NotFound("Item not found in cart")


def set_item_quantity(db, user_id: str, product_id: str, quantity: Optional[float]):
    """Set (not increment) a line's quantity.

    None returns the current line untouched, anything that truncates to 0
    removes the line. Returns (kind, value, message) where kind is "item" or
    "cart".
    """
    if quantity is None:
        return "item", get_item(db, user_id, product_id), "Item found"
    if not math.isfinite(quantity) or quantity < 0:
        raise InvalidArgument("Invalid quantity")

    qty = int(math.floor(quantity))
    if qty == 0:
        return "cart", remove_item(db, user_id, product_id), "Item removed"

    key = str(parse_object_id(product_id, "productId"))
    cart = db["cart"].find_one_and_update(
        {"user_id": user_id, "items.product_id": key},
        {"$set": {"items.$.quantity": qty, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not cart:
        raise NotFound("Item not found in cart")
    return "cart", cart, "Cart updated"


def clear_cart(db, user_id: str) -> None:
    db["cart"].update_one({"user_id": user_id}, {"$set": {"items": [], "updated_at": utcnow()}})


# ----------------------- Routes -----------------------

class AddItemBody(BaseModel):
    product_id: str
    quantity: int


class QuantityBody(BaseModel):
    quantity: Optional[float] = None


@router.get("")
def get_current_cart(user=Depends(require_user), db=Depends(get_db)):
    cart = get_or_create_cart(db, user["id"])
    return {"message": "Cart fetched", "cart": serialize_doc(cart), "total": cart_totals(cart)}


@router.post("/items")
def add_item_to_cart(body: AddItemBody, user=Depends(require_user), db=Depends(get_db)):
    cart, message = add_item(db, user["id"], body.product_id, body.quantity)
    return {"message": message, "cart": serialize_doc(cart)}


@router.patch("/items/{product_id}")
def update_item_quantity(
    product_id: str,
    body: Optional[QuantityBody] = None,
    user=Depends(require_user),
    db=Depends(get_db),
):
    quantity = body.quantity if body else None
    kind, value, message = set_item_quantity(db, user["id"], product_id, quantity)
    return {"message": message, kind: serialize_doc(value)}


@router.delete("/items/{product_id}")
def remove_item_from_cart(product_id: str, user=Depends(require_user), db=Depends(get_db)):
    cart = remove_item(db, user["id"], product_id)
    return {"message": "Item removed from cart successfully", "cart": serialize_doc(cart)}
