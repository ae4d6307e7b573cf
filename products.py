import json
import logging
import re
from typing import List, Optional

from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel, Field, ValidationError
from pymongo import ReturnDocument

import config
from database import create_document, get_db, get_documents, parse_object_id, serialize_doc, utcnow
from errors import Conflict, Forbidden, InvalidArgument, NotFound
from image_service import delete_image, upload_image
from schemas import Price, Product, ProductImage, Review
from security import get_current_user, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/products", tags=["products"])


# ----------------------- Form normalization -----------------------
# Multipart forms carry everything as strings; these turn them into typed
# values before anything reaches the catalog.

def parse_json_object(value, name: str) -> Optional[dict]:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        return value
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        raise InvalidArgument(f"Invalid {name} JSON")
    if not isinstance(parsed, dict):
        raise InvalidArgument(f"Invalid {name} JSON")
    return parsed


def resolve_price(
    price=None,
    price_amount: Optional[str] = None,
    price_currency: Optional[str] = None,
    fallback_currency: str = "BDT",
) -> Optional[Price]:
    parsed = parse_json_object(price, "price")
    if parsed is None and price_amount not in (None, ""):
        parsed = {"amount": price_amount, "currency": price_currency}
    if parsed is None:
        return None
    try:
        amount = float(parsed.get("amount"))
    except (TypeError, ValueError):
        raise InvalidArgument("price.amount is required and must be a number")
    try:
        return Price(amount=amount, currency=parsed.get("currency") or fallback_currency)
    except ValidationError:
        raise InvalidArgument("price must have a non-negative amount and currency USD or BDT")


def parse_stock(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        stock = float(value)
    except (TypeError, ValueError):
        raise InvalidArgument("stock must be a non-negative number")
    if stock != stock or stock < 0:
        raise InvalidArgument("stock must be a non-negative number")
    return int(stock)


def upload_all(files: Optional[List[UploadFile]]) -> List[dict]:
    images = []
    for f in files or []:
        img = upload_image(f.file.read(), f.filename, f.content_type)
        images.append(ProductImage(**img).model_dump())
    return images


def rating_stats(reviews: List[dict]) -> dict:
    if not reviews:
        return {"review_count": 0, "average_rating": 0}
    return {
        "review_count": len(reviews),
        "average_rating": sum(r["rating"] for r in reviews) / len(reviews),
    }


# ----------------------- Catalog -----------------------

def get_product(db, product_id: str, projection: Optional[dict] = None) -> dict:
    product = db["product"].find_one({"_id": parse_object_id(product_id, "product id")}, projection)
    if not product:
        raise NotFound("Product not found")
    return product


def list_products(db, page: int, limit: int, search: Optional[str] = None, category: Optional[str] = None):
    filt = {}
    if category:
        filt["category"] = category
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"title": pattern}, {"description": pattern}]
    total = db["product"].count_documents(filt)
    items = db["product"].find(filt).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit)
    return total, list(items)


def create_product(db, fields: dict, files: Optional[List[UploadFile]] = None) -> dict:
    if not (fields.get("title") or "").strip():
        raise InvalidArgument("Title is required")
    price = resolve_price(fields.get("price"), fields.get("price_amount"), fields.get("price_currency"))
    if price is None:
        raise InvalidArgument("price.amount is required and must be a number")
    if len(files or []) > config.MAX_PRODUCT_IMAGES:
        raise InvalidArgument(f"At most {config.MAX_PRODUCT_IMAGES} images are allowed")

    product = Product(
        title=fields["title"].strip(),
        description=(fields.get("description") or "").strip(),
        specification=parse_json_object(fields.get("specification"), "specification") or {},
        price=price,
        category=(fields.get("category") or "").strip(),
        stock=parse_stock(fields.get("stock")) or 0,
    )
    product.images = [ProductImage(**img) for img in upload_all(files)]
    product_id = create_document(db, "product", product)
    logger.info("Product %s created", product_id)
    return db["product"].find_one({"_id": ObjectId(product_id)})


def update_product(db, product_id: str, fields: dict, files: Optional[List[UploadFile]] = None) -> dict:
    product = get_product(db, product_id)
    update = {}

    for key in ("title", "description", "category"):
        if fields.get(key) is not None:
            update[key] = fields[key].strip()
    if "title" in update and not update["title"]:
        raise InvalidArgument("Title is required")

    if fields.get("specification") is not None:
        spec = parse_json_object(fields["specification"], "specification")
        if spec is None:
            raise InvalidArgument("Invalid specification JSON")
        update["specification"] = spec

    current_currency = (product.get("price") or {}).get("currency") or "BDT"
    price = resolve_price(fields.get("price"), fields.get("price_amount"), fields.get("price_currency"), current_currency)
    if price is not None:
        update["price"] = price.model_dump()

    stock = parse_stock(fields.get("stock"))
    if stock is not None:
        update["stock"] = stock

    images = list(product.get("images") or [])
    removed = []
    if fields.get("remove_image_ids"):
        ids = {s.strip() for s in str(fields["remove_image_ids"]).split(",") if s.strip()}
        removed = [img for img in images if str(img.get("id")) in ids]
        images = [img for img in images if str(img.get("id")) not in ids]
    if len(images) + len(files or []) > config.MAX_PRODUCT_IMAGES:
        raise InvalidArgument(f"At most {config.MAX_PRODUCT_IMAGES} images are allowed")
    if removed or files:
        update["images"] = images + upload_all(files)

    update["updated_at"] = utcnow()
    updated = db["product"].find_one_and_update(
        {"_id": product["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    for img in removed:
        delete_image(img.get("id"))
    return updated


def delete_product(db, product_id: str) -> None:
    product = db["product"].find_one_and_delete({"_id": parse_object_id(product_id, "product id")})
    if not product:
        raise NotFound("Product not found")
    for img in product.get("images") or []:
        delete_image(img.get("id"))
    logger.info("Product %s deleted", product_id)


# ----------------------- Reviews -----------------------

def refresh_rating(db, pid: ObjectId) -> dict:
    """Recompute the denormalized aggregates from the full review list."""
    product = db["product"].find_one({"_id": pid}, {"reviews": 1})
    stats = rating_stats((product or {}).get("reviews") or [])
    db["product"].update_one({"_id": pid}, {"$set": stats})
    return stats


def add_review(db, product_id: str, user: dict, rating: int, comment: str = "") -> dict:
    product = get_product(db, product_id, {"reviews": 1})
    if any(r.get("user_id") == user["id"] for r in product.get("reviews") or []):
        raise Conflict("Product already reviewed by you")

    review = Review(
        id=str(ObjectId()),
        user_id=user["id"],
        user_name=user.get("full_name"),
        rating=rating,
        comment=(comment or "").strip(),
        created_at=utcnow(),
    ).model_dump()
    res = db["product"].update_one(
        {"_id": product["_id"], "reviews.user_id": {"$ne": user["id"]}},
        {"$push": {"reviews": review}},
    )
    if res.matched_count == 0:
        raise Conflict("Product already reviewed by you")
    refresh_rating(db, product["_id"])
    return review


def delete_review(db, product_id: str, review_id: str, user: dict) -> None:
    product = get_product(db, product_id, {"reviews": 1})
    review = next((r for r in product.get("reviews") or [] if r.get("id") == review_id), None)
    if not review:
        raise NotFound("Review not found")
    if review.get("user_id") != user["id"] and user.get("role") != "admin":
        raise Forbidden("You can only delete your own review")
    db["product"].update_one({"_id": product["_id"]}, {"$pull": {"reviews": {"id": review_id}}})
    refresh_rating(db, product["_id"])


# ----------------------- Routes -----------------------

class ReviewBody(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""


@router.get("")
def get_products(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    category: Optional[str] = None,
    db=Depends(get_db),
):
    total, items = list_products(db, page, limit, search, category)
    return {"total": total, "page": page, "limit": limit, "products": [serialize_doc(p) for p in items]}


@router.get("/category/{category_name}")
def get_products_by_category(category_name: str, db=Depends(get_db)):
    items = get_documents(db, "product", {"category": category_name})
    return {"total": len(items), "products": [serialize_doc(p) for p in items]}


@router.get("/{product_id}")
def get_product_by_id(product_id: str, db=Depends(get_db)):
    return {"product": serialize_doc(get_product(db, product_id))}


@router.post("", status_code=201)
def create_product_route(
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    specification: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    stock: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    price_amount: Optional[str] = Form(None),
    price_currency: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    fields = {
        "title": title,
        "description": description,
        "specification": specification,
        "category": category,
        "stock": stock,
        "price": price,
        "price_amount": price_amount,
        "price_currency": price_currency,
    }
    product = create_product(db, fields, images)
    return {"product": serialize_doc(product)}


@router.put("/{product_id}")
def update_product_route(
    product_id: str,
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    specification: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    stock: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    price_amount: Optional[str] = Form(None),
    price_currency: Optional[str] = Form(None),
    remove_image_ids: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    fields = {
        "title": title,
        "description": description,
        "specification": specification,
        "category": category,
        "stock": stock,
        "price": price,
        "price_amount": price_amount,
        "price_currency": price_currency,
        "remove_image_ids": remove_image_ids,
    }
    product = update_product(db, product_id, fields, images)
    return {"product": serialize_doc(product)}


@router.delete("/{product_id}")
def delete_product_route(product_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    delete_product(db, product_id)
    return {"message": "Product deleted"}


@router.get("/{product_id}/reviews")
def get_reviews(product_id: str, db=Depends(get_db)):
    product = get_product(db, product_id, {"reviews": 1, "average_rating": 1, "review_count": 1})
    return {
        "reviews": [serialize_doc(r) for r in product.get("reviews") or []],
        "average_rating": product.get("average_rating", 0),
        "review_count": product.get("review_count", 0),
    }


@router.post("/{product_id}/reviews", status_code=201)
def add_review_route(product_id: str, body: ReviewBody, user=Depends(get_current_user), db=Depends(get_db)):
    review = add_review(db, product_id, user, body.rating, body.comment)
    return {"message": "Review added", "review": serialize_doc(review)}


@router.delete("/{product_id}/reviews/{review_id}")
def delete_review_route(product_id: str, review_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    delete_review(db, product_id, review_id, user)
    return {"message": "Review deleted"}
