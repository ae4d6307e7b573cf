import csv
import io
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING

from database import get_db, parse_object_id, serialize_doc
from errors import InvalidArgument, NotFound
from orders import (
    AddressUpdateBody,
    cancel_order,
    get_order,
    mark_cod_collected,
    order_detail,
    paginate,
    update_address,
    update_status,
)
from schemas import ORDER_STATUSES
from security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin-orders", tags=["admin-orders"], dependencies=[Depends(require_admin)])

SORTABLE_FIELDS = ("created_at", "updated_at", "status", "order_code", "user_id", "total_price.amount")

CSV_HEADER = [
    "order_id",
    "order_code",
    "user_id",
    "user_name",
    "user_email",
    "status",
    "total_amount",
    "currency",
    "payment_status",
    "created_at",
    "shipping_full_name",
    "shipping_phone",
    "shipping_division",
    "shipping_district",
    "shipping_thana",
    "shipping_postal_code",
    "shipping_street_address",
]


# ----------------------- Query parsing -----------------------

def _parse_date(value: str, name: str):
    """Returns (naive UTC datetime, date_only)."""
    raw = value.strip()
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise InvalidArgument(f"Invalid '{name}' date")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed, len(raw) == 10


def build_filters(
    status: Optional[str] = None,
    user: Optional[str] = None,
    order_code: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> dict:
    filters = {}
    if status:
        if status not in ORDER_STATUSES:
            raise InvalidArgument(f"Invalid status. Allowed: {', '.join(ORDER_STATUSES)}")
        filters["status"] = status
    if user:
        filters["user_id"] = str(parse_object_id(user, "user id"))
    if order_code:
        filters["order_code"] = order_code.strip()
    if date_from or date_to:
        created = {}
        if date_from:
            created["$gte"] = _parse_date(date_from, "from")[0]
        if date_to:
            end, date_only = _parse_date(date_to, "to")
            # a bare date includes that whole day
            if date_only:
                created["$lt"] = end + timedelta(days=1)
            else:
                created["$lte"] = end
        filters["created_at"] = created
    return filters


def parse_sort(expr: Optional[str]):
    spec = []
    for part in (expr or "").split(","):
        part = part.strip()
        if not part:
            continue
        direction = DESCENDING if part.startswith("-") else ASCENDING
        field = part.lstrip("+-")
        if field not in SORTABLE_FIELDS:
            raise InvalidArgument(f"Cannot sort by '{field}'. Allowed: {', '.join(SORTABLE_FIELDS)}")
        spec.append((field, direction))
    return spec or [("created_at", DESCENDING)]


def attach_users(db, orders: List[dict]) -> List[dict]:
    ids = {o.get("user_id") for o in orders if ObjectId.is_valid(str(o.get("user_id")))}
    users = {}
    if ids:
        cursor = db["user"].find({"_id": {"$in": [ObjectId(i) for i in ids]}}, {"full_name": 1, "email": 1})
        users = {str(u["_id"]): u for u in cursor}
    out = []
    for o in orders:
        u = users.get(o.get("user_id"))
        o = dict(o)
        o["user"] = {"id": o.get("user_id"), "full_name": u.get("full_name"), "email": u.get("email")} if u else None
        out.append(o)
    return out


# ----------------------- CSV -----------------------

def _amount(value):
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _iso(value):
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return value


def orders_to_csv(orders: List[dict]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for o in orders:
        user = o.get("user") or {}
        total = o.get("total_price") or {}
        payment = o.get("payment") or {}
        addr = o.get("shipping_address") or {}
        row = [
            str(o.get("_id", "")),
            o.get("order_code"),
            o.get("user_id"),
            user.get("full_name"),
            user.get("email"),
            o.get("status"),
            _amount(total.get("amount")),
            total.get("currency"),
            payment.get("status"),
            _iso(o.get("created_at")),
            addr.get("full_name"),
            addr.get("phone"),
            addr.get("division"),
            addr.get("district"),
            addr.get("thana"),
            addr.get("postal_code"),
            addr.get("street_address"),
        ]
        writer.writerow(["" if cell is None else cell for cell in row])
    return buf.getvalue()


# ----------------------- Routes -----------------------

class StatusBody(BaseModel):
    status: str


@router.get("")
def get_all_orders(
    status: Optional[str] = None,
    user: Optional[str] = None,
    order_code: Optional[str] = None,
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort: str = "-created_at",
    db=Depends(get_db),
):
    filters = build_filters(status, user, order_code, date_from, date_to)
    result = paginate(db, filters, page, limit, parse_sort(sort))
    return {"data": [serialize_doc(o) for o in attach_users(db, result["data"])], "meta": result["meta"]}


@router.get("/export")
def export_orders(
    status: Optional[str] = None,
    user: Optional[str] = None,
    order_code: Optional[str] = None,
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    db=Depends(get_db),
):
    filters = build_filters(status, user, order_code, date_from, date_to)
    orders = list(db["order"].find(filters).sort([("created_at", DESCENDING)]))
    content = orders_to_csv(attach_users(db, orders))
    filename = f"orders_export_{int(time.time() * 1000)}.csv"
    logger.info("Exported %d orders", len(orders))
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{order_id}")
def get_order_by_id_admin(order_id: str, db=Depends(get_db)):
    order = attach_users(db, [get_order(db, order_id)])[0]
    return order_detail(order)


@router.patch("/{order_id}/status")
def update_order_status(order_id: str, body: StatusBody, db=Depends(get_db)):
    order, failures, message = update_status(db, order_id, body.status)
    return {"message": message, "order": serialize_doc(order), "restock_failures": failures}


@router.patch("/{order_id}/payment/collect")
def collect_cod_payment(order_id: str, db=Depends(get_db)):
    order = mark_cod_collected(db, order_id)
    return {"message": "COD marked as collected", "order": serialize_doc(order)}


@router.patch("/{order_id}/address")
def update_order_address_admin(order_id: str, body: AddressUpdateBody, db=Depends(get_db)):
    order = update_address(db, order_id, body.shipping_address)
    return {"message": "Order address updated", "order": serialize_doc(order)}


@router.post("/{order_id}/cancel")
def cancel_order_by_admin(order_id: str, db=Depends(get_db)):
    order, failures = cancel_order(db, order_id)
    return {"message": "Order cancelled by admin", "order": serialize_doc(order), "restock_failures": failures}


@router.delete("/{order_id}")
def delete_order_by_admin(order_id: str, db=Depends(get_db)):
    # hard delete: no restock
    order = db["order"].find_one_and_delete({"_id": parse_object_id(order_id, "order id")})
    if not order:
        raise NotFound("Order not found")
    logger.warning("Order %s deleted", order.get("order_code"))
    return {"message": "Order deleted", "order": serialize_doc(order)}
