import math
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument

from errors import NotFoundError, ValidationError

ADDRESS_REQUIRED_FIELDS = ("fullName", "phone", "line1", "city", "state", "pincode")
ADDRESS_OPTIONAL_FIELDS = ("line2",)
LOCATION_MODES = ("manual", "current")

PAYMENT_CREATED = "created"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"


def parse_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        return None


def parse_coordinate(value, lower: float, upper: float) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(numeric) or not lower <= numeric <= upper:
        return None
    return numeric


def normalize_address(payload: Optional[Mapping]) -> Dict[str, object]:
    if not isinstance(payload, dict):
        raise ValidationError("Address is incomplete")

    address: Dict[str, object] = {}
    for field in ADDRESS_REQUIRED_FIELDS + ADDRESS_OPTIONAL_FIELDS:
        trimmed = str(payload.get(field) or "").strip()
        if trimmed:
            address[field] = trimmed
    if not all(address.get(field) for field in ADDRESS_REQUIRED_FIELDS):
        raise ValidationError("Address is incomplete")

    mode = str(payload.get("locationMode") or "").strip().lower()
    if not mode:
        address["locationMode"] = "manual"
        address["locationText"] = str(payload.get("locationText") or "").strip()
        return address
    if mode not in LOCATION_MODES:
        raise ValidationError("Location is incomplete")

    address["locationMode"] = mode
    if mode == "current":
        lat = parse_coordinate(payload.get("lat"), -90.0, 90.0)
        lng = parse_coordinate(payload.get("lng"), -180.0, 180.0)
        maps_url = str(payload.get("mapsUrl") or "").strip()
        if lat is None or lng is None or not maps_url:
            raise ValidationError("Location is incomplete")
        address.update({"lat": lat, "lng": lng, "mapsUrl": maps_url, "locationText": ""})
    else:
        location_text = str(payload.get("locationText") or "").strip()
        if not location_text:
            raise ValidationError("Location is incomplete")
        address["locationText"] = location_text
    return address


def _quantity(value) -> int:
    if isinstance(value, bool):
        raise ValidationError("Invalid quantity")
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Invalid quantity")
    if not numeric.is_integer() or numeric < 1:
        raise ValidationError("Invalid quantity")
    return int(numeric)


def normalize_cart_items(raw_items, meals) -> List[Dict]:
    """Turn client cart lines into order items priced from the meal catalog.

    Only ``mealId`` and ``qty`` are read from the client; title, price and
    nutrition come from the stored meal.
    """
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Cart is empty")

    requested = []
    for entry in raw_items:
        if not isinstance(entry, dict):
            raise ValidationError("Meal ID missing in cart item")
        meal_id = entry.get("mealId") or entry.get("meal")
        if not meal_id:
            raise ValidationError("Meal ID missing in cart item")
        object_id = parse_object_id(meal_id)
        if object_id is None:
            raise ValidationError("Meal not found")
        requested.append((object_id, _quantity(entry.get("qty"))))

    unique_ids = list({object_id for object_id, _ in requested})
    catalog = {meal["_id"]: meal for meal in meals.find({"_id": {"$in": unique_ids}})}

    items = []
    for object_id, qty in requested:
        meal = catalog.get(object_id)
        if not meal:
            raise ValidationError("Meal not found")
        items.append(
            {
                "meal": object_id,
                "title": meal.get("title") or "",
                "price": meal.get("price", 0),
                "protein": meal.get("protein", 0),
                "calories": meal.get("calories", 0),
                "qty": qty,
            }
        )
    return items


def new_order_document(
    user_id,
    items: List[Dict],
    totals: Dict[str, int],
    coupon: Optional[Dict],
    address: Dict,
    slot: Dict,
    gateway_order: Dict,
    provider: str,
    amount_minor: int,
    currency: str,
) -> Dict:
    now = datetime.utcnow()
    document = {
        "user": user_id,
        "items": items,
        "totals": totals,
        "delivery": {"address": address, "slot": slot},
        "payment": {
            "provider": provider,
            "status": PAYMENT_CREATED,
            "gatewayOrderId": gateway_order["id"],
            "amount": amount_minor,
            "currency": currency,
        },
        "createdAt": now,
        "updatedAt": now,
    }
    if coupon:
        document["coupon"] = {
            "code": coupon["code"],
            "discount": coupon["discount"],
            "redeemed": False,
        }
    return document


def load_order(orders, order_id) -> Dict:
    object_id = parse_object_id(order_id)
    order = orders.find_one({"_id": object_id}) if object_id else None
    if not order:
        raise NotFoundError("Order not found")
    return order


def transition_payment(
    orders, order_id, status: str, payment_id: str, signature: str
) -> Optional[Dict]:
    """Move an order out of ``created``. Returns None when another request got there first."""
    now = datetime.utcnow()
    changes = {
        "payment.status": status,
        "payment.gatewayPaymentId": payment_id,
        "payment.gatewaySignature": signature,
        "updatedAt": now,
    }
    if status == PAYMENT_PAID:
        changes["paidAt"] = now
    return orders.find_one_and_update(
        {"_id": order_id, "payment.status": PAYMENT_CREATED},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
