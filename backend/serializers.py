from datetime import datetime
from typing import Dict, Optional

from bson import ObjectId


def serialize_datetime(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    return value.isoformat() if value.tzinfo is not None else f"{value.isoformat()}Z"


def serialize_id(value) -> str:
    if isinstance(value, ObjectId):
        return str(value)
    return str(value or "")


def serialize_order(order_document) -> Optional[Dict]:
    if not order_document:
        return None

    items = []
    for entry in order_document.get("items") or []:
        items.append(
            {
                "meal": serialize_id(entry.get("meal")),
                "title": entry.get("title") or "",
                "price": entry.get("price", 0),
                "protein": entry.get("protein", 0),
                "calories": entry.get("calories", 0),
                "qty": entry.get("qty", 1),
            }
        )

    coupon = order_document.get("coupon")
    serialized_coupon = None
    if coupon:
        serialized_coupon = {
            "code": coupon.get("code"),
            "discount": coupon.get("discount", 0),
            "redeemed": bool(coupon.get("redeemed")),
        }

    payment = order_document.get("payment") or {}
    return {
        "id": serialize_id(order_document.get("_id")),
        "user": serialize_id(order_document.get("user")),
        "items": items,
        "totals": dict(order_document.get("totals") or {}),
        "coupon": serialized_coupon,
        "delivery": order_document.get("delivery") or {},
        "payment": {
            "provider": payment.get("provider"),
            "status": payment.get("status"),
            "gatewayOrderId": payment.get("gatewayOrderId"),
            "gatewayPaymentId": payment.get("gatewayPaymentId"),
            "amount": payment.get("amount"),
            "currency": payment.get("currency"),
        },
        "createdAt": serialize_datetime(order_document.get("createdAt")),
        "paidAt": serialize_datetime(order_document.get("paidAt")),
    }


def serialize_coupon(coupon_document, include_usage: bool = True) -> Dict:
    if not coupon_document:
        return {}

    serialized = {
        "code": coupon_document.get("code"),
        "type": coupon_document.get("type"),
        "value": coupon_document.get("value"),
        "minCartTotal": coupon_document.get("minCartTotal", 0),
        "maxDiscount": coupon_document.get("maxDiscount", 0),
        "validFrom": serialize_datetime(coupon_document.get("validFrom")),
        "validTo": serialize_datetime(coupon_document.get("validTo")),
    }
    if include_usage:
        used_by = coupon_document.get("usedBy") or {}
        serialized.update(
            {
                "id": serialize_id(coupon_document.get("_id")),
                "expiresAt": serialize_datetime(coupon_document.get("expiresAt")),
                "isActive": bool(coupon_document.get("isActive", True)),
                "usageLimitTotal": coupon_document.get("usageLimitTotal", 0),
                "usageLimitPerUser": coupon_document.get("usageLimitPerUser", 1),
                "usedCount": coupon_document.get("usedCount", 0),
                "usedBy": dict(used_by) if isinstance(used_by, dict) else {},
                "createdAt": serialize_datetime(coupon_document.get("createdAt")),
            }
        )
    return serialized


def serialize_meal(meal_document) -> Dict:
    if not meal_document:
        return {}
    return {
        "id": serialize_id(meal_document.get("_id")),
        "title": meal_document.get("title") or "",
        "description": meal_document.get("description") or "",
        "imageUrl": meal_document.get("imageUrl") or "",
        "protein": meal_document.get("protein", 0),
        "calories": meal_document.get("calories", 0),
        "price": meal_document.get("price", 0),
        "isFeatured": bool(meal_document.get("isFeatured")),
        "featuredOrder": meal_document.get("featuredOrder", 0),
    }


def serialize_user(user_document) -> Dict:
    if not user_document:
        return {}
    return {
        "id": serialize_id(user_document.get("_id")),
        "name": user_document.get("name") or "",
        "email": user_document.get("email") or "",
        "role": user_document.get("role") or "user",
    }
