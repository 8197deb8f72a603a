import math
import re
from datetime import datetime, time, timezone
from typing import Dict, List, Mapping, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from errors import IneligibleCouponError, NotFoundError, ValidationError
from pricing import compute_discount

COUPON_TYPES = ("flat", "percent")
NUMERIC_COUPON_FIELDS = (
    "value",
    "minCartTotal",
    "maxDiscount",
    "usageLimitTotal",
    "usageLimitPerUser",
)
DATE_COUPON_FIELDS = ("validFrom", "validTo", "expiresAt")
ADMIN_EDITABLE_FIELDS = (
    ("code", "type", "isActive") + NUMERIC_COUPON_FIELDS + DATE_COUPON_FIELDS
)
MAX_REDEMPTION_ATTEMPTS = 8


def normalize_code(value) -> str:
    return str(value or "").strip().upper()


def parse_iso_date(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    candidate = str(value).strip()
    if not candidate:
        return None
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
        candidate = f"{candidate}T00:00:00"
    try:
        parsed = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def resolve_validity(coupon: Mapping) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Return the (start, end) window, preferring validFrom/validTo over expiresAt.

    ``validTo`` covers the whole calendar day it names; ``expiresAt`` is an
    exact instant kept for coupons created before validFrom/validTo existed.
    """
    valid_from = parse_iso_date(coupon.get("validFrom"))
    valid_to = parse_iso_date(coupon.get("validTo"))
    if valid_to is not None:
        return valid_from, datetime.combine(valid_to.date(), time.max)
    return valid_from, parse_iso_date(coupon.get("expiresAt"))


def usage_count_for(coupon: Mapping, user_key: str) -> int:
    used_by = coupon.get("usedBy") or {}
    if not isinstance(used_by, dict):
        return 0
    return int(used_by.get(user_key) or 0)


def usage_rejection(coupon: Mapping, user_key: str) -> Optional[str]:
    total_limit = int(coupon.get("usageLimitTotal") or 0)
    used_count = int(coupon.get("usedCount") or 0)
    if total_limit > 0 and used_count >= total_limit:
        return "Coupon usage limit reached"

    per_user_limit = coupon.get("usageLimitPerUser")
    per_user_limit = 1 if per_user_limit is None else int(per_user_limit)
    if usage_count_for(coupon, user_key) >= per_user_limit:
        return "You already used this coupon"
    return None


def _format_amount(value) -> str:
    numeric = float(value or 0)
    return str(int(numeric)) if numeric.is_integer() else f"{numeric:.2f}"


def _coerce_number(field: str, value) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not math.isfinite(numeric) or numeric < 0:
        raise ValidationError(f"{field} must be a non-negative number")
    if field.startswith("usageLimit"):
        return int(numeric)
    return int(numeric) if numeric.is_integer() else numeric


def normalize_coupon_payload(payload: Optional[Mapping], *, partial: bool = False) -> Dict:
    """Validate an admin coupon payload and convert it to stored field types."""
    if not isinstance(payload, dict):
        raise ValidationError("Coupon details are required")

    normalized: Dict[str, object] = {}
    for field in ADMIN_EDITABLE_FIELDS:
        if field not in payload:
            continue
        value = payload.get(field)
        if field == "code":
            normalized["code"] = normalize_code(value)
        elif field == "type":
            candidate = str(value or "").strip().lower()
            normalized["type"] = candidate if candidate in COUPON_TYPES else "flat"
        elif field == "isActive":
            normalized["isActive"] = bool(value)
        elif field in DATE_COUPON_FIELDS:
            if value in (None, ""):
                normalized[field] = None
                continue
            parsed = parse_iso_date(value)
            if parsed is None:
                raise ValidationError(f"Invalid date for {field}")
            normalized[field] = parsed
        elif value not in (None, ""):
            normalized[field] = _coerce_number(field, value)

    if not partial:
        if not normalized.get("code"):
            raise ValidationError("Coupon code is required")
        normalized.setdefault("type", "flat")
        if "value" not in normalized:
            raise ValidationError("value is required")
        normalized.setdefault("minCartTotal", 0)
        normalized.setdefault("maxDiscount", 0)
        normalized.setdefault("usageLimitTotal", 0)
        normalized.setdefault("usageLimitPerUser", 1)
        normalized.setdefault("isActive", True)
    elif "code" in normalized and not normalized["code"]:
        raise ValidationError("Coupon code is required")

    if "value" in normalized and normalized["value"] <= 0:
        raise ValidationError("value must be greater than 0")
    if normalized.get("type") == "percent" and normalized.get("value", 0) > 100:
        raise ValidationError("Percent coupons cannot exceed 100")
    if normalized.get("type") == "flat":
        normalized["maxDiscount"] = 0
    return normalized


class CouponLedger:
    """Eligibility checks and exactly-once usage accounting for coupons.

    Redemption never does a blind read-modify-write: every increment is a
    single ``find_one_and_update`` whose filter requires room under both
    limits and that the order is not already in ``redeemedOrders``.
    """

    def __init__(self, coupons, orders, logger):
        self.coupons = coupons
        self.orders = orders
        self.logger = logger

    def ensure_indexes(self):
        try:
            self.coupons.create_index("code", unique=True)
            self.coupons.create_index([("createdAt", -1)])
        except Exception as exc:
            self.logger.warning("Unable to ensure indexes for coupons: %s", exc)

    # --- eligibility ---

    def find_by_code(self, code) -> Dict:
        normalized = normalize_code(code)
        if not normalized:
            raise ValidationError("Coupon code required")
        coupon = self.coupons.find_one({"code": normalized})
        if not coupon:
            raise IneligibleCouponError("Invalid coupon")
        return coupon

    def check_eligibility(
        self,
        coupon: Mapping,
        user_id,
        subtotal,
        now: Optional[datetime] = None,
    ) -> int:
        if not coupon.get("isActive", True):
            raise IneligibleCouponError("Invalid coupon")

        current = now or datetime.utcnow()
        valid_from, valid_to = resolve_validity(coupon)
        if valid_from and current < valid_from:
            raise IneligibleCouponError("Coupon not active yet")
        if valid_to and current > valid_to:
            raise IneligibleCouponError("Coupon expired")

        min_cart_total = float(coupon.get("minCartTotal") or 0)
        if subtotal < min_cart_total:
            raise IneligibleCouponError(
                f"Minimum cart total is {_format_amount(min_cart_total)}"
            )

        reason = usage_rejection(coupon, str(user_id))
        if reason:
            raise IneligibleCouponError(reason)

        return compute_discount(subtotal, coupon)

    def preview(self, code, user_id, subtotal, now: Optional[datetime] = None) -> Dict:
        coupon = self.find_by_code(code)
        discount = self.check_eligibility(coupon, user_id, subtotal, now=now)
        return {"code": coupon["code"], "discount": discount}

    def list_available(self, user_id, subtotal, now: Optional[datetime] = None) -> List[Dict]:
        available = []
        for coupon in self.coupons.find({"isActive": True}).sort("createdAt", -1):
            try:
                self.check_eligibility(coupon, user_id, subtotal, now=now)
            except IneligibleCouponError:
                continue
            available.append(coupon)
        return available

    # --- redemption ---

    def redeem(self, order: Mapping) -> bool:
        """Consume one use of the order's coupon. Returns True when it was counted."""
        coupon_info = order.get("coupon") or {}
        code = coupon_info.get("code")
        if not code:
            return False

        live_order = self.orders.find_one({"_id": order["_id"]}, {"coupon": 1}) or {}
        if (live_order.get("coupon") or {}).get("redeemed"):
            return False

        user_key = str(order.get("user"))
        # Only an admin edit of the limits between read and write makes the
        # update miss while the coupon is still usable.
        for _ in range(MAX_REDEMPTION_ATTEMPTS):
            coupon = self.coupons.find_one({"code": code})
            if not coupon:
                self._mark_rejected(order, "Coupon no longer exists")
                return False

            if order["_id"] in (coupon.get("redeemedOrders") or []):
                # Counted earlier; the order flag write never landed.
                self._mark_redeemed(order)
                return False

            reason = usage_rejection(coupon, user_key)
            if reason:
                self._mark_rejected(order, reason)
                return False

            if self._apply_increment(coupon, user_key, order["_id"]):
                self._mark_redeemed(order)
                self.logger.info(
                    "Coupon %s redeemed for order %s", code, order["_id"]
                )
                return True

        self.logger.error(
            "Coupon %s limits kept changing during redemption for order %s; left unredeemed",
            code,
            order["_id"],
        )
        return False

    def _apply_increment(self, coupon: Mapping, user_key: str, order_id) -> bool:
        """Count one use if the live document still has room for it.

        The filter carries the limits themselves, so concurrent redeemers only
        miss when the coupon has really run out for them.
        """
        total_limit = int(coupon.get("usageLimitTotal") or 0)
        per_user_limit = coupon.get("usageLimitPerUser")
        per_user_limit = 1 if per_user_limit is None else int(per_user_limit)
        usage_field = f"usedBy.{user_key}"

        conditions: List[Dict] = [
            {"$or": [{usage_field: {"$exists": False}}, {usage_field: {"$lt": per_user_limit}}]}
        ]
        if total_limit > 0:
            conditions.append(
                {"$or": [{"usedCount": {"$exists": False}}, {"usedCount": {"$lt": total_limit}}]}
            )

        updated = self.coupons.find_one_and_update(
            {
                "_id": coupon["_id"],
                "usageLimitTotal": coupon.get("usageLimitTotal"),
                "usageLimitPerUser": coupon.get("usageLimitPerUser"),
                "redeemedOrders": {"$ne": order_id},
                "$and": conditions,
            },
            {
                "$inc": {"usedCount": 1, usage_field: 1},
                "$addToSet": {"redeemedOrders": order_id},
                "$set": {"updatedAt": datetime.utcnow()},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            return False

        if total_limit > 0 and int(updated.get("usedCount") or 0) >= total_limit:
            self.coupons.update_one(
                {
                    "_id": coupon["_id"],
                    "usageLimitTotal": coupon.get("usageLimitTotal"),
                    "usedCount": {"$gte": total_limit},
                },
                {"$set": {"isActive": False}},
            )
        return True

    def _mark_redeemed(self, order: Mapping):
        self.orders.update_one(
            {"_id": order["_id"], "coupon.redeemed": {"$ne": True}},
            {"$set": {"coupon.redeemed": True, "updatedAt": datetime.utcnow()}},
        )

    def _mark_rejected(self, order: Mapping, reason: str):
        self.logger.warning(
            "Coupon %s not redeemed for order %s: %s",
            (order.get("coupon") or {}).get("code"),
            order["_id"],
            reason,
        )
        self.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"coupon.rejectedReason": reason, "updatedAt": datetime.utcnow()}},
        )

    # --- administration ---

    def list_all(self) -> List[Dict]:
        return list(self.coupons.find().sort("createdAt", -1))

    def get(self, coupon_id) -> Dict:
        coupon = self.coupons.find_one({"_id": _object_id(coupon_id)})
        if not coupon:
            raise NotFoundError("Coupon not found")
        return coupon

    def create(self, payload: Optional[Mapping]) -> Dict:
        document = normalize_coupon_payload(payload)
        if self.coupons.find_one({"code": document["code"]}):
            raise ValidationError("Coupon code already exists")

        now = datetime.utcnow()
        document.update(
            {
                "usedCount": 0,
                "usedBy": {},
                "redeemedOrders": [],
                "createdAt": now,
                "updatedAt": now,
            }
        )
        try:
            result = self.coupons.insert_one(document)
        except DuplicateKeyError:
            raise ValidationError("Coupon code already exists")
        document["_id"] = result.inserted_id
        return document

    def update(self, coupon_id, payload: Optional[Mapping]) -> Dict:
        changes = normalize_coupon_payload(payload, partial=True)
        changes["updatedAt"] = datetime.utcnow()
        try:
            updated = self.coupons.find_one_and_update(
                {"_id": _object_id(coupon_id)},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise ValidationError("Coupon code already exists")
        if not updated:
            raise NotFoundError("Coupon not found")
        return updated

    def toggle(self, coupon_id) -> Dict:
        object_id = _object_id(coupon_id)
        # Retry until the flip lands on the state that was read.
        for _ in range(MAX_REDEMPTION_ATTEMPTS):
            coupon = self.coupons.find_one({"_id": object_id})
            if not coupon:
                raise NotFoundError("Coupon not found")
            current = bool(coupon.get("isActive", True))
            updated = self.coupons.find_one_and_update(
                {"_id": object_id, "isActive": coupon.get("isActive")},
                {"$set": {"isActive": not current, "updatedAt": datetime.utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
            if updated:
                return updated
        raise ValidationError("Coupon is being updated, try again")

    def delete(self, coupon_id):
        result = self.coupons.delete_one({"_id": _object_id(coupon_id)})
        if not result.deleted_count:
            raise NotFoundError("Coupon not found")


def _object_id(value) -> ObjectId:
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError("Coupon not found")
