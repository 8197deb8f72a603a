from datetime import datetime
from typing import Callable, Dict, Mapping, Optional
from uuid import uuid4

from coupon_ledger import CouponLedger
from delivery_slots import SlotPolicy
from errors import PaymentVerificationError, UpstreamServiceError, ValidationError
from orders import (
    PAYMENT_FAILED,
    PAYMENT_PAID,
    load_order,
    new_order_document,
    normalize_address,
    normalize_cart_items,
    transition_payment,
)
from payment_gateway import RazorpayGateway
from pricing import compute_payable, compute_totals, to_minor_units

VERIFY_FIELDS = ("orderId", "gatewayOrderId", "gatewayPaymentId", "gatewaySignature")


class CheckoutService:
    """Create-order / verify-payment protocol for a Razorpay checkout.

    ``create_order`` validates the cart, prices it from the catalog, previews the
    coupon and opens a gateway order before anything is written. ``verify_payment``
    checks the gateway signature, settles the order exactly once and redeems the
    coupon only after the payment is confirmed.
    """

    def __init__(
        self,
        db,
        gateway: RazorpayGateway,
        ledger: CouponLedger,
        slot_policy: SlotPolicy,
        currency: str,
        logger,
        on_paid: Optional[Callable[[Dict], None]] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.ledger = ledger
        self.slot_policy = slot_policy
        self.currency = currency
        self.logger = logger
        self.on_paid = on_paid

    def create_order(
        self, user: Mapping, payload: Optional[Mapping], now: Optional[datetime] = None
    ) -> Dict:
        payload = payload if isinstance(payload, dict) else {}

        raw_items = payload.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError("Cart is empty")
        address = normalize_address(payload.get("address"))
        slot = self.slot_policy.validate(payload.get("deliverySlot"), now=now)
        items = normalize_cart_items(raw_items, self.db.meals)

        totals = compute_totals(items)
        discount = 0
        coupon = None
        coupon_code = payload.get("couponCode")
        if coupon_code:
            coupon_document = self.ledger.find_by_code(coupon_code)
            discount = self.ledger.check_eligibility(
                coupon_document, user["_id"], totals["subtotal"]
            )
            coupon = {"code": coupon_document["code"], "discount": discount}

        payable = compute_payable(totals["subtotal"], discount)
        totals.update({"discount": discount, "payable": payable})
        amount_minor = to_minor_units(payable)

        receipt = f"rcpt_{uuid4().hex[:16]}"
        gateway_order = self.gateway.create_order(amount_minor, self.currency, receipt)

        document = new_order_document(
            user["_id"],
            items,
            {
                "subtotal": totals["subtotal"],
                "discount": discount,
                "payable": payable,
                "totalProtein": totals["totalProtein"],
                "totalCalories": totals["totalCalories"],
            },
            coupon,
            address,
            slot,
            gateway_order,
            self.gateway.provider,
            amount_minor,
            self.currency,
        )
        result = self.db.orders.insert_one(document)
        document["_id"] = result.inserted_id

        self.logger.info(
            "Checkout order %s created for user %s (payable %s %s, gateway %s)",
            document["_id"],
            user["_id"],
            payable,
            self.currency,
            gateway_order["id"],
        )
        return {
            "keyId": self.gateway.key_id,
            "gatewayOrderId": gateway_order["id"],
            "amount": amount_minor,
            "currency": self.currency,
            "orderId": str(document["_id"]),
        }

    def verify_payment(self, payload: Optional[Mapping]) -> Dict:
        payload = payload if isinstance(payload, dict) else {}
        values = {field: str(payload.get(field) or "").strip() for field in VERIFY_FIELDS}
        if not all(values.values()):
            raise ValidationError("Missing payment verification fields")

        order = load_order(self.db.orders, values["orderId"])
        payment = order.get("payment") or {}

        if payment.get("status") == PAYMENT_PAID:
            self._finish_redemption(order)
            return load_order(self.db.orders, order["_id"])
        if payment.get("status") == PAYMENT_FAILED:
            raise PaymentVerificationError("Payment verification failed")

        if payment.get("gatewayOrderId") != values["gatewayOrderId"]:
            self.logger.warning(
                "Gateway order mismatch for order %s", order["_id"]
            )
            raise PaymentVerificationError("Gateway order mismatch")

        if not self.gateway.key_secret:
            # The order stays created until the secret is configured.
            self.logger.error(
                "Cannot verify order %s: Razorpay secret is not configured", order["_id"]
            )
            raise UpstreamServiceError()

        signature_ok = self.gateway.verify_signature(
            values["gatewayOrderId"],
            values["gatewayPaymentId"],
            values["gatewaySignature"],
        )
        if not signature_ok:
            transition_payment(
                self.db.orders,
                order["_id"],
                PAYMENT_FAILED,
                values["gatewayPaymentId"],
                values["gatewaySignature"],
            )
            self.logger.warning("Payment signature rejected for order %s", order["_id"])
            raise PaymentVerificationError("Payment verification failed")

        paid_order = transition_payment(
            self.db.orders,
            order["_id"],
            PAYMENT_PAID,
            values["gatewayPaymentId"],
            values["gatewaySignature"],
        )
        if paid_order is None:
            # A concurrent verification settled this order first.
            current = load_order(self.db.orders, order["_id"])
            if (current.get("payment") or {}).get("status") != PAYMENT_PAID:
                raise PaymentVerificationError("Payment verification failed")
            return current

        self.logger.info("Payment verified for order %s", paid_order["_id"])
        self._finish_redemption(paid_order)
        paid_order = load_order(self.db.orders, paid_order["_id"])
        if self.on_paid:
            try:
                self.on_paid(paid_order)
            except Exception:
                self.logger.exception(
                    "Post-payment notification failed for order %s", paid_order["_id"]
                )
        return paid_order

    def _finish_redemption(self, order: Mapping):
        coupon = order.get("coupon") or {}
        if not coupon.get("code") or coupon.get("redeemed") or coupon.get("rejectedReason"):
            return
        self.ledger.redeem(order)
