import math
import os
import re
from datetime import datetime
from typing import Dict, Optional

import bcrypt
import click
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo.errors import DuplicateKeyError
from werkzeug.middleware.proxy_fix import ProxyFix

from checkout import CheckoutService
from coupon_ledger import CouponLedger
from delivery_slots import SlotPolicy
from errors import CheckoutError, InternalError, register_error_handlers
from notifications import send_order_confirmation_email
from orders import load_order, parse_object_id
from payment_gateway import RazorpayGateway
from serializers import (
    serialize_coupon,
    serialize_meal,
    serialize_order,
    serialize_user,
)
from settings import load_config_from_env

load_dotenv()

ALLOWED_USER_ROLES = {"user", "admin"}
ORDER_HISTORY_LIMIT = 50


def create_app(test_config: Optional[Dict] = None, database=None, gateway=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    app.config.update(load_config_from_env())
    if test_config:
        app.config.update(test_config)

    # Honor proxy headers so request metadata in audit logs keeps the client address.
    trusted_proxy_hops = app.config["TRUSTED_PROXY_HOPS"]
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Initialize extensions ---
    CORS(app, supports_credentials=True, origins=app.config["CORS_ALLOWED_ORIGINS"] or "*")

    jwt = JWTManager(app)
    if database is None:
        mongo = PyMongo(app)
        database = mongo.db
    db = database

    register_error_handlers(app)

    @jwt.unauthorized_loader
    def handle_missing_token(reason):
        return jsonify({"message": "Authorization token missing"}), 401

    @jwt.invalid_token_loader
    def handle_invalid_token(reason):
        return jsonify({"message": "Invalid or expired token"}), 401

    @jwt.expired_token_loader
    def handle_expired_token(jwt_header, jwt_payload):
        return jsonify({"message": "Invalid or expired token"}), 401

    audit_logs_collection = db.audit_logs
    try:
        audit_logs_collection.create_index([("createdAt", -1)])
        db.users.create_index("email", unique=True)
        db.orders.create_index([("user", 1), ("createdAt", -1)])
        db.orders.create_index("payment.gatewayOrderId")
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes: %s", exc)

    coupon_ledger = CouponLedger(db.coupons, db.orders, app.logger)
    coupon_ledger.ensure_indexes()
    payment_gateway = gateway or RazorpayGateway.from_config(app.config, app.logger)
    slot_policy = SlotPolicy.from_config(app.config)
    currency = app.config["PAYMENT_CURRENCY"]

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def safe_float(value, default=0.0):
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return default
        if not math.isfinite(numeric):
            return default
        return numeric

    def get_json_payload() -> Dict:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(metadata, dict):
            return {}
        sanitized: Dict[str, str] = {}
        for key, value in metadata.items():
            if value is None:
                continue
            sanitized[str(key)] = str(value)
        return sanitized

    def record_audit_log(actor_id, action: str, metadata: Optional[Dict] = None):
        if not action:
            return
        try:
            audit_logs_collection.insert_one(
                {
                    "userId": str(actor_id) if actor_id else None,
                    "action": action,
                    "metadata": sanitize_metadata(metadata),
                    "createdAt": datetime.utcnow(),
                }
            )
        except Exception as exc:
            app.logger.warning("Unable to record audit log: %s", exc)

    def load_current_user():
        user_id = parse_object_id(get_jwt_identity())
        return db.users.find_one({"_id": user_id}) if user_id else None

    def require_user():
        current_user = load_current_user()
        if not current_user:
            return None, (jsonify({"message": "User not found"}), 401)
        if current_user.get("isDeactivated"):
            return None, (jsonify({"message": "Account is deactivated"}), 403)
        if current_user.get("isFrozen"):
            return None, (jsonify({"message": "Account is frozen"}), 403)
        return current_user, None

    def require_admin_user():
        current_user, error = require_user()
        if error:
            return None, error
        if current_user.get("role") != "admin":
            return None, (jsonify({"message": "Admin access only"}), 403)
        return current_user, None

    def notify_order_paid(order_document: Dict):
        record_audit_log(
            order_document.get("user"),
            "Payment verified",
            {
                "order_id": order_document.get("_id"),
                "payable": (order_document.get("totals") or {}).get("payable"),
                "coupon": (order_document.get("coupon") or {}).get("code"),
            },
        )
        customer = db.users.find_one({"_id": order_document.get("user")}) or {}
        email_sent, email_error = send_order_confirmation_email(
            order_document,
            customer.get("email"),
            api_key=app.config["RESEND_ORDER_EMAIL_API_KEY"],
            sender=app.config["ORDER_EMAIL_SENDER"],
            currency=currency,
        )
        if not email_sent:
            app.logger.warning(
                "Order confirmation email not sent for %s: %s",
                order_document.get("_id"),
                email_error,
            )

    checkout_service = CheckoutService(
        db,
        payment_gateway,
        coupon_ledger,
        slot_policy,
        currency,
        app.logger,
        on_paid=notify_order_paid,
    )

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = get_json_payload()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = db.users.find_one({"email": email})
        stored_hash = (user or {}).get("password") or b""
        if isinstance(stored_hash, str):
            stored_hash = stored_hash.encode("utf-8")
        if not user or not stored_hash or not bcrypt.checkpw(password.encode("utf-8"), stored_hash):
            return jsonify({"message": "Invalid credentials"}), 401

        if user.get("isDeactivated"):
            return jsonify({"message": "Account is deactivated"}), 403
        if user.get("isFrozen"):
            return jsonify({"message": "Account is frozen"}), 403

        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"lastLoginAt": datetime.utcnow()}},
        )
        token = create_access_token(
            identity=str(user["_id"]),
            additional_claims={"role": user.get("role") or "user"},
        )
        record_audit_log(
            user["_id"],
            "Signed in",
            {"ip": request.headers.get("X-Forwarded-For", request.remote_addr)},
        )
        return jsonify({"accessToken": token, "user": serialize_user(user)})

    @app.route("/api/meals", methods=["GET"])
    def list_meals():
        show_all = str(request.args.get("all", "")).lower() == "true"
        featured = request.args.get("featured")

        if show_all:
            cursor = db.meals.find().sort("createdAt", -1)
        elif featured is not None and str(featured).lower() == "true":
            cursor = db.meals.find({"isFeatured": True}).sort("featuredOrder", 1)
        else:
            cursor = db.meals.find({"isFeatured": {"$ne": True}}).sort("createdAt", -1)

        return jsonify([serialize_meal(meal) for meal in cursor])

    @app.route("/api/meals/featured", methods=["GET"])
    def list_featured_meals():
        cursor = db.meals.find({"isFeatured": True}).sort("featuredOrder", 1)
        return jsonify([serialize_meal(meal) for meal in cursor])

    @app.route("/api/meals/<meal_id>", methods=["GET"])
    def get_meal(meal_id: str):
        object_id = parse_object_id(meal_id)
        if object_id is None:
            return jsonify({"message": "Invalid meal ID"}), 400
        meal = db.meals.find_one({"_id": object_id})
        if not meal:
            return jsonify({"message": "Meal not found"}), 404
        return jsonify(serialize_meal(meal))

    @app.route("/api/checkout/create-order", methods=["POST"])
    @jwt_required()
    def create_checkout_order():
        current_user, error = require_user()
        if error:
            return error

        payload = get_json_payload()
        try:
            result = checkout_service.create_order(current_user, payload)
        except CheckoutError:
            raise
        except Exception:
            app.logger.exception(
                "Create order failed for user %s", current_user.get("_id")
            )
            raise InternalError("Failed to create order")

        record_audit_log(
            current_user["_id"],
            "Created checkout order",
            {
                "order_id": result["orderId"],
                "amount": result["amount"],
                "currency": result["currency"],
                "coupon": payload.get("couponCode"),
            },
        )
        return jsonify(result)

    # No session token here: the access token can expire during the gateway round-trip.
    @app.route("/api/checkout/verify", methods=["POST"])
    def verify_checkout_payment():
        payload = get_json_payload()
        try:
            order_document = checkout_service.verify_payment(payload)
        except CheckoutError as exc:
            if exc.status_code == 400 and payload.get("orderId"):
                record_audit_log(
                    None,
                    "Payment verification rejected",
                    {"order_id": payload.get("orderId"), "reason": exc.message},
                )
            raise
        except Exception:
            app.logger.exception(
                "Payment verification failed for order %s", payload.get("orderId")
            )
            raise InternalError("Verification failed")

        return jsonify(
            {
                "message": "Payment verified successfully",
                "order": serialize_order(order_document),
            }
        )

    @app.route("/api/coupons/apply", methods=["POST"])
    @jwt_required()
    def apply_coupon():
        current_user, error = require_user()
        if error:
            return error

        payload = get_json_payload()
        cart_total = max(safe_float(payload.get("cartTotal"), 0.0), 0.0)
        preview = coupon_ledger.preview(payload.get("code"), current_user["_id"], cart_total)
        return jsonify(preview)

    @app.route("/api/coupons/available", methods=["GET"])
    @jwt_required()
    def list_available_coupons():
        current_user, error = require_user()
        if error:
            return error

        cart_total = max(safe_float(request.args.get("cartTotal"), 0.0), 0.0)
        coupons = coupon_ledger.list_available(current_user["_id"], cart_total)
        return jsonify([serialize_coupon(c, include_usage=False) for c in coupons])

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        current_user, error = require_user()
        if error:
            return error

        cursor = (
            db.orders.find({"user": current_user["_id"]})
            .sort([("createdAt", -1), ("_id", -1)])
            .limit(ORDER_HISTORY_LIMIT)
        )
        return jsonify({"orders": [serialize_order(document) for document in cursor]})

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order_detail(order_id: str):
        current_user, error = require_user()
        if error:
            return error

        order_document = load_order(db.orders, order_id)
        is_owner = order_document.get("user") == current_user["_id"]
        if not is_owner and current_user.get("role") != "admin":
            return jsonify({"message": "Order not found"}), 404
        return jsonify({"order": serialize_order(order_document)})

    # --- Admin Routes ---

    @app.route("/api/admin/coupons", methods=["GET"])
    @jwt_required()
    def admin_list_coupons():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        return jsonify([serialize_coupon(c) for c in coupon_ledger.list_all()])

    @app.route("/api/admin/coupons", methods=["POST"])
    @jwt_required()
    def admin_create_coupon():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        created = coupon_ledger.create(request.get_json(silent=True))
        record_audit_log(admin_user["_id"], "Created coupon", {"code": created["code"]})
        return jsonify(serialize_coupon(created)), 201

    @app.route("/api/admin/coupons/<coupon_id>", methods=["PATCH"])
    @jwt_required()
    def admin_update_coupon(coupon_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        updated = coupon_ledger.update(coupon_id, request.get_json(silent=True))
        record_audit_log(admin_user["_id"], "Updated coupon", {"code": updated.get("code")})
        return jsonify(serialize_coupon(updated))

    @app.route("/api/admin/coupons/<coupon_id>/toggle", methods=["PATCH"])
    @jwt_required()
    def admin_toggle_coupon(coupon_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        toggled = coupon_ledger.toggle(coupon_id)
        record_audit_log(
            admin_user["_id"],
            "Toggled coupon",
            {"code": toggled.get("code"), "is_active": toggled.get("isActive")},
        )
        return jsonify(serialize_coupon(toggled))

    @app.route("/api/admin/coupons/<coupon_id>", methods=["DELETE"])
    @jwt_required()
    def admin_delete_coupon(coupon_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        coupon_ledger.delete(coupon_id)
        record_audit_log(admin_user["_id"], "Deleted coupon", {"coupon_id": coupon_id})
        return jsonify({"message": "Coupon deleted"})

    # --- CLI ---

    @app.cli.command("create-user")
    @click.option("--name", required=True)
    @click.option("--email", required=True)
    @click.option("--password", required=True)
    @click.option("--role", default="user", show_default=True)
    def create_user_command(name, email, password, role):
        normalized_email = normalize_email(email)
        if not re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", normalized_email):
            raise click.BadParameter("Enter a valid email address.", param_hint="--email")
        normalized_role = role.strip().lower()
        if normalized_role not in ALLOWED_USER_ROLES:
            raise click.BadParameter("Role must be 'user' or 'admin'.", param_hint="--role")

        try:
            result = db.users.insert_one(
                {
                    "name": name.strip(),
                    "email": normalized_email,
                    "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()),
                    "role": normalized_role,
                    "isDeactivated": False,
                    "isFrozen": False,
                    "createdAt": datetime.utcnow(),
                }
            )
        except DuplicateKeyError:
            raise click.ClickException("Email already exists.")
        click.echo(f"User created: {result.inserted_id} {normalized_email}")

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
