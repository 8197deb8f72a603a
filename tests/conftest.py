import hashlib
import hmac
import logging
from datetime import datetime, timedelta

import bcrypt
import mongomock
import pytest
from flask_jwt_extended import create_access_token

from app import create_app
from coupon_ledger import CouponLedger
from errors import UpstreamServiceError
from payment_gateway import RazorpayGateway

GATEWAY_KEY_ID = "rzp_test_key"
GATEWAY_SECRET = "rzp_test_secret"


class RecordingGateway(RazorpayGateway):
    """Razorpay adapter with the HTTP call replaced; signature checks stay real."""

    def __init__(self):
        super().__init__(
            GATEWAY_KEY_ID,
            GATEWAY_SECRET,
            "https://api.razorpay.test",
            5,
            logging.getLogger("tests.gateway"),
        )
        self.calls = []
        self.fail = False

    def create_order(self, amount_minor, currency, receipt):
        if self.fail:
            raise UpstreamServiceError()
        self.calls.append({"amount": amount_minor, "currency": currency, "receipt": receipt})
        return {"id": f"order_test{len(self.calls)}", "amount": amount_minor}


def sign(gateway_order_id: str, gateway_payment_id: str, secret: str = GATEWAY_SECRET) -> str:
    message = f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def future_slot(days: int = 2, time: str = "12:00"):
    return {"date": (datetime.now() + timedelta(days=days)).strftime("%Y-%m-%d"), "time": time}


ADDRESS = {
    "fullName": "Asha Verma",
    "phone": "9876543210",
    "line1": "12 MG Road",
    "city": "Pune",
    "state": "Maharashtra",
    "pincode": "411001",
}


@pytest.fixture
def database():
    return mongomock.MongoClient().macrobox


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def app(database, gateway):
    app = create_app(
        test_config={
            "TESTING": True,
            "JWT_SECRET_KEY": "test-jwt-secret-key-with-enough-length",
            "RAZORPAY_KEY_ID": GATEWAY_KEY_ID,
            "RAZORPAY_KEY_SECRET": GATEWAY_SECRET,
            "RESEND_ORDER_EMAIL_API_KEY": "",
            "TRUSTED_PROXY_HOPS": 0,
        },
        database=database,
        gateway=gateway,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ledger(database):
    return CouponLedger(database.coupons, database.orders, logging.getLogger("tests.ledger"))


def make_user(database, email="asha@example.com", role="user", password="password123!", **extra):
    document = {
        "name": email.split("@")[0].title(),
        "email": email,
        "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=4)),
        "role": role,
        "isDeactivated": False,
        "isFrozen": False,
    }
    document.update(extra)
    document["_id"] = database.users.insert_one(document).inserted_id
    return document


@pytest.fixture
def user(database):
    return make_user(database)


@pytest.fixture
def admin(database):
    return make_user(database, email="admin@example.com", role="admin")


@pytest.fixture
def auth_headers(app):
    def _headers(user_document):
        with app.app_context():
            token = create_access_token(identity=str(user_document["_id"]))
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def meals(database):
    now = datetime.utcnow()
    documents = [
        {
            "title": "Grilled Chicken Bowl",
            "description": "Brown rice, chicken, greens",
            "imageUrl": "https://cdn.example.com/chicken.jpg",
            "price": 200,
            "protein": 30,
            "calories": 400,
            "isFeatured": True,
            "featuredOrder": 1,
            "createdAt": now,
        },
        {
            "title": "Paneer Salad",
            "description": "Paneer tikka over greens",
            "imageUrl": "https://cdn.example.com/paneer.jpg",
            "price": 150,
            "protein": 10,
            "calories": 250,
            "isFeatured": False,
            "featuredOrder": 0,
            "createdAt": now - timedelta(minutes=1),
        },
    ]
    database.meals.insert_many(documents)
    return documents


def make_coupon(database, **overrides):
    now = datetime.utcnow()
    document = {
        "code": "SAVE100",
        "type": "flat",
        "value": 100,
        "minCartTotal": 0,
        "maxDiscount": 0,
        "isActive": True,
        "usageLimitTotal": 0,
        "usageLimitPerUser": 1,
        "usedCount": 0,
        "usedBy": {},
        "validFrom": now - timedelta(days=1),
        "validTo": now + timedelta(days=30),
        "createdAt": now,
        "updatedAt": now,
    }
    document.update(overrides)
    document["_id"] = database.coupons.insert_one(document).inserted_id
    return document
