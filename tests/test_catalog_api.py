from datetime import datetime

from bson import ObjectId

from conftest import make_user


def insert_order(database, user_id, created_at):
    return database.orders.insert_one(
        {
            "user": user_id,
            "items": [],
            "totals": {"subtotal": 200, "discount": 0, "payable": 200},
            "payment": {"provider": "razorpay", "status": "created", "gatewayOrderId": "order_x"},
            "createdAt": created_at,
        }
    ).inserted_id


def test_health(client):
    assert client.get("/health").get_json() == {"status": "ok"}


# --- meals ---


def test_meals_default_lists_non_featured(client, meals):
    response = client.get("/api/meals")

    assert [meal["title"] for meal in response.get_json()] == ["Paneer Salad"]


def test_meals_all_and_featured(client, meals):
    everything = client.get("/api/meals?all=true").get_json()
    featured = client.get("/api/meals?featured=true").get_json()

    assert [meal["title"] for meal in everything] == ["Grilled Chicken Bowl", "Paneer Salad"]
    assert [meal["title"] for meal in featured] == ["Grilled Chicken Bowl"]
    assert client.get("/api/meals/featured").get_json() == featured


def test_meal_detail(client, meals):
    response = client.get(f"/api/meals/{meals[1]['_id']}")

    assert response.status_code == 200
    assert response.get_json()["price"] == 150
    assert client.get("/api/meals/nope").status_code == 400
    assert client.get(f"/api/meals/{ObjectId()}").status_code == 404


# --- auth ---


def test_login_returns_token(client, database, user):
    response = client.post(
        "/api/auth/login",
        json={"email": "  ASHA@example.com ", "password": "password123!"},
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body["accessToken"]
    assert body["user"] == {
        "id": str(user["_id"]),
        "name": "Asha",
        "email": "asha@example.com",
        "role": "user",
    }
    assert database.users.find_one({"_id": user["_id"]})["lastLoginAt"] is not None


def test_login_token_opens_protected_routes(client, user):
    token = client.post(
        "/api/auth/login",
        json={"email": "asha@example.com", "password": "password123!"},
    ).get_json()["accessToken"]

    response = client.get("/api/orders", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200


def test_login_rejects_wrong_password(client, user):
    response = client.post(
        "/api/auth/login", json={"email": "asha@example.com", "password": "nope"}
    )

    assert response.status_code == 401
    assert response.get_json()["message"] == "Invalid credentials"


def test_login_rejects_deactivated_account(client, database):
    make_user(database, email="gone@example.com", isDeactivated=True)

    response = client.post(
        "/api/auth/login", json={"email": "gone@example.com", "password": "password123!"}
    )

    assert response.status_code == 403


def test_deleted_user_token_is_refused(client, database, user, auth_headers):
    headers = auth_headers(user)
    database.users.delete_one({"_id": user["_id"]})

    response = client.get("/api/orders", headers=headers)

    assert response.status_code == 401
    assert response.get_json()["message"] == "User not found"


# --- orders ---


def test_order_history_is_scoped_to_user(client, database, user, auth_headers):
    other = make_user(database, email="ravi@example.com")
    older = insert_order(database, user["_id"], datetime(2026, 1, 1))
    newer = insert_order(database, user["_id"], datetime(2026, 2, 1))
    insert_order(database, other["_id"], datetime(2026, 3, 1))

    response = client.get("/api/orders", headers=auth_headers(user))

    ids = [order["id"] for order in response.get_json()["orders"]]
    assert ids == [str(newer), str(older)]


def test_order_detail_hidden_from_other_shoppers(client, database, user, admin, auth_headers):
    other = make_user(database, email="ravi@example.com")
    order_id = insert_order(database, user["_id"], datetime(2026, 1, 1))

    own = client.get(f"/api/orders/{order_id}", headers=auth_headers(user))
    foreign = client.get(f"/api/orders/{order_id}", headers=auth_headers(other))
    as_admin = client.get(f"/api/orders/{order_id}", headers=auth_headers(admin))

    assert own.status_code == 200
    assert own.get_json()["order"]["payment"]["status"] == "created"
    assert foreign.status_code == 404
    assert as_admin.status_code == 200


# --- cli ---


def test_create_user_command(app, database):
    runner = app.test_cli_runner()

    result = runner.invoke(
        args=[
            "create-user",
            "--name",
            "Kitchen Admin",
            "--email",
            "Kitchen@Example.com",
            "--password",
            "s3cret-pass",
            "--role",
            "admin",
        ]
    )

    assert result.exit_code == 0, result.output
    stored = database.users.find_one({"email": "kitchen@example.com"})
    assert stored["role"] == "admin"
    assert stored["password"] != "s3cret-pass"


def test_create_user_command_rejects_bad_role(app):
    result = app.test_cli_runner().invoke(
        args=[
            "create-user",
            "--name",
            "X",
            "--email",
            "x@example.com",
            "--password",
            "pw",
            "--role",
            "owner",
        ]
    )

    assert result.exit_code != 0
