from datetime import datetime
from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from orderflow.core.security import create_access_token
from orderflow.models.cart import CartItem
from orderflow.models.order import Order, OrderStatus, PaymentMethod
from orderflow.models.order_item import ResolvedOrderItem
from orderflow.models.product import Product, ProductVariant
from orderflow.models.user import User
from orderflow.schemas.order import OrderCreate
from orderflow.services.order_service import OrderService, next_order_number


def _create_user(db: Session, email: str) -> User:
    user = User(email=email, full_name="Order Test User")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _create_product_variant(db: Session, sku: str, stock_quantity: int, price: str = "29.99") -> ProductVariant:
    product = Product(
        name=f"Product-{sku}",
        sku=sku,
        price=Decimal(price),
        total_stock=stock_quantity,
        is_active=True,
    )
    db.add(product)
    db.flush()

    variant = ProductVariant(
        product_id=product.id,
        size="M",
        color="Red",
        sku=f"{sku}-M-RED",
        stock_quantity=stock_quantity,
        additional_price=0,
        is_active=True,
    )
    db.add(variant)
    db.commit()
    db.refresh(variant)
    return variant


def _auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}


def _order_payload(**overrides) -> dict:
    payload = {
        "shipping_address": {
            "first_name": "Ayesha",
            "last_name": "Khan",
            "email": "ayesha@example.com",
            "phone": "03001234567",
            "address": "12 Mall Road",
            "city": "Lahore",
            "state": "Punjab",
            "zip_code": "54000",
        },
        "idempotency_key": str(uuid4()),
    }
    payload.update(overrides)
    return payload


def _fill_cart(client: TestClient, headers: dict, variant: ProductVariant, quantity: int) -> None:
    response = client.post(
        "/api/v1/cart/items",
        json={"product_id": variant.product_id, "quantity": quantity, "size": "M", "color": "Red"},
        headers=headers,
    )
    assert response.status_code == 201


def test_checkout_from_cart(client: TestClient, db_session: Session):
    user = _create_user(db_session, "checkout@example.com")
    variant = _create_product_variant(db_session, "ORD-1", stock_quantity=5)
    headers = _auth_headers(user)
    _fill_cart(client, headers, variant, 2)
    client.post("/api/v1/cart/coupon", json={"coupon_code": "SAVE10"}, headers=headers)

    response = client.post("/api/v1/orders", json=_order_payload(), headers=headers)

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["orderNumber"].startswith("ORD")
    assert len(data["orderNumber"]) == len("ORD") + 10
    assert data["status"] == "pending"
    assert data["subtotal"] == 59.98
    assert data["discountAmount"] == 6.0
    assert data["discountCode"] == "SAVE10"
    assert data["shippingPrice"] == 200.0
    assert data["totalPrice"] == 253.98
    assert data["stockReserved"] is True
    assert data["canCancel"] is True
    assert data["items"][0]["kind"] == "resolved"
    assert data["items"][0]["sku"] == "ORD-1-M-RED"
    assert data["statusHistory"][0]["status"] == "pending"
    assert data["statusHistory"][0]["changedBy"] == user.id

    db_session.expire_all()
    assert db_session.get(ProductVariant, variant.id).stock_quantity == 3
    assert db_session.query(CartItem).count() == 0


def test_idempotent_checkout_returns_existing_order(client: TestClient, db_session: Session):
    user = _create_user(db_session, "replay@example.com")
    variant = _create_product_variant(db_session, "ORD-2", stock_quantity=5)
    headers = _auth_headers(user)
    payload = _order_payload(items=[{"product_id": variant.product_id, "quantity": 1, "size": "M", "color": "Red"}])

    first = client.post("/api/v1/orders", json=payload, headers=headers)
    second = client.post("/api/v1/orders", json=payload, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["message"] == "Order already exists"
    assert second.json()["data"]["id"] == first.json()["data"]["id"]

    db_session.expire_all()
    assert db_session.query(Order).count() == 1
    assert db_session.get(ProductVariant, variant.id).stock_quantity == 4


def test_empty_cart_checkout(client: TestClient, db_session: Session):
    user = _create_user(db_session, "empty@example.com")

    response = client.post("/api/v1/orders", json=_order_payload(), headers=_auth_headers(user))

    assert response.status_code == 400
    assert response.json()["errors"][0]["code"] == "cart_empty"


def test_idempotency_key_must_be_a_uuid(client: TestClient, db_session: Session):
    user = _create_user(db_session, "badkey@example.com")

    response = client.post(
        "/api/v1/orders",
        json=_order_payload(idempotency_key="x" * 40),
        headers=_auth_headers(user),
    )

    assert response.status_code == 422


def test_unknown_product_becomes_unresolved_item(client: TestClient, db_session: Session):
    user = _create_user(db_session, "adhoc@example.com")

    response = client.post(
        "/api/v1/orders",
        json=_order_payload(items=[{"product_id": 9999, "name": "Gift Wrap", "price": "4.50", "quantity": 2}]),
        headers=_auth_headers(user),
    )

    assert response.status_code == 201
    item = response.json()["data"]["items"][0]
    assert item["kind"] == "unresolved"
    assert item["productId"] is None
    assert item["productName"] == "Gift Wrap"
    assert item["unitPrice"] == 4.5
    assert item["totalPrice"] == 9.0
    assert item["image"] == "/placeholder-image.jpg"
    assert item["sku"].startswith("GENERIC-")


def test_unresolved_item_defaults(client: TestClient, db_session: Session):
    user = _create_user(db_session, "defaults@example.com")

    response = client.post(
        "/api/v1/orders",
        json=_order_payload(items=[{"quantity": 1}]),
        headers=_auth_headers(user),
    )

    item = response.json()["data"]["items"][0]
    assert item["productName"] == "Unknown Product"
    assert item["unitPrice"] == 0.0


def test_catalog_price_wins_over_supplied_price(client: TestClient, db_session: Session):
    user = _create_user(db_session, "price@example.com")
    variant = _create_product_variant(db_session, "ORD-3", stock_quantity=5)

    response = client.post(
        "/api/v1/orders",
        json=_order_payload(
            items=[{"product_id": variant.product_id, "price": "0.01", "quantity": 1, "size": "M", "color": "Red"}]
        ),
        headers=_auth_headers(user),
    )

    assert response.json()["data"]["items"][0]["unitPrice"] == 29.99


def test_unknown_variant_of_existing_product_is_rejected(client: TestClient, db_session: Session):
    user = _create_user(db_session, "badsize@example.com")
    variant = _create_product_variant(db_session, "ORD-3A", stock_quantity=5, price="100.00")

    response = client.post(
        "/api/v1/orders",
        json=_order_payload(
            items=[{"product_id": variant.product_id, "quantity": 5, "size": "XXL", "price": "0.01"}]
        ),
        headers=_auth_headers(user),
    )

    assert response.status_code == 404
    assert response.json()["errors"][0]["code"] == "variant_not_found"
    db_session.expire_all()
    assert db_session.query(Order).count() == 0
    assert db_session.get(ProductVariant, variant.id).stock_quantity == 5


def test_inactive_product_is_rejected_at_checkout(client: TestClient, db_session: Session):
    user = _create_user(db_session, "retired@example.com")
    variant = _create_product_variant(db_session, "ORD-3B", stock_quantity=5)
    product = db_session.get(Product, variant.product_id)
    product.is_active = False
    db_session.commit()

    response = client.post(
        "/api/v1/orders",
        json=_order_payload(
            items=[{"product_id": product.id, "quantity": 1, "size": "M", "color": "Red", "price": "0.01"}]
        ),
        headers=_auth_headers(user),
    )

    assert response.status_code == 400
    assert response.json()["errors"][0]["code"] == "product_unavailable"
    db_session.expire_all()
    assert db_session.query(Order).count() == 0


def test_insufficient_stock_persists_nothing(client: TestClient, db_session: Session):
    user = _create_user(db_session, "scarce@example.com")
    variant = _create_product_variant(db_session, "ORD-4", stock_quantity=1)

    response = client.post(
        "/api/v1/orders",
        json=_order_payload(items=[{"product_id": variant.product_id, "quantity": 2, "size": "M", "color": "Red"}]),
        headers=_auth_headers(user),
    )

    assert response.status_code == 400
    assert response.json()["errors"][0]["code"] == "insufficient_stock"
    db_session.expire_all()
    assert db_session.query(Order).count() == 0
    assert db_session.get(ProductVariant, variant.id).stock_quantity == 1


def test_checkout_without_reservation(client: TestClient, db_session: Session):
    user = _create_user(db_session, "noreserve@example.com")
    variant = _create_product_variant(db_session, "ORD-5", stock_quantity=5)
    headers = _auth_headers(user)

    response = client.post(
        "/api/v1/orders",
        json=_order_payload(
            items=[{"product_id": variant.product_id, "quantity": 2, "size": "M", "color": "Red"}],
            reserve_stock=False,
        ),
        headers=headers,
    )
    order_id = response.json()["data"]["id"]
    assert response.json()["data"]["stockReserved"] is False

    client.put(f"/api/v1/orders/{order_id}/cancel", headers=headers)

    db_session.expire_all()
    assert db_session.get(ProductVariant, variant.id).stock_quantity == 5


def test_explicit_coupon_minimum(client: TestClient, db_session: Session):
    user = _create_user(db_session, "coupon@example.com")
    variant = _create_product_variant(db_session, "ORD-6", stock_quantity=5)

    response = client.post(
        "/api/v1/orders",
        json=_order_payload(
            items=[{"product_id": variant.product_id, "quantity": 1, "size": "M", "color": "Red"}],
            coupon_code="SAVE10",
        ),
        headers=_auth_headers(user),
    )

    assert response.status_code == 400
    assert response.json()["errors"][0]["code"] == "minimum_not_met"


def test_order_numbers_are_sequential_per_day(db_session: Session):
    user = _create_user(db_session, "numbers@example.com")
    variant = _create_product_variant(db_session, "ORD-7", stock_quantity=10)
    first = _place_order(db_session, user, variant)
    second = _place_order(db_session, user, variant)

    assert first.order_number[:-4] == second.order_number[:-4]
    assert int(second.order_number[-4:]) == int(first.order_number[-4:]) + 1


def test_order_number_collision_is_retried(db_session: Session):
    user = _create_user(db_session, "collide@example.com")
    variant = _create_product_variant(db_session, "ORD-8", stock_quantity=10)
    first = _place_order(db_session, user, variant)
    taken = first.order_number

    numbers = iter([taken, f"{taken[:-4]}0042"])
    with patch(
        "orderflow.services.order_service.next_order_number",
        side_effect=lambda db, now=None: next(numbers),
    ):
        second = _place_order(db_session, user, variant)

    assert second.order_number.endswith("0042")
    db_session.expire_all()
    assert db_session.query(Order).count() == 2
    assert db_session.get(ProductVariant, variant.id).stock_quantity == 8


def test_next_order_number_format(db_session: Session):
    assert next_order_number(db_session, datetime(2026, 3, 7)) == "ORD2603070001"


def test_next_order_number_past_9999(db_session: Session):
    user = _create_user(db_session, "busyday@example.com")
    _insert_order(db_session, user, "ORD2603079998")
    _insert_order(db_session, user, "ORD2603079999")

    assert next_order_number(db_session, datetime(2026, 3, 7)) == "ORD26030710000"

    _insert_order(db_session, user, "ORD26030710000")
    assert next_order_number(db_session, datetime(2026, 3, 7)) == "ORD26030710001"


def test_concurrent_submit_with_same_key_returns_first_order(session_factory: sessionmaker):
    setup = session_factory()
    user_id = _create_user(setup, "doubleclick@example.com").id
    variant = _create_product_variant(setup, "ORD-8A", stock_quantity=5)
    variant_id, product_id = variant.id, variant.product_id
    setup.close()

    order_data = OrderCreate.model_validate(
        _order_payload(items=[{"product_id": product_id, "quantity": 1, "size": "M", "color": "Red"}])
    )
    first_session = session_factory()
    second_session = session_factory()
    try:
        winner, created = OrderService.create_order(first_session, first_session.get(User, user_id), order_data)
        assert created

        # The second submit read before the first committed, so its lookup misses
        real_lookup = OrderService._find_existing
        lookups = iter([lambda *args: None, real_lookup])
        with patch.object(OrderService, "_find_existing", side_effect=lambda *args: next(lookups)(*args)):
            replay, created_again = OrderService.create_order(
                second_session, second_session.get(User, user_id), order_data
            )

        assert created_again is False
        assert replay.id == winner.id
        assert second_session.query(Order).count() == 1
        assert second_session.get(ProductVariant, variant_id).stock_quantity == 4
    finally:
        first_session.close()
        second_session.close()


def test_cancel_restores_stock(client: TestClient, db_session: Session):
    user = _create_user(db_session, "cancel@example.com")
    variant = _create_product_variant(db_session, "ORD-9", stock_quantity=5)
    headers = _auth_headers(user)
    created = client.post(
        "/api/v1/orders",
        json=_order_payload(items=[{"product_id": variant.product_id, "quantity": 3, "size": "M", "color": "Red"}]),
        headers=headers,
    )
    order_id = created.json()["data"]["id"]

    response = client.put(f"/api/v1/orders/{order_id}/cancel", json={"reason": "Changed my mind"}, headers=headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "cancelled"
    assert data["cancelReason"] == "Changed my mind"
    assert data["stockReserved"] is False
    db_session.expire_all()
    restored = db_session.get(ProductVariant, variant.id)
    assert restored.stock_quantity == 5
    assert restored.sold_count == 0

    response = client.put(f"/api/v1/orders/{order_id}/cancel", headers=headers)
    assert response.status_code == 400
    assert response.json()["errors"][0]["code"] == "order_not_cancellable"


def test_cancel_restores_the_variant_that_was_reserved(client: TestClient, db_session: Session):
    user = _create_user(db_session, "retiredsize@example.com")
    product = Product(name="Two Size Tee", sku="ORD-9A", price=Decimal("20.00"), total_stock=8, is_active=True)
    db_session.add(product)
    db_session.flush()
    active = ProductVariant(
        product_id=product.id, size="M", color="Red", sku="ORD-9A-M", stock_quantity=5, additional_price=0, is_active=True
    )
    retired = ProductVariant(
        product_id=product.id, size="L", color="Red", sku="ORD-9A-L", stock_quantity=3, additional_price=0, is_active=False
    )
    db_session.add_all([active, retired])
    db_session.commit()
    headers = _auth_headers(user)

    created = client.post(
        "/api/v1/orders",
        json=_order_payload(items=[{"product_id": product.id, "quantity": 2}]),
        headers=headers,
    )
    assert created.status_code == 201
    db_session.expire_all()
    assert db_session.query(ResolvedOrderItem).one().variant_id == active.id
    assert db_session.get(ProductVariant, active.id).stock_quantity == 3

    response = client.put(f"/api/v1/orders/{created.json()['data']['id']}/cancel", headers=headers)

    assert response.status_code == 200
    db_session.expire_all()
    restored = db_session.get(ProductVariant, active.id)
    assert restored.stock_quantity == 5
    assert restored.sold_count == 0
    assert db_session.get(ProductVariant, retired.id).stock_quantity == 3
    assert db_session.get(Product, product.id).total_stock == 8


def test_other_users_cannot_see_or_cancel(client: TestClient, db_session: Session):
    owner = _create_user(db_session, "owner@example.com")
    stranger = _create_user(db_session, "stranger@example.com")
    created = client.post(
        "/api/v1/orders",
        json=_order_payload(items=[{"name": "Sticker", "price": "1.00", "quantity": 1}]),
        headers=_auth_headers(owner),
    )
    order_id = created.json()["data"]["id"]

    assert client.get(f"/api/v1/orders/{order_id}", headers=_auth_headers(stranger)).status_code == 403
    assert client.put(f"/api/v1/orders/{order_id}/cancel", headers=_auth_headers(stranger)).status_code == 403
    assert client.get(f"/api/v1/orders/{order_id}", headers=_auth_headers(owner)).status_code == 200
    assert client.get("/api/v1/orders/9999", headers=_auth_headers(owner)).status_code == 404


def test_list_orders_newest_first(client: TestClient, db_session: Session):
    user = _create_user(db_session, "history@example.com")
    headers = _auth_headers(user)
    for name in ("First", "Second"):
        client.post(
            "/api/v1/orders",
            json=_order_payload(items=[{"name": name, "price": "2.00", "quantity": 1}]),
            headers=headers,
        )

    response = client.get("/api/v1/orders", headers=headers)

    names = [order["items"][0]["productName"] for order in response.json()["data"]]
    assert names == ["Second", "First"]


def _place_order(db: Session, user: User, variant: ProductVariant) -> Order:
    order_data = OrderCreate.model_validate(
        _order_payload(items=[{"product_id": variant.product_id, "quantity": 1, "size": "M", "color": "Red"}])
    )
    order, created = OrderService.create_order(db, user, order_data)
    assert created
    return order


def _insert_order(db: Session, user: User, order_number: str) -> Order:
    order = Order(
        order_key=uuid4().hex,
        order_number=order_number,
        user_id=user.id,
        shipping_address={},
        payment_method=PaymentMethod.COD,
        currency="USD",
        subtotal=Decimal("0.00"),
        total_price=Decimal("0.00"),
    )
    db.add(order)
    db.commit()
    return order
