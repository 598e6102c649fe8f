import itertools
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from orderflow.core.exceptions import IllegalTransition, ImmutableOrderItem
from orderflow.core.security import create_access_token
from orderflow.models.order import Order, OrderStatus, PaymentMethod
from orderflow.models.order_status_history import OrderStatusHistory
from orderflow.models.product import Product
from orderflow.models.user import User, UserRole
from orderflow.schemas.order import OrderCreate
from orderflow.services.order_service import OrderService
from orderflow.services.order_tracking_service import ALLOWED_TRANSITIONS, OrderTrackingService, can_transition


def _create_user(db: Session, email: str, role: UserRole = UserRole.CUSTOMER) -> User:
    user = User(email=email, full_name=f"{role.value.title()} User", role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _create_product(db: Session, sku: str, stock: int = 10) -> Product:
    product = Product(name=f"Tracked {sku}", sku=sku, price=Decimal("40.00"), total_stock=stock, is_active=True)
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


def _auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}


def _place_order(
    db: Session,
    user: User,
    product: Product,
    quantity: int = 1,
    payment_method: PaymentMethod = PaymentMethod.COD,
) -> Order:
    order_data = OrderCreate.model_validate(
        {
            "shipping_address": {
                "first_name": "Bilal",
                "last_name": "Ahmed",
                "email": "bilal@example.com",
                "phone": "03211234567",
                "address": "4 Canal View",
                "city": "Karachi",
                "state": "Sindh",
                "zip_code": "75500",
            },
            "payment_method": payment_method.value,
            "items": [{"product_id": product.id, "quantity": quantity}],
            "idempotency_key": str(uuid4()),
        }
    )
    order, _ = OrderService.create_order(db, user, order_data)
    return order


def test_transition_table():
    assert can_transition(OrderStatus.PENDING, OrderStatus.CONFIRMED)
    assert can_transition(OrderStatus.DELIVERED, OrderStatus.REFUNDED)
    assert not can_transition(OrderStatus.SHIPPED, OrderStatus.CONFIRMED)
    assert not can_transition(OrderStatus.PENDING, OrderStatus.SHIPPED)
    assert ALLOWED_TRANSITIONS[OrderStatus.CANCELLED] == frozenset()
    assert ALLOWED_TRANSITIONS[OrderStatus.REFUNDED] == frozenset()
    assert set(ALLOWED_TRANSITIONS) == set(OrderStatus)


@pytest.mark.parametrize("current, requested", list(itertools.product(OrderStatus, OrderStatus)))
def test_update_status_over_every_pair(db_session: Session, current: OrderStatus, requested: OrderStatus):
    admin = _create_user(db_session, "matrix-admin@example.com", UserRole.ADMIN)
    customer = _create_user(db_session, "matrix-buyer@example.com")
    order = _place_order(db_session, customer, _create_product(db_session, "TRK-MX"))
    order.status = current
    db_session.commit()
    history_before = db_session.query(OrderStatusHistory).filter(OrderStatusHistory.order_id == order.id).count()

    if requested in ALLOWED_TRANSITIONS[current]:
        updated = OrderTrackingService.update_status(db_session, order.id, requested, actor_id=admin.id)
        assert updated.status == requested
        expected_history = history_before + 1
    else:
        with pytest.raises(IllegalTransition):
            OrderTrackingService.update_status(db_session, order.id, requested, actor_id=admin.id)
        db_session.expire_all()
        assert db_session.get(Order, order.id).status == current
        expected_history = history_before

    history = (
        db_session.query(OrderStatusHistory)
        .filter(OrderStatusHistory.order_id == order.id)
        .order_by(OrderStatusHistory.id)
        .all()
    )
    assert len(history) == expected_history
    if expected_history > history_before:
        assert (history[-1].old_status, history[-1].status) == (current.value, requested.value)


def test_admin_walks_order_to_delivery(client: TestClient, db_session: Session):
    admin = _create_user(db_session, "admin@example.com", UserRole.ADMIN)
    customer = _create_user(db_session, "buyer@example.com")
    order = _place_order(db_session, customer, _create_product(db_session, "TRK-1"))
    headers = _auth_headers(admin)

    for body in (
        {"status": "confirmed"},
        {"status": "processing"},
        {"status": "shipped", "tracking_number": "TRK123", "shipping_carrier": "TCS"},
        {"status": "delivered", "note": "Left with reception"},
    ):
        response = client.put(f"/api/v1/orders/{order.id}/status", json=body, headers=headers)
        assert response.status_code == 200, response.json()

    data = response.json()["data"]
    assert data["status"] == "delivered"
    assert data["isDelivered"] is True
    assert data["deliveredAt"] is not None
    assert data["trackingNumber"] == "TRK123"
    assert data["estimatedDelivery"] is not None

    history = [entry["status"] for entry in data["statusHistory"]]
    assert history == ["pending", "confirmed", "processing", "shipped", "delivered"]
    assert data["statusHistory"][-1]["oldStatus"] == "shipped"
    assert data["statusHistory"][-1]["changedBy"] == admin.id


def test_illegal_transition_is_rejected(client: TestClient, db_session: Session):
    admin = _create_user(db_session, "admin2@example.com", UserRole.ADMIN)
    customer = _create_user(db_session, "buyer2@example.com")
    order = _place_order(db_session, customer, _create_product(db_session, "TRK-2"))
    headers = _auth_headers(admin)
    for status in ("confirmed", "processing", "shipped"):
        client.put(f"/api/v1/orders/{order.id}/status", json={"status": status}, headers=headers)

    response = client.put(f"/api/v1/orders/{order.id}/status", json={"status": "confirmed"}, headers=headers)

    assert response.status_code == 409
    assert response.json()["errors"] == [{"code": "illegal_transition"}]
    assert response.json()["message"] == "Cannot transition from shipped to confirmed"
    db_session.expire_all()
    assert db_session.get(Order, order.id).status == OrderStatus.SHIPPED
    assert db_session.query(OrderStatusHistory).filter_by(order_id=order.id).count() == 4


def test_status_update_requires_admin(client: TestClient, db_session: Session):
    customer = _create_user(db_session, "buyer3@example.com")
    order = _place_order(db_session, customer, _create_product(db_session, "TRK-3"))

    response = client.put(
        f"/api/v1/orders/{order.id}/status",
        json={"status": "confirmed"},
        headers=_auth_headers(customer),
    )

    assert response.status_code == 403


def test_admin_cancel_releases_stock(db_session: Session):
    admin = _create_user(db_session, "admin3@example.com", UserRole.ADMIN)
    customer = _create_user(db_session, "buyer4@example.com")
    product = _create_product(db_session, "TRK-4", stock=10)
    order = _place_order(db_session, customer, product, quantity=4)
    OrderTrackingService.update_status(db_session, order.id, OrderStatus.CONFIRMED, actor_id=admin.id)
    OrderTrackingService.update_status(db_session, order.id, OrderStatus.PROCESSING, actor_id=admin.id)

    order = OrderTrackingService.update_status(
        db_session, order.id, OrderStatus.CANCELLED, note="Warehouse damage", actor_id=admin.id
    )

    assert order.cancelled_at is not None
    assert order.cancel_reason == "Warehouse damage"
    db_session.refresh(product)
    assert product.total_stock == 10
    assert product.sold_count == 0


def test_terminal_states_reject_everything(db_session: Session):
    customer = _create_user(db_session, "buyer5@example.com")
    order = _place_order(db_session, customer, _create_product(db_session, "TRK-5"))
    OrderTrackingService.update_status(db_session, order.id, OrderStatus.CANCELLED)

    for status in OrderStatus:
        with pytest.raises(IllegalTransition):
            OrderTrackingService.update_status(db_session, order.id, status)


def test_tracking_view(client: TestClient, db_session: Session):
    admin = _create_user(db_session, "admin4@example.com", UserRole.ADMIN)
    customer = _create_user(db_session, "buyer6@example.com")
    stranger = _create_user(db_session, "nosy@example.com")
    order = _place_order(db_session, customer, _create_product(db_session, "TRK-6"))
    OrderTrackingService.update_status(
        db_session, order.id, OrderStatus.CONFIRMED, note="Checked by ops", actor_id=admin.id
    )

    response = client.get(f"/api/v1/orders/{order.id}/tracking", headers=_auth_headers(customer))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["current_status"] == "confirmed"
    assert [entry["status"] for entry in data["status_history"]] == ["pending", "confirmed"]
    assert data["status_history"][1]["changer_name"] == "Admin User"
    assert data["status_history"][1]["note"] == "Checked by ops"

    assert client.get(f"/api/v1/orders/{order.id}/tracking", headers=_auth_headers(admin)).status_code == 200
    assert client.get(f"/api/v1/orders/{order.id}/tracking", headers=_auth_headers(stranger)).status_code == 403


def test_order_items_are_immutable(db_session: Session):
    customer = _create_user(db_session, "buyer7@example.com")
    order = _place_order(db_session, customer, _create_product(db_session, "TRK-7"))

    order.items[0].quantity = 99
    with pytest.raises(ImmutableOrderItem):
        db_session.commit()
    db_session.rollback()


def test_status_history_is_append_only(db_session: Session):
    customer = _create_user(db_session, "buyer8@example.com")
    order = _place_order(db_session, customer, _create_product(db_session, "TRK-8"))

    order.status_history[0].note = "rewritten"
    with pytest.raises(ValueError):
        db_session.commit()
    db_session.rollback()


def test_expired_online_orders_are_cancelled(db_session: Session):
    customer = _create_user(db_session, "buyer9@example.com")
    product = _create_product(db_session, "TRK-9", stock=5)
    online = _place_order(db_session, customer, product, quantity=2, payment_method=PaymentMethod.STRIPE)
    cod = _place_order(db_session, customer, product, quantity=1)
    assert online.expires_at is not None
    assert cod.expires_at is None

    expired = OrderService.expire_pending_orders(db_session, now=datetime.utcnow() + timedelta(hours=1))

    assert expired == 1
    db_session.expire_all()
    online = db_session.get(Order, online.id)
    assert online.status == OrderStatus.CANCELLED
    assert online.cancel_reason == "Payment window expired"
    assert online.status_history[-1].changed_by is None
    assert db_session.get(Order, cod.id).status == OrderStatus.PENDING
    assert db_session.get(Product, product.id).total_stock == 4


def test_orders_inside_payment_window_are_kept(db_session: Session):
    customer = _create_user(db_session, "buyer10@example.com")
    order = _place_order(
        db_session, customer, _create_product(db_session, "TRK-10"), payment_method=PaymentMethod.PAYPAL
    )

    assert OrderService.expire_pending_orders(db_session) == 0
    db_session.refresh(order)
    assert order.status == OrderStatus.PENDING
