from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

from orderflow.core.config import settings
from orderflow.services import notification_service
from orderflow.tasks.notification_tasks import build_email, order_confirmation_text, order_status_text


def _order(**overrides):
    order = SimpleNamespace(
        order_number="ORD2610190001",
        user=SimpleNamespace(full_name="Hina Raza", email="hina@example.com"),
        items=[
            SimpleNamespace(
                product_name="Linen Shirt",
                size="M",
                color="White",
                quantity=2,
                unit_price=Decimal("29.99"),
                total_price=Decimal("59.98"),
            )
        ],
        subtotal=Decimal("59.98"),
        discount_amount=Decimal("6.00"),
        tax_price=Decimal("0.00"),
        shipping_price=Decimal("200.00"),
        total_price=Decimal("253.98"),
        currency="USD",
        tracking_number="TRK123",
        shipping_carrier="TCS",
        estimated_delivery=datetime(2026, 10, 24),
        cancel_reason=None,
    )
    for key, value in overrides.items():
        setattr(order, key, value)
    return order


def test_confirmation_text_lists_lines_and_totals():
    text = order_confirmation_text(_order())

    assert "Thanks for your order ORD2610190001." in text
    assert "2 x Linen Shirt (M, White) @ 29.99 = 59.98" in text
    assert "Total: 253.98 USD" in text


def test_shipped_text_includes_tracking():
    text = order_status_text(_order(), "processing", "shipped")

    assert "is now shipped (was processing)" in text
    assert "Tracking number: TRK123 via TCS" in text
    assert "Estimated delivery: 2026-10-24" in text


def test_build_email_headers():
    msg = build_email(to="hina@example.com", subject="Hi", text="Body", from_email="orders@example.com")

    assert msg["To"] == "hina@example.com"
    assert msg["From"] == "orders@example.com"
    assert msg.get_content().strip() == "Body"


def test_notifications_disabled_never_enqueue(monkeypatch):
    monkeypatch.setattr(settings, "NOTIFICATIONS_ENABLED", False)
    calls = []
    monkeypatch.setattr(
        "orderflow.tasks.notification_tasks.send_order_confirmation.delay",
        lambda *args: calls.append(args),
    )

    notification_service.notify_order_confirmation(1)

    assert calls == []


def test_enqueue_failure_does_not_propagate(monkeypatch):
    monkeypatch.setattr(settings, "NOTIFICATIONS_ENABLED", True)

    def broker_down(*args):
        raise ConnectionError("broker unavailable")

    monkeypatch.setattr("orderflow.tasks.notification_tasks.send_order_status_update.delay", broker_down)

    notification_service.notify_status_change(1, "pending", "confirmed")
