from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

import hotmart
from errors import ServiceError


@pytest.fixture
def auth_admin():
    admin = MagicMock()
    admin.list_users.return_value = [SimpleNamespace(id="user-1", email="Comprador@Example.com")]
    admin.create_user.return_value = SimpleNamespace(user=SimpleNamespace(id="user-new"))
    supabase = SimpleNamespace(auth=SimpleNamespace(admin=admin))
    with patch("hotmart.HOTMART_TOKEN", "hot-secret"), \
            patch("hotmart.require_supabase_client", return_value=supabase):
        yield admin


def _event(event, email="comprador@example.com", **data):
    payload = {"buyer": {"email": email, "name": "Comprador"}}
    payload.update(data)
    return {"hottok": "hot-secret", "event": event, "data": payload}


def test_rejects_missing_or_wrong_token(fake_db):
    with patch("hotmart.HOTMART_TOKEN", None):
        with pytest.raises(ServiceError) as exc:
            hotmart.process_webhook({"hottok": "x"})
        assert exc.value.status == 500

    with patch("hotmart.HOTMART_TOKEN", "hot-secret"):
        with pytest.raises(ServiceError) as exc:
            hotmart.process_webhook({"hottok": "errado"})
        assert exc.value.status == 401

        for hottok in (None, 12345, "hot-secrét"):
            with pytest.raises(ServiceError) as exc:
                hotmart.process_webhook({"hottok": hottok})
            assert exc.value.status == 401
    assert fake_db.rows("hotmart_webhook_logs") == []


def test_approved_purchase_activates_subscription(fake_db, auth_admin):
    fake_db.rows("plans").append({"id": "plan-1", "hotmart_product_id": "123", "is_active": True})

    result = hotmart.process_webhook(
        _event(
            "PURCHASE_APPROVED",
            product={"id": 123},
            purchase={"transaction": "HP-1"},
            subscription={"subscriber": {"code": "SUB-1"}},
        )
    )

    assert result == {"success": True}
    (subscription,) = fake_db.rows("subscriptions")
    assert subscription["user_id"] == "user-1"
    assert subscription["plan_id"] == "plan-1"
    assert subscription["status"] == "active"
    assert subscription["hotmart_transaction_id"] == "HP-1"
    assert subscription["hotmart_subscription_id"] == "SUB-1"
    (log,) = fake_db.rows("hotmart_webhook_logs")
    assert log["processed"] is True
    auth_admin.create_user.assert_not_called()


def test_approved_purchase_creates_missing_user(fake_db, auth_admin):
    hotmart.process_webhook(_event("PURCHASE_COMPLETE", email="novo@example.com"))

    auth_admin.create_user.assert_called_once()
    assert auth_admin.create_user.call_args[0][0]["email"] == "novo@example.com"
    assert fake_db.rows("subscriptions")[0]["user_id"] == "user-new"
    assert fake_db.rows("subscriptions")[0]["plan_id"] is None


def test_approved_purchase_without_email(fake_db, auth_admin):
    with pytest.raises(ServiceError) as exc:
        hotmart.process_webhook({"hottok": "hot-secret", "event": "PURCHASE_APPROVED", "data": {}})
    assert exc.value.status == 400


@pytest.mark.parametrize("event, status", [("PURCHASE_CANCELED", "cancelled"), ("PURCHASE_REFUNDED", "refunded")])
def test_cancel_and_refund(fake_db, auth_admin, event, status):
    fake_db.rows("subscriptions").append({"user_id": "user-1", "status": "active"})

    hotmart.process_webhook(_event(event))

    subscription = fake_db.rows("subscriptions")[0]
    assert subscription["status"] == status
    assert subscription["cancelled_at"]
    assert fake_db.rows("hotmart_webhook_logs")[0]["processed"] is False


def test_unknown_event_is_logged_only(fake_db, auth_admin):
    hotmart.process_webhook(_event("PURCHASE_DELAYED"))
    assert fake_db.rows("subscriptions") == []
    assert len(fake_db.rows("hotmart_webhook_logs")) == 1


def test_get_subscription_with_plan(fake_db):
    fake_db.rows("plans").append(
        {"id": "plan-1", "name": "Fundadores", "max_clients": 3, "max_ad_accounts": 5, "features": {"whatsapp_reports": True}}
    )
    fake_db.rows("subscriptions").append({"user_id": "user-1", "plan_id": "plan-1", "status": "active"})

    result = hotmart.get_subscription("user-1")

    assert result["is_active"] is True
    assert result["plan_name"] == "Fundadores"
    assert result["max_clients"] == 3
    assert result["subscription"]["plan"]["id"] == "plan-1"
    assert hotmart.has_feature(result, "whatsapp_reports")
    assert not hotmart.has_feature(result, "balance_alerts")


def test_get_subscription_without_active_plan(fake_db):
    fake_db.rows("subscriptions").append({"user_id": "user-1", "status": "cancelled"})
    result = hotmart.get_subscription("user-1")
    assert result["subscription"] is None
    assert result["is_active"] is False
    assert result["max_clients"] == 0
    assert not hotmart.has_feature(None, "anything")
