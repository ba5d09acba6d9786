from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

import whatsapp
from errors import ServiceError

ACCOUNT = {"business_id": "b1", "waba_id": "w1", "phone_number_id": "p1"}


def _future(minutes=10):
    return (datetime.now(timezone.utc) + timedelta(minutes=minutes)).isoformat()


@patch("evolution.create_instance", return_value={"instance": {"instanceId": "i-1"}, "qrcode": {"base64": "QR"}})
@patch("evolution.delete_instance")
@patch("evolution.connection_state", return_value=None)
def test_create_instance_returns_qrcode(mock_state, mock_delete, mock_create, fake_db):
    result = whatsapp.evolution_action("agency-1", {"action": "create-instance"})

    assert result["qrcode"] == "QR"
    row = fake_db.rows("whatsapp_connections")[0]
    assert row["status"] == "pending"
    assert row["client_id"] is None
    assert row["instance_id"] == "i-1"
    mock_delete.assert_called_once_with(result["instance_name"])


@patch("evolution.connection_state", return_value="open")
def test_create_instance_already_connected(mock_state, fake_db):
    result = whatsapp.evolution_action("agency-1", {"action": "create-instance", "client_id": "client-1"})
    assert result["already_connected"] is True
    assert fake_db.rows("whatsapp_connections")[0]["status"] == "connected"


@patch("evolution.connection_state", return_value="open")
def test_check_status_marks_connected(mock_state, fake_db):
    fake_db.rows("whatsapp_connections").append(
        {"agency_id": "agency-1", "client_id": None, "instance_name": "inst", "status": "pending", "provider": "evolution"}
    )
    assert whatsapp.evolution_action("agency-1", {"action": "check-status"}) == {"connected": True, "status": "open"}
    assert fake_db.rows("whatsapp_connections")[0]["status"] == "connected"


def test_check_status_without_instance(fake_db):
    assert whatsapp.evolution_action("agency-1", {"action": "check-status"}) == {
        "connected": False,
        "status": "no_instance",
    }


@patch("evolution.send_text", return_value={"key": "1"})
def test_send_message_requires_connected_instance(mock_send, fake_db):
    with pytest.raises(ServiceError) as exc:
        whatsapp.evolution_action("agency-1", {"action": "send-message", "phone": "5511", "message": "oi"})
    assert exc.value.status == 404

    fake_db.rows("whatsapp_connections").append(
        {"agency_id": "agency-1", "client_id": None, "instance_name": "inst", "status": "connected"}
    )
    result = whatsapp.evolution_action("agency-1", {"action": "send-message", "phone": "5511", "message": "oi"})
    assert result["success"] is True
    mock_send.assert_called_once()


def test_invalid_action(fake_db):
    with pytest.raises(ServiceError):
        whatsapp.evolution_action("agency-1", {"action": "reboot"})


def test_pending_accounts_hidden_when_expired(fake_db):
    fake_db.rows("whatsapp_pending_connections").append(
        {"agency_id": "agency-1", "accounts": [ACCOUNT], "expires_at": _future(-5), "created_at": "2024-01-01"}
    )
    assert whatsapp.get_pending_accounts("agency-1") == {"accounts": []}


def test_confirm_selection(fake_db):
    fake_db.rows("whatsapp_pending_connections").append(
        {"id": "pend-1", "agency_id": "agency-1", "accounts": [ACCOUNT], "access_token": "tok",
         "expires_at": _future(), "created_at": "2024-01-01"}
    )

    assert whatsapp.confirm_selection("agency-1", {"waba_id": "w1", "phone_number_id": "p1"}) == {"success": True}
    assert fake_db.rows("whatsapp_pending_connections") == []
    conn = whatsapp.find_cloud_connection(fake_db, "agency-1")
    assert conn["access_token"] == "tok"


def test_confirm_selection_rejects_foreign_account(fake_db):
    fake_db.rows("whatsapp_pending_connections").append(
        {"id": "pend-1", "agency_id": "agency-1", "accounts": [ACCOUNT], "expires_at": _future(), "created_at": "x"}
    )
    with pytest.raises(ServiceError) as exc:
        whatsapp.confirm_selection("agency-1", {"waba_id": "w1", "phone_number_id": "other"})
    assert exc.value.status == 403


def test_confirm_selection_expired(fake_db):
    fake_db.rows("whatsapp_pending_connections").append(
        {"id": "pend-1", "agency_id": "agency-1", "accounts": [ACCOUNT], "expires_at": _future(-1), "created_at": "x"}
    )
    with pytest.raises(ServiceError) as exc:
        whatsapp.confirm_selection("agency-1", {"waba_id": "w1", "phone_number_id": "p1"})
    assert exc.value.status == 410
    assert fake_db.rows("whatsapp_pending_connections") == []


def test_connection_status_hides_token(fake_db):
    fake_db.rows("whatsapp_connections").append(
        {"agency_id": "agency-1", "provider": "cloud", "phone_number_id": "p1", "access_token": "tok", "status": "connected"}
    )
    status = whatsapp.get_connection_status("agency-1")
    assert status["connected"] is True
    assert "access_token" not in status["connection"]


def test_find_cloud_connection_ignores_evolution(fake_db):
    fake_db.rows("whatsapp_connections").append(
        {"agency_id": "agency-1", "provider": "evolution", "instance_name": "inst", "status": "connected"}
    )
    assert whatsapp.find_cloud_connection(fake_db, "agency-1") is None
