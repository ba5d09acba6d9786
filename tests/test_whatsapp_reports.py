from datetime import date, datetime, timezone
from unittest.mock import patch

import pytest

from conftest import link
from errors import ServiceError
from jobs import whatsapp_reports as job

# segunda-feira, 09:00 em Brasília
NOW = datetime(2024, 3, 11, 12, 0, tzinfo=timezone.utc)


def _setting(**overrides):
    setting = {
        "agency_id": "m1",
        "client_id": "c1",
        "phone_number": "5511999990000",
        "frequency": "daily",
        "weekday": None,
        "send_time": "09:00",
        "is_active": True,
        "metrics": {"investment": True, "revenue": True},
        "include_comparison": False,
        "report_period_type": "yesterday",
    }
    setting.update(overrides)
    return setting


@pytest.fixture
def reports_db(fake_db):
    link(fake_db, "m1", "c1")
    fake_db.rows("whatsapp_connections").append(
        {"agency_id": "m1", "provider": "meta", "status": "connected", "phone_number_id": "pn-1", "access_token": "wa-token"}
    )
    fake_db.rows("daily_metrics").append({"client_id": "c1", "date": "2024-03-10", "spend": 150, "revenue": 450})
    return fake_db


def test_render_report(reports_db):
    rendered = job.render_report(reports_db, _setting(), today=date(2024, 3, 11))

    assert rendered["period"] == {"start": "2024-03-10", "end": "2024-03-10"}
    assert rendered["report_period_type"] == "yesterday"
    assert "Loja Azul" in rendered["message"]
    assert "150" in rendered["message"]


def test_dispatch_without_settings(fake_db):
    assert job.dispatch_reports(NOW) == {"processed": 0, "sent": 0, "failed": 0, "message": "No active settings"}


def test_dispatch_sends_and_logs(reports_db):
    reports_db.rows("whatsapp_report_settings").append(_setting())

    with patch("meta.send_whatsapp_text") as send:
        result = job.dispatch_reports(NOW)

    assert result == {"processed": 1, "sent": 1, "failed": 0}
    phone_number_id, token, phone, message = send.call_args[0]
    assert (phone_number_id, token, phone) == ("pn-1", "wa-token", "5511999990000")
    assert "Loja Azul" in message
    (log,) = reports_db.rows("whatsapp_report_logs")
    assert log["status"] == "success"
    assert log["period_start"] == "2024-03-10"


@pytest.mark.parametrize(
    "overrides",
    [
        {"send_time": "10:00"},
        {"frequency": "weekly", "weekday": 3},
        {"phone_number": ""},
    ],
)
def test_dispatch_skips_when_not_due(reports_db, overrides):
    reports_db.rows("whatsapp_report_settings").append(_setting(**overrides))

    with patch("meta.send_whatsapp_text") as send:
        result = job.dispatch_reports(NOW)

    assert result == {"processed": 1, "sent": 0, "failed": 0}
    send.assert_not_called()


def test_dispatch_weekly_on_matching_weekday(reports_db):
    reports_db.rows("whatsapp_report_settings").append(_setting(frequency="weekly", weekday=1))
    with patch("meta.send_whatsapp_text"):
        assert job.dispatch_reports(NOW)["sent"] == 1


def test_dispatch_skips_when_already_sent_today(reports_db):
    reports_db.rows("whatsapp_report_settings").append(_setting())
    reports_db.rows("whatsapp_report_logs").append(
        {"agency_id": "m1", "client_id": "c1", "status": "success", "sent_at": "2024-03-11T11:58:00+00:00"}
    )
    with patch("meta.send_whatsapp_text") as send:
        result = job.dispatch_reports(NOW)
    assert result["sent"] == 0
    send.assert_not_called()


def test_dispatch_uses_brasilia_day_for_weekly_reports(reports_db):
    late_sunday = datetime(2024, 3, 18, 1, 0, tzinfo=timezone.utc)
    reports_db.rows("whatsapp_report_settings").append(_setting(frequency="weekly", weekday=0, send_time="22:00"))
    reports_db.rows("whatsapp_report_logs").append(
        {"agency_id": "m1", "client_id": "c1", "status": "success", "sent_at": "2024-03-17T02:30:00+00:00"}
    )
    with patch("meta.send_whatsapp_text") as send:
        result = job.dispatch_reports(late_sunday)
    assert result["sent"] == 1
    send.assert_called_once()


def test_dispatch_logs_failures(reports_db):
    reports_db.tables["whatsapp_connections"] = []
    reports_db.rows("whatsapp_report_settings").append(_setting())

    result = job.dispatch_reports(NOW)

    assert result == {"processed": 1, "sent": 0, "failed": 1}
    (log,) = reports_db.rows("whatsapp_report_logs")
    assert log["status"] == "error"
    assert log["error_message"] == "No active WhatsApp connection found"


def test_preview_report_applies_overrides(reports_db):
    reports_db.rows("whatsapp_report_settings").append(_setting(report_period_type="last_7_days"))

    with patch("jobs.whatsapp_reports.report_period", return_value={"start": "2024-03-10", "end": "2024-03-10"}):
        preview = job.preview_report("m1", "c1", {"report_period_type": "yesterday", "frequency": "daily"})

    assert preview["period"] == {"start": "2024-03-10", "end": "2024-03-10"}
    assert "Loja Azul" in preview["message"]


def test_preview_report_requires_link(reports_db):
    with pytest.raises(ServiceError) as exc:
        job.preview_report("m2", "c1")
    assert exc.value.status == 403
