from unittest.mock import patch

import pytest

from conftest import link
from errors import ServiceError
from jobs import backfill_metrics as job


@pytest.mark.parametrize("value, expected", [(None, 30), ("abc", 30), (0, 30), (-5, 1), (7, 7), ("120", 90)])
def test_clamp_days(value, expected):
    assert job.clamp_days(value) == expected


def test_backfill_requires_client_and_manager(fake_db):
    with pytest.raises(ServiceError) as exc:
        job.backfill_client(None)
    assert exc.value.status == 400

    with pytest.raises(ServiceError) as exc:
        job.backfill_client("c-unknown")
    assert exc.value.status == 404

    link(fake_db, "m1", "c1")
    with pytest.raises(ServiceError) as exc:
        job.backfill_client("c1")
    assert str(exc.value) == "No active connections for manager"


def test_backfill_walks_days_and_logs(fake_db):
    link(fake_db, "m1", "c1")
    fake_db.rows("oauth_connections").append(
        {"manager_id": "m1", "provider": "meta_ads", "connected": True, "access_token": "mt"}
    )
    fake_db.rows("client_meta_ad_accounts").append({"client_user_id": "c1", "ad_account_id": "act_1"})
    calls = []

    def meta_rows(client_id, account_id, token, day, conversion_actions, with_engagement):
        calls.append((day, conversion_actions, with_engagement))
        if len(calls) == 2:
            raise RuntimeError("timeout")
        return [{"client_id": client_id, "account_id": account_id, "platform": "meta", "date": day, "spend": 1}], []

    with patch.object(job, "meta_rows", side_effect=meta_rows), \
            patch.object(job, "get_postgres_client", return_value=fake_db):
        result = job.backfill_client("c1", 3)

    assert result["days_processed"] == 3
    assert result["metrics_upserted"] == 2
    assert len(result["errors"]) == 1
    assert calls[0][1] == job.meta.LEAD_ACTIONS
    assert calls[0][2] is False
    assert len({day for day, _, _ in calls}) == 3

    (log,) = fake_db.rows("ingest_logs")
    assert log["status"] == "succeeded"
    assert log["records_inserted"] == 2
    assert "timeout" in log["error_message"]


def test_backfill_without_log_storage(fake_db):
    link(fake_db, "m1", "c1")
    fake_db.rows("oauth_connections").append(
        {"manager_id": "m1", "provider": "google_ads", "connected": True, "refresh_token": "rt"}
    )
    with patch("google_ads.refresh_access_token", side_effect=RuntimeError("invalid_grant")):
        result = job.backfill_client("c1", 1)

    assert result["metrics_upserted"] == 0
    assert fake_db.rows("ingest_logs") == []


@pytest.mark.parametrize(
    "failing, metrics_upserted, campaigns_upserted, message",
    [
        ("daily_campaigns", 2, 0, "Campaign upsert error for"),
        ("daily_metrics", 0, 2, "Upsert error for"),
    ],
)
def test_backfill_counts_tables_independently(fake_db, failing, metrics_upserted, campaigns_upserted, message):
    link(fake_db, "m1", "c1")
    fake_db.rows("oauth_connections").append(
        {"manager_id": "m1", "provider": "meta_ads", "connected": True, "access_token": "mt"}
    )
    fake_db.rows("client_meta_ad_accounts").append({"client_user_id": "c1", "ad_account_id": "act_1"})
    fake_db.write_errors[failing] = RuntimeError("down")

    def meta_rows(client_id, account_id, token, day, conversion_actions, with_engagement):
        base = {"client_id": client_id, "account_id": account_id, "platform": "meta", "date": day, "spend": 1}
        return [dict(base)], [dict(base, campaign_name="Leads")]

    with patch.object(job, "meta_rows", side_effect=meta_rows):
        result = job.backfill_client("c1", 2)

    assert result["metrics_upserted"] == metrics_upserted
    assert result["campaigns_upserted"] == campaigns_upserted
    assert len(fake_db.rows(failing)) == 0
    assert len(result["errors"]) == 2
    assert all(error.startswith(message) for error in result["errors"])
