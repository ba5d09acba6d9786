from unittest.mock import patch

import pytest

import ads_data
import google_ads

META_INSIGHT = {
    "spend": "200",
    "impressions": "10000",
    "clicks": "100",
    "actions": [{"action_type": "lead", "value": "8"}],
}
META_CAMPAIGNS = [
    {
        "name": "Leads Março",
        "status": "ACTIVE",
        "insights": {"data": [{"spend": "150", "actions": [{"action_type": "lead", "value": "5"}]}]},
    },
    {"name": "Pausada", "status": "PAUSED", "insights": {"data": []}},
]


def _connection(provider, ids, **extra):
    row = {
        "id": f"conn-{provider}",
        "manager_id": "manager-1",
        "provider": provider,
        "connected": True,
        "account_data": [{"id": item, "selected": True} for item in ids] + [{"id": "ignored", "selected": False}],
    }
    row.update(extra)
    return row


def test_normalize_options_defaults():
    assert ads_data.normalize_options({"date_range": "LAST_7_DAYS"})["date_range"] == "LAST_7_DAYS"
    assert ads_data.normalize_options(None)["meta_date_preset"] == "last_30d"


def test_selected_ids():
    assert ads_data.selected_ids(_connection("meta_ads", ["1", "2"])) == ["1", "2"]
    assert ads_data.selected_ids(None) == []


@patch("meta.account_campaigns", return_value=META_CAMPAIGNS)
@patch("meta.account_insights", return_value=META_INSIGHT)
def test_fetch_meta_ads_totals(mock_insights, mock_campaigns):
    result = ads_data.fetch_meta_ads("tok", ["act_1"], "last_7d")

    assert result["investment"] == 200
    assert result["leads"] == 8
    assert result["ctr"] == pytest.approx(1.0)
    assert result["cpa"] == pytest.approx(25.0)
    assert result["campaigns"][0] == {"name": "Leads Março", "status": "Ativa", "spend": 150, "leads": 5, "cpa": 30}
    assert result["campaigns"][1]["status"] == "Pausada"


@patch("google_ads.search_stream")
def test_fetch_google_ads_skips_failing_account(mock_stream):
    mock_stream.side_effect = [
        [{"metrics": {"costMicros": "5000000", "clicks": "10", "impressions": "100", "conversions": "2"}}],
        [{"campaign": {"name": "Search", "status": "ENABLED"}, "metrics": {"costMicros": "5000000", "conversions": "2"}}],
        google_ads.GoogleAPIError(status=403, message="denied"),
    ]
    result = ads_data.fetch_google_ads("tok", ["1", "2"], "LAST_30_DAYS")

    assert result["investment"] == 5
    assert result["ctr"] == pytest.approx(10.0)
    assert result["cost_per_conversion"] == pytest.approx(2.5)
    assert result["campaigns"][0]["cpa"] == pytest.approx(2.5)


@patch("meta.account_campaigns", return_value=[])
@patch("meta.account_insights", return_value=META_INSIGHT)
@patch("google_ads.refresh_access_token", side_effect=google_ads.GoogleAPIError(status=400, message="invalid_grant"))
def test_fetch_ads_data_collects_provider_errors(mock_refresh, mock_insights, mock_campaigns, fake_db):
    fake_db.rows("oauth_connections").extend(
        [
            _connection("meta_ads", ["act_1"], access_token="meta-token"),
            _connection("google_ads", ["123"], refresh_token="refresh"),
        ]
    )

    result = ads_data.fetch_ads_data("manager-1", {})

    assert result["google_ads"] is None
    assert result["ga4"] is None
    assert result["meta_ads"]["investment"] == 200
    assert result["errors"] == [{"provider": "google_ads", "error": "invalid_grant"}]
    assert result["consolidated"]["investment"] == 200


@patch("google_ads.refresh_access_token", return_value="fresh")
def test_refresh_connection_token_persists(mock_refresh, fake_db):
    conn = _connection("google_ads", ["1"], refresh_token="r")
    fake_db.rows("oauth_connections").append(conn)

    assert ads_data.refresh_connection_token(fake_db, conn) == "fresh"
    assert fake_db.rows("oauth_connections")[0]["access_token"] == "fresh"


@patch("ads_data.fetch_ads_data", return_value={"consolidated": {}})
def test_get_ads_overview_uses_cache(mock_fetch, fake_db):
    ads_data.get_ads_overview("manager-1", {"date_range": "LAST_7_DAYS"})
    payload, meta = ads_data.get_ads_overview("manager-1", {"date_range": "LAST_7_DAYS"})

    assert payload == {"consolidated": {}}
    assert meta["source"] == "cache"
    assert mock_fetch.call_count == 1
