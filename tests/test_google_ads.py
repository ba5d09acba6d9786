from unittest.mock import MagicMock, patch

import pytest

import google_ads


def _response(status=200, payload=None, text=""):
    r = MagicMock()
    r.status_code = status
    r.ok = status < 400
    r.json.return_value = payload if payload is not None else {}
    r.text = text
    return r


def test_micros_and_ids():
    assert google_ads.micros_to_units("2500000") == 2.5
    assert google_ads.micros_to_units(None) == 0
    assert google_ads.clean_customer_id("123-456-7890") == "1234567890"


def test_date_clause():
    assert google_ads.date_clause(day="2024-03-01") == "segments.date = '2024-03-01'"
    assert google_ads.date_clause("LAST_7_DAYS") == "segments.date DURING LAST_7_DAYS"
    assert "segments.date = '2024-03-01'" in google_ads.campaigns_query(day="2024-03-01")


@patch("google_ads.requests.post")
def test_search_stream_flattens_batches(mock_post):
    mock_post.return_value = _response(200, [{"results": [{"a": 1}]}, {"results": [{"a": 2}]}])
    results = google_ads.search_stream("123-456", "tok", "SELECT 1")
    assert results == [{"a": 1}, {"a": 2}]
    assert mock_post.call_args[0][0].endswith("/customers/123456/googleAds:searchStream")
    assert mock_post.call_args[1]["timeout"] == 30


@patch("google_ads.time.sleep")
@patch("google_ads.requests.post")
def test_search_stream_error(mock_post, mock_sleep):
    mock_post.return_value = _response(403, [{"error": {"message": "denied", "code": 403, "status": "PERMISSION_DENIED"}}])
    with pytest.raises(google_ads.GoogleAPIError) as exc:
        google_ads.search_stream("1", "tok", "SELECT 1")
    assert exc.value.error_type == "PERMISSION_DENIED"
    assert str(exc.value) == "denied"


@patch.object(google_ads, "CLIENT_SECRET", "secret")
@patch.object(google_ads, "CLIENT_ID", "id")
@patch("google_ads.requests.post")
def test_refresh_access_token(mock_post):
    mock_post.return_value = _response(200, {"access_token": "new"})
    assert google_ads.refresh_access_token("refresh") == "new"
    assert mock_post.call_args[1]["data"]["grant_type"] == "refresh_token"


@patch.object(google_ads, "CLIENT_ID", None)
def test_refresh_without_config():
    with pytest.raises(google_ads.GoogleAPIError) as exc:
        google_ads.refresh_access_token("refresh")
    assert exc.value.status == 500
