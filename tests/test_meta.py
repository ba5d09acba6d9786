from unittest.mock import MagicMock, patch

import pytest

import meta


def _response(status=200, payload=None, text=""):
    r = MagicMock()
    r.status_code = status
    r.ok = status < 400
    r.json.return_value = payload if payload is not None else {}
    r.text = text
    return r


ACTIONS = [
    {"action_type": "lead", "value": "3"},
    {"action_type": "complete_registration", "value": "2"},
    {"action_type": "onsite_conversion.messaging_conversation_started_7d", "value": "7"},
]


def test_action_helpers():
    assert meta.action_value(ACTIONS, meta.MESSAGE_ACTIONS) == 7
    assert meta.sum_actions(ACTIONS, meta.REGISTRATION_ACTIONS) == 5
    assert meta.sum_actions(ACTIONS, meta.LEAD_ACTIONS) == 3
    assert meta.action_value(None, meta.FOLLOW_ACTIONS) == 0
    values = [{"action_type": "purchase", "value": "199.90"}]
    assert meta.first_action_amount(values, meta.PURCHASE_ACTIONS) == pytest.approx(199.9)


def test_normalize_account_id():
    assert meta.normalize_account_id("123") == "act_123"
    assert meta.normalize_account_id("act_123") == "act_123"


def test_gget_requires_token():
    with pytest.raises(meta.MetaAPIError) as exc:
        meta.gget("/me")
    assert exc.value.status == 401


@patch("meta.time.sleep")
@patch("meta.requests.get")
def test_gget_retries_transient_errors(mock_get, mock_sleep):
    mock_get.side_effect = [_response(503), _response(200, {"data": [1]})]
    assert meta.gget("/me", token="tok") == {"data": [1]}
    assert mock_get.call_count == 2
    mock_sleep.assert_called_once_with(1.5)


@patch("meta.time.sleep")
@patch("meta.requests.get")
def test_gget_raises_typed_error(mock_get, mock_sleep):
    mock_get.return_value = _response(400, {"error": {"message": "Invalid", "code": 190, "type": "OAuthException"}})
    with pytest.raises(meta.MetaAPIError) as exc:
        meta.gget("/me", token="tok")
    assert exc.value.code == 190
    assert exc.value.error_type == "OAuthException"
    assert str(exc.value) == "Invalid"
    mock_sleep.assert_not_called()


@patch("meta.gget")
def test_account_balance_converts_cents(mock_gget):
    mock_gget.return_value = {"balance": "12345", "amount_spent": "500"}
    result = meta.account_balance("999", "tok")
    assert result["balance"] == pytest.approx(123.45)
    assert result["amount_spent"] == pytest.approx(5.0)
    assert mock_gget.call_args[0][0] == "/act_999"


@patch("meta.gget")
def test_account_insights_time_range(mock_gget):
    mock_gget.return_value = {"data": [{"spend": "10"}]}
    assert meta.account_insights("1", "tok", since="2024-03-01", until="2024-03-01") == {"spend": "10"}
    params = mock_gget.call_args[0][1]
    assert params["time_range"] == {"since": "2024-03-01", "until": "2024-03-01"}


def test_flatten_whatsapp_accounts():
    businesses = [
        {
            "id": "b1",
            "name": "Agência",
            "owned_whatsapp_business_accounts": {
                "data": [
                    {
                        "id": "w1",
                        "name": "WABA",
                        "phone_numbers": {"data": [{"id": "p1", "display_phone_number": "+55 11 9999"}]},
                    }
                ]
            },
        }
    ]
    accounts = meta.flatten_whatsapp_accounts(businesses)
    assert accounts == [
        {
            "business_id": "b1",
            "business_name": "Agência",
            "waba_id": "w1",
            "waba_name": "WABA",
            "phone_number_id": "p1",
            "display_phone_number": "+55 11 9999",
        }
    ]


@patch("meta.SECRET", None)
@patch("meta.requests.post")
def test_send_whatsapp_text(mock_post):
    mock_post.return_value = _response(200, {"messages": [{"id": "m1"}]})
    meta.send_whatsapp_text("p1", "tok", "5511999", "Olá")
    url = mock_post.call_args[0][0]
    assert url == f"{meta.GRAPH_ROOT}/{meta.WHATSAPP_VERSION}/p1/messages"
    assert mock_post.call_args[1]["headers"]["Authorization"] == "Bearer tok"
    assert mock_post.call_args[1]["json"]["text"] == {"body": "Olá"}


@patch("meta.time.sleep")
@patch("meta.SECRET", "app-secret")
@patch("meta.requests.post")
def test_gpost_signs_and_retries(mock_post, mock_sleep):
    mock_post.side_effect = [_response(503), _response(200, {"success": True})]
    assert meta.gpost("/act_1/adsets", {"name": "x"}, token="tok") == {"success": True}
    assert mock_post.call_count == 2
    assert f"appsecret_proof={meta.appsecret_proof('tok')}" in mock_post.call_args[0][0]

    with pytest.raises(meta.MetaAPIError) as exc:
        meta.gpost("/act_1/adsets", token=None)
    assert exc.value.status == 401
