# backend/meta.py
import hashlib
import hmac
import json
import os
import time
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlencode

import requests
from dotenv import load_dotenv

from metrics import to_float

load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), ".env"), override=False)

VERSION = os.getenv("META_GRAPH_VERSION", "v19.0")
WHATSAPP_VERSION = os.getenv("META_WHATSAPP_GRAPH_VERSION", "v21.0")
APP_ID = os.getenv("META_APP_ID")
SECRET = os.getenv("META_APP_SECRET")
GRAPH_ROOT = "https://graph.facebook.com"
BASE = f"{GRAPH_ROOT}/{VERSION}"
DEFAULT_TOKEN_EXPIRES_IN = 5_184_000

RETRY_STATUSES = (429, 500, 502, 503)

LEAD_ACTIONS = ("lead", "offsite_conversion.fb_pixel_lead")
REGISTRATION_ACTIONS = LEAD_ACTIONS + (
    "complete_registration",
    "offsite_conversion.fb_pixel_complete_registration",
)
PURCHASE_ACTIONS = ("offsite_conversion.fb_pixel_purchase", "purchase")
MESSAGE_ACTIONS = (
    "onsite_conversion.messaging_conversation_started_7d",
    "onsite_conversion.messaging_first_reply",
)
FOLLOW_ACTIONS = ("follow", "like")
PROFILE_VISIT_ACTIONS = ("page_engagement",)

INSIGHT_FIELDS = "spend,impressions,clicks,actions,action_values,cost_per_action_type,ctr,cpc"


class MetaAPIError(Exception):
    def __init__(self, status: int, message: str, code: Optional[int] = None, error_type: Optional[str] = None,
                 raw: Optional[dict] = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.error_type = error_type
        self.raw = raw or {}


def appsecret_proof(token: Optional[str]) -> Optional[str]:
    if not token or not SECRET:
        return None
    return hmac.new(SECRET.encode(), token.encode(), hashlib.sha256).hexdigest()


def _error_from_response(r: requests.Response) -> MetaAPIError:
    try:
        payload = r.json()
    except ValueError:
        payload = {}
    err = payload.get("error") if isinstance(payload, dict) else None
    message = (err or {}).get("message") if isinstance(err, dict) else None
    return MetaAPIError(
        status=r.status_code,
        message=message or r.text or "Meta Graph API request failed",
        code=(err or {}).get("code") if isinstance(err, dict) else None,
        error_type=(err or {}).get("type") if isinstance(err, dict) else None,
        raw=payload if isinstance(payload, dict) else {"raw": r.text},
    )


def _auth_params(token: str) -> Dict[str, Any]:
    p: Dict[str, Any] = {"access_token": token}
    proof = appsecret_proof(token)
    if proof:
        p["appsecret_proof"] = proof
    return p


def _encode_params(params: Optional[dict]) -> Dict[str, Any]:
    encoded: Dict[str, Any] = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            encoded[key] = json.dumps(value, separators=(",", ":"))
        else:
            encoded[key] = value
    return encoded


def gget(path: str, params: Optional[dict] = None, token: Optional[str] = None, version: Optional[str] = None):
    if not token:
        raise MetaAPIError(status=401, message="Meta access token is missing")
    p = _auth_params(token)
    p.update(_encode_params(params))
    base = f"{GRAPH_ROOT}/{version}" if version else BASE
    url = f"{base}{path}?{urlencode(p, doseq=True)}"
    for i in range(3):  # retry simples
        r = requests.get(url, timeout=15)
        if r.status_code in RETRY_STATUSES and i < 2:
            time.sleep(1.5 * (i + 1))
            continue
        if r.ok:
            return r.json()
        raise _error_from_response(r)
    return {"data": []}


def gpost(path: str, payload: Optional[dict] = None, token: Optional[str] = None, version: Optional[str] = None):
    if not token:
        raise MetaAPIError(status=401, message="Meta access token is missing")
    base = f"{GRAPH_ROOT}/{version}" if version else BASE
    url = f"{base}{path}"
    proof = appsecret_proof(token)
    if proof:
        url = f"{url}?{urlencode({'appsecret_proof': proof})}"
    headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
    for i in range(3):
        r = requests.post(url, json=payload or {}, headers=headers, timeout=15)
        if r.status_code in RETRY_STATUSES and i < 2:
            time.sleep(1.5 * (i + 1))
            continue
        if r.ok:
            return r.json()
        raise _error_from_response(r)
    return {}


def action_value(actions: Optional[Iterable[Dict[str, Any]]], types: Iterable[str]) -> int:
    """Valor da primeira action cujo action_type está em `types`."""
    wanted = set(types)
    for item in actions or []:
        if isinstance(item, dict) and item.get("action_type") in wanted:
            return int(to_float(item.get("value")))
    return 0


def sum_actions(actions: Optional[Iterable[Dict[str, Any]]], types: Iterable[str]) -> int:
    wanted = set(types)
    return int(sum(
        to_float(item.get("value"))
        for item in actions or []
        if isinstance(item, dict) and item.get("action_type") in wanted
    ))


def first_action_amount(values: Optional[Iterable[Dict[str, Any]]], types: Iterable[str]) -> float:
    """Como action_value, mas preserva casas decimais (action_values em moeda)."""
    wanted = set(types)
    for item in values or []:
        if isinstance(item, dict) and item.get("action_type") in wanted:
            return to_float(item.get("value"))
    return 0.0


def normalize_account_id(account_id: str) -> str:
    account_id = str(account_id or "").strip()
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


def _period_params(date_preset: Optional[str], since: Optional[str], until: Optional[str]) -> Dict[str, Any]:
    if since and until:
        return {"time_range": {"since": since, "until": until}}
    return {"date_preset": date_preset or "last_30d"}


def account_insights(
    account_id: str,
    token: str,
    date_preset: Optional[str] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    params = {"fields": INSIGHT_FIELDS}
    params.update(_period_params(date_preset, since, until))
    res = gget(f"/{normalize_account_id(account_id)}/insights", params, token=token)
    rows = res.get("data") or []
    return rows[0] if rows else None


def account_campaigns(
    account_id: str,
    token: str,
    *,
    date_preset: Optional[str] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
    limit: int = 10,
    active_only: bool = False,
) -> List[Dict[str, Any]]:
    if since and until:
        modifier = f".time_range({json.dumps({'since': since, 'until': until}, separators=(',', ':'))})"
    else:
        modifier = f".date_preset({date_preset or 'last_30d'})"
    params: Dict[str, Any] = {
        "fields": f"name,status,objective,insights{modifier}{{spend,actions,action_values}}",
        "limit": limit,
    }
    if active_only:
        params["filtering"] = [{"field": "effective_status", "operator": "IN", "value": ["ACTIVE"]}]
    res = gget(f"/{normalize_account_id(account_id)}/campaigns", params, token=token)
    return res.get("data") or []


def campaign_insight(campaign: Dict[str, Any]) -> Dict[str, Any]:
    rows = ((campaign.get("insights") or {}).get("data")) or []
    return rows[0] if rows else {}


def account_balance(account_id: str, token: str) -> Dict[str, Any]:
    res = gget(
        f"/{normalize_account_id(account_id)}",
        {"fields": "balance,amount_spent"},
        token=token,
        version=WHATSAPP_VERSION,
    )
    return {
        "balance": to_float(res.get("balance")) / 100,
        "amount_spent": to_float(res.get("amount_spent")) / 100,
        "raw": res,
    }


def exchange_code(code: str, redirect_uri: str) -> Dict[str, Any]:
    if not APP_ID or not SECRET:
        raise MetaAPIError(status=500, message="Meta OAuth not configured")
    params = {
        "client_id": APP_ID,
        "client_secret": SECRET,
        "redirect_uri": redirect_uri,
        "code": code,
    }
    r = requests.get(f"{BASE}/oauth/access_token", params=params, timeout=15)
    if not r.ok:
        raise _error_from_response(r)
    data = r.json()
    if not data.get("access_token"):
        raise MetaAPIError(status=r.status_code, message="Meta token exchange returned no token", raw=data)
    return {
        "access_token": data["access_token"],
        "expires_in": int(data.get("expires_in") or DEFAULT_TOKEN_EXPIRES_IN),
    }


def list_ad_accounts(token: str) -> List[Dict[str, Any]]:
    res = gget("/me/adaccounts", {"fields": "id,name,account_status"}, token=token)
    return res.get("data") or []


def list_whatsapp_businesses(token: str) -> List[Dict[str, Any]]:
    fields = (
        "id,name,owned_whatsapp_business_accounts"
        "{id,name,phone_numbers{id,display_phone_number,verified_name}}"
    )
    res = gget("/me/businesses", {"fields": fields}, token=token, version=WHATSAPP_VERSION)
    return res.get("data") or []


def flatten_whatsapp_accounts(businesses: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    accounts: List[Dict[str, Any]] = []
    for business in businesses or []:
        wabas = (business.get("owned_whatsapp_business_accounts") or {}).get("data") or []
        for waba in wabas:
            phones = (waba.get("phone_numbers") or {}).get("data") or []
            for phone in phones:
                accounts.append(
                    {
                        "business_id": business.get("id"),
                        "business_name": business.get("name"),
                        "waba_id": waba.get("id"),
                        "waba_name": waba.get("name"),
                        "phone_number_id": phone.get("id"),
                        "display_phone_number": phone.get("display_phone_number"),
                    }
                )
    return accounts


def send_whatsapp_text(phone_number_id: str, token: str, to: str, body: str) -> Dict[str, Any]:
    payload = {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "text",
        "text": {"body": body},
    }
    return gpost(f"/{phone_number_id}/messages", payload, token, version=WHATSAPP_VERSION)
