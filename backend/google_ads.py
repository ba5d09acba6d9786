# backend/google_ads.py
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

from metrics import to_float

load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), ".env"), override=False)

logger = logging.getLogger(__name__)

CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
DEVELOPER_TOKEN = os.getenv("GOOGLE_DEVELOPER_TOKEN", "")
ADS_VERSION = os.getenv("GOOGLE_ADS_API_VERSION", "v16")

TOKEN_URL = "https://oauth2.googleapis.com/token"
AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
ADS_BASE = f"https://googleads.googleapis.com/{ADS_VERSION}"
GA4_DATA_BASE = "https://analyticsdata.googleapis.com/v1beta"
GA4_ADMIN_BASE = "https://analyticsadmin.googleapis.com/v1beta"

ACCESS_TOKEN_TTL_SECONDS = 3600
RETRY_STATUSES = (429, 500, 502, 503)

CUSTOMER_METRICS = (
    "metrics.cost_micros, metrics.clicks, metrics.impressions, metrics.conversions, "
    "metrics.conversions_value, metrics.cost_per_conversion, metrics.ctr, metrics.average_cpc"
)


class GoogleAPIError(Exception):
    def __init__(self, status: int, message: str, code: Optional[str] = None, error_type: Optional[str] = None,
                 raw: Optional[Any] = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.error_type = error_type
        self.raw = raw if raw is not None else {}


def _error_from_response(r: requests.Response, prefix: str = "") -> GoogleAPIError:
    try:
        payload = r.json()
    except ValueError:
        payload = {"raw": r.text}
    if isinstance(payload, list) and payload:
        payload = payload[0]
    err = payload.get("error") if isinstance(payload, dict) else None
    message = None
    code = None
    error_type = None
    if isinstance(err, dict):
        message = err.get("message")
        code = err.get("code")
        error_type = err.get("status")
    elif isinstance(err, str):
        error_type = err
        message = payload.get("error_description") or err
    text = message or r.text or "Google API request failed"
    return GoogleAPIError(
        status=r.status_code,
        message=f"{prefix}{text}" if prefix else text,
        code=code,
        error_type=error_type,
        raw=payload,
    )


def _token_request(data: Dict[str, str], prefix: str) -> Dict[str, Any]:
    if not CLIENT_ID or not CLIENT_SECRET:
        raise GoogleAPIError(status=500, message="Google OAuth not configured")
    payload = {"client_id": CLIENT_ID, "client_secret": CLIENT_SECRET}
    payload.update(data)
    r = requests.post(TOKEN_URL, data=payload, timeout=15)
    if not r.ok:
        try:
            detail = json.dumps(r.json())
        except ValueError:
            detail = r.text
        raise GoogleAPIError(status=r.status_code, message=f"{prefix}: {detail}", raw={"raw": detail})
    return r.json()


def refresh_access_token(refresh_token: str) -> str:
    data = _token_request(
        {"refresh_token": refresh_token, "grant_type": "refresh_token"},
        "Google token refresh failed",
    )
    return data["access_token"]


def exchange_code(code: str, redirect_uri: str) -> Dict[str, Any]:
    data = _token_request(
        {"code": code, "redirect_uri": redirect_uri, "grant_type": "authorization_code"},
        "Google token error",
    )
    return {
        "access_token": data.get("access_token"),
        "refresh_token": data.get("refresh_token"),
        "expires_in": int(data.get("expires_in") or ACCESS_TOKEN_TTL_SECONDS),
    }


def clean_customer_id(customer_id: str) -> str:
    return str(customer_id or "").replace("-", "").strip()


def _ads_headers(access_token: str, login_customer_id: Optional[str] = None) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {access_token}",
        "developer-token": DEVELOPER_TOKEN,
        "Content-Type": "application/json",
    }
    if login_customer_id:
        headers["login-customer-id"] = clean_customer_id(login_customer_id)
    return headers


def _post_with_retry(url: str, *, json_body: Dict[str, Any], headers: Dict[str, str], timeout: int):
    for i in range(3):
        r = requests.post(url, json=json_body, headers=headers, timeout=timeout)
        if r.status_code in RETRY_STATUSES and i < 2:
            time.sleep(1.5 * (i + 1))
            continue
        return r
    return r


def search_stream(
    customer_id: str,
    access_token: str,
    query: str,
    login_customer_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    url = f"{ADS_BASE}/customers/{clean_customer_id(customer_id)}/googleAds:searchStream"
    r = _post_with_retry(
        url,
        json_body={"query": query},
        headers=_ads_headers(access_token, login_customer_id),
        timeout=30,
    )
    if not r.ok:
        raise _error_from_response(r)
    batches = r.json()
    if isinstance(batches, dict):
        batches = [batches]
    results: List[Dict[str, Any]] = []
    for batch in batches or []:
        results.extend((batch or {}).get("results") or [])
    return results


def micros_to_units(value: Any) -> float:
    try:
        return float(value or 0) / 1_000_000
    except (TypeError, ValueError):
        return 0.0


def date_clause(date_range: Optional[str] = None, day: Optional[str] = None) -> str:
    if day:
        return f"segments.date = '{day}'"
    return f"segments.date DURING {date_range or 'LAST_30_DAYS'}"


def customer_metrics_query(date_range: Optional[str] = None, day: Optional[str] = None) -> str:
    return f"SELECT {CUSTOMER_METRICS} FROM customer WHERE {date_clause(date_range, day)}"


def campaigns_query(date_range: Optional[str] = None, day: Optional[str] = None) -> str:
    """
    Visão agregada: campanhas não removidas (top 10).
    Visão diária: apenas ENABLED (top 20).
    """
    if day:
        return (
            "SELECT campaign.name, campaign.status, metrics.cost_micros, metrics.clicks, "
            "metrics.conversions, metrics.conversions_value FROM campaign "
            f"WHERE {date_clause(day=day)} AND campaign.status = 'ENABLED' "
            "ORDER BY metrics.cost_micros DESC LIMIT 20"
        )
    return (
        "SELECT campaign.name, campaign.status, metrics.cost_micros, metrics.clicks, "
        "metrics.conversions, metrics.cost_per_conversion FROM campaign "
        f"WHERE {date_clause(date_range)} AND campaign.status != 'REMOVED' "
        "ORDER BY metrics.cost_micros DESC LIMIT 10"
    )


def campaign_status_label(status: Optional[str]) -> str:
    return "Ativa" if status == "ENABLED" else "Pausada"


def list_accessible_customers(access_token: str) -> List[str]:
    r = requests.get(
        f"{ADS_BASE}/customers:listAccessibleCustomers",
        headers=_ads_headers(access_token),
        timeout=15,
    )
    if not r.ok:
        raise _error_from_response(r)
    names = r.json().get("resourceNames") or []
    return [name.replace("customers/", "") for name in names]


def discover_ad_accounts(access_token: str) -> List[Dict[str, str]]:
    """
    Lista as contas folha acessíveis. Para contas MCC, consulta os filhos diretos
    (customer_client level <= 1); contas comuns entram como "Conta {id}".
    """
    query = (
        "SELECT customer_client.client_customer, customer_client.descriptive_name, "
        "customer_client.level, customer_client.manager FROM customer_client "
        "WHERE customer_client.level <= 1"
    )
    accounts: List[Dict[str, str]] = []
    seen = set()

    def add(account_id: str, name: str) -> None:
        if account_id and account_id not in seen:
            seen.add(account_id)
            accounts.append({"id": account_id, "name": name})

    for customer_id in list_accessible_customers(access_token):
        try:
            rows = search_stream(customer_id, access_token, query, login_customer_id=customer_id)
        except (GoogleAPIError, requests.RequestException) as err:
            logger.warning("Falha ao consultar customer_client de %s: %s", customer_id, err)
            add(customer_id, f"Conta {customer_id}")
            continue

        if not rows:
            add(customer_id, f"Conta {customer_id}")
            continue

        for row in rows:
            cc = row.get("customerClient") or {}
            if cc.get("manager"):
                continue
            child_id = (cc.get("clientCustomer") or "").replace("customers/", "")
            add(child_id, cc.get("descriptiveName") or f"Conta {child_id}")

    logger.info("Encontradas %s contas Google Ads", len(accounts))
    return accounts


def ga4_run_report(property_id: str, access_token: str, start: str, end: str) -> Dict[str, float]:
    body = {
        "dateRanges": [{"startDate": start, "endDate": end}],
        "metrics": [
            {"name": "sessions"},
            {"name": "eventCount"},
            {"name": "sessionConversionRate"},
        ],
    }
    r = _post_with_retry(
        f"{GA4_DATA_BASE}/{property_id}:runReport",
        json_body=body,
        headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
        timeout=15,
    )
    if not r.ok:
        raise _error_from_response(r)
    rows = r.json().get("rows") or []
    values = (rows[0].get("metricValues") if rows else None) or []

    def pick(index: int) -> float:
        return to_float(values[index].get("value")) if len(values) > index else 0.0

    return {
        "sessions": int(pick(0)),
        "events": int(pick(1)),
        "conversion_rate": pick(2) * 100,
        "has_data": bool(values),
    }


def list_ga4_properties(access_token: str) -> List[Dict[str, str]]:
    r = requests.get(
        f"{GA4_ADMIN_BASE}/accountSummaries",
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=15,
    )
    if not r.ok:
        raise _error_from_response(r)
    summaries = r.json().get("accountSummaries") or []
    return [
        {"id": prop.get("property"), "name": prop.get("displayName")}
        for summary in summaries
        for prop in summary.get("propertySummaries") or []
    ]
