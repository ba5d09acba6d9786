"""
Agregação multi-plataforma (Google Ads, Meta Ads, GA4) para o painel do gestor.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests

import google_ads
import meta
from cache import get_cached_payload, register_fetcher
from metrics import consolidate, to_float
from postgres_client import require_table_client

logger = logging.getLogger(__name__)

RESOURCE = "ads_overview"

DEFAULT_OPTIONS = {
    "date_range": "LAST_30_DAYS",
    "meta_date_preset": "last_30d",
    "ga4_start_date": "30daysAgo",
    "ga4_end_date": "today",
}

PROVIDER_ERRORS = (google_ads.GoogleAPIError, meta.MetaAPIError, requests.RequestException)


def normalize_options(body: Optional[Dict[str, Any]]) -> Dict[str, str]:
    body = body or {}
    return {key: str(body.get(key) or default) for key, default in DEFAULT_OPTIONS.items()}


def selected_ids(connection: Optional[Dict[str, Any]]) -> List[str]:
    items = (connection or {}).get("account_data") or []
    return [str(item.get("id")) for item in items if isinstance(item, dict) and item.get("selected")]


def load_connections(client, manager_id: str) -> Dict[str, Dict[str, Any]]:
    rows = (
        client.table("oauth_connections")
        .select("*")
        .eq("manager_id", manager_id)
        .eq("connected", True)
        .execute()
        .data
        or []
    )
    return {row.get("provider"): row for row in rows}


def refresh_connection_token(client, connection: Dict[str, Any]) -> str:
    access_token = google_ads.refresh_access_token(connection["refresh_token"])
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=google_ads.ACCESS_TOKEN_TTL_SECONDS)
    client.table("oauth_connections").update(
        {"access_token": access_token, "token_expires_at": expires_at.isoformat()}
    ).eq("id", connection["id"]).execute()
    return access_token


def fetch_google_ads(access_token: str, customer_ids: List[str], date_range: str) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        "investment": 0.0,
        "clicks": 0,
        "impressions": 0,
        "conversions": 0.0,
        "cost_per_conversion": 0.0,
        "ctr": 0.0,
        "avg_cpc": 0.0,
        "campaigns": [],
    }

    for customer_id in customer_ids:
        try:
            for row in google_ads.search_stream(
                customer_id, access_token, google_ads.customer_metrics_query(date_range)
            ):
                m = row.get("metrics") or {}
                result["investment"] += google_ads.micros_to_units(m.get("costMicros"))
                result["clicks"] += int(to_float(m.get("clicks")))
                result["impressions"] += int(to_float(m.get("impressions")))
                result["conversions"] += to_float(m.get("conversions"))

            for row in google_ads.search_stream(
                customer_id, access_token, google_ads.campaigns_query(date_range)
            ):
                m = row.get("metrics") or {}
                campaign = row.get("campaign") or {}
                spend = google_ads.micros_to_units(m.get("costMicros"))
                conversions = to_float(m.get("conversions"))
                result["campaigns"].append(
                    {
                        "name": campaign.get("name"),
                        "status": google_ads.campaign_status_label(campaign.get("status")),
                        "spend": spend,
                        "clicks": int(to_float(m.get("clicks"))),
                        "conversions": conversions,
                        "cpa": spend / conversions if conversions > 0 else 0,
                    }
                )
        except PROVIDER_ERRORS as err:
            logger.error("Google Ads error for %s: %s", customer_id, err)

    if result["impressions"] > 0:
        result["ctr"] = result["clicks"] / result["impressions"] * 100
    if result["clicks"] > 0:
        result["avg_cpc"] = result["investment"] / result["clicks"]
    if result["conversions"] > 0:
        result["cost_per_conversion"] = result["investment"] / result["conversions"]
    return result


def fetch_meta_ads(access_token: str, account_ids: List[str], date_preset: str) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        "investment": 0.0,
        "impressions": 0,
        "clicks": 0,
        "leads": 0,
        "ctr": 0.0,
        "cpc": 0.0,
        "cpa": 0.0,
        "campaigns": [],
    }

    for account_id in account_ids:
        try:
            row = meta.account_insights(account_id, access_token, date_preset=date_preset)
            if row:
                result["investment"] += to_float(row.get("spend"))
                result["impressions"] += int(to_float(row.get("impressions")))
                result["clicks"] += int(to_float(row.get("clicks")))
                result["leads"] += meta.action_value(row.get("actions"), meta.LEAD_ACTIONS)

            for campaign in meta.account_campaigns(account_id, access_token, date_preset=date_preset, limit=10):
                insight = meta.campaign_insight(campaign)
                spend = to_float(insight.get("spend"))
                leads = meta.action_value(insight.get("actions"), meta.LEAD_ACTIONS)
                result["campaigns"].append(
                    {
                        "name": campaign.get("name"),
                        "status": "Ativa" if campaign.get("status") == "ACTIVE" else "Pausada",
                        "spend": spend,
                        "leads": leads,
                        "cpa": spend / leads if leads > 0 else 0,
                    }
                )
        except PROVIDER_ERRORS as err:
            logger.error("Meta Ads error for %s: %s", account_id, err)

    if result["impressions"] > 0:
        result["ctr"] = result["clicks"] / result["impressions"] * 100
    if result["clicks"] > 0:
        result["cpc"] = result["investment"] / result["clicks"]
    if result["leads"] > 0:
        result["cpa"] = result["investment"] / result["leads"]
    return result


def fetch_ga4(access_token: str, property_ids: List[str], start: str, end: str) -> Dict[str, Any]:
    result: Dict[str, Any] = {"sessions": 0, "events": 0, "conversion_rate": 0.0}
    for property_id in property_ids:
        try:
            report = google_ads.ga4_run_report(property_id, access_token, start, end)
        except PROVIDER_ERRORS as err:
            logger.error("GA4 error for %s: %s", property_id, err)
            continue
        if not report.get("has_data"):
            continue
        result["sessions"] += report["sessions"]
        result["events"] += report["events"]
        # taxa não é somável: prevalece a última propriedade
        result["conversion_rate"] = report["conversion_rate"]
    return result


def fetch_ads_data(manager_id: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    options = normalize_options(body)
    client = require_table_client()
    connections = load_connections(client, manager_id)

    def run_google() -> Optional[Dict[str, Any]]:
        conn = connections.get("google_ads")
        if not conn or not conn.get("refresh_token"):
            return None
        token = refresh_connection_token(client, conn)
        ids = selected_ids(conn)
        return fetch_google_ads(token, ids, options["date_range"]) if ids else None

    def run_meta() -> Optional[Dict[str, Any]]:
        conn = connections.get("meta_ads")
        if not conn or not conn.get("access_token"):
            return None
        ids = selected_ids(conn)
        return fetch_meta_ads(conn["access_token"], ids, options["meta_date_preset"]) if ids else None

    def run_ga4() -> Optional[Dict[str, Any]]:
        conn = connections.get("ga4")
        if not conn or not conn.get("refresh_token"):
            return None
        token = refresh_connection_token(client, conn)
        ids = selected_ids(conn)
        return fetch_ga4(token, ids, options["ga4_start_date"], options["ga4_end_date"]) if ids else None

    with ThreadPoolExecutor(max_workers=3) as executor:
        futures = {
            "google_ads": executor.submit(run_google),
            "meta_ads": executor.submit(run_meta),
            "ga4": executor.submit(run_ga4),
        }
        result: Dict[str, Any] = {}
        errors: List[Dict[str, str]] = []
        for key, future in futures.items():
            try:
                result[key] = future.result()
            except PROVIDER_ERRORS as err:
                logger.error("Falha ao consultar %s para o gestor %s: %s", key, manager_id, err)
                result[key] = None
                errors.append({"provider": key, "error": str(err)})

    if errors:
        result["errors"] = errors
    result["consolidated"] = consolidate(result["google_ads"], result["meta_ads"], result["ga4"])
    return result


def _cache_fetcher(owner_id: str, extra: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return fetch_ads_data(owner_id, extra)


register_fetcher(RESOURCE, _cache_fetcher)


def get_ads_overview(
    manager_id: str,
    body: Optional[Dict[str, Any]] = None,
    force: bool = False,
    refresh_reason: Optional[str] = None,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    return get_cached_payload(
        RESOURCE,
        manager_id,
        normalize_options(body),
        _cache_fetcher,
        force=force,
        refresh_reason=refresh_reason or ("manual" if force else None),
    )
