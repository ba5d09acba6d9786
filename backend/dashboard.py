"""
Dashboard do cliente montado a partir de daily_metrics / daily_campaigns.
"""
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional

from client_settings import get_metric_visibility
from clients import get_link
from errors import ServiceError
from metrics import COST_METRICS, METRIC_FORMATS, aggregate_daily_rows, calculate_trend, to_float
from periods import Range, comparison_periods, daterange
from postgres_client import require_table_client

logger = logging.getLogger(__name__)

PLATFORMS = ("google", "meta")
TOP_CAMPAIGNS_LIMIT = 10
CAMPAIGN_FIELDS = ("spend", "clicks", "conversions", "revenue", "leads", "messages")

# chave do agregado -> chave usada em client_metric_visibility
VISIBILITY_ALIASES = {"spend": "investment"}


def _metric_type(key: str) -> str:
    if key in COST_METRICS:
        return "cost"
    if key == "revenue":
        return "revenue"
    if key in ("roas", "ctr"):
        return "efficiency"
    return "volume"


def can_view_client(client, user: Dict[str, Any], client_id: str) -> bool:
    role = user.get("role")
    if role == "admin" or user.get("id") == client_id:
        return True
    if role == "manager":
        return get_link(client, user.get("id"), client_id) is not None
    return False


def load_daily_rows(
    client,
    client_id: str,
    start: str,
    end: str,
    platform: Optional[str] = None,
    table: str = "daily_metrics",
) -> List[Dict[str, Any]]:
    query = (
        client.table(table)
        .select("*")
        .eq("client_id", client_id)
        .gte("date", start)
        .lte("date", end)
    )
    if platform:
        query = query.eq("platform", platform)
    return query.execute().data or []


def period_snapshot(client, client_id: str, start: str, end: str, platform: Optional[str] = None) -> Dict[str, float]:
    return aggregate_daily_rows(load_daily_rows(client, client_id, start, end, platform))


def build_trends(current: Dict[str, float], previous: Dict[str, float]) -> Dict[str, Dict[str, Any]]:
    return {
        key: calculate_trend(current.get(key, 0.0), previous.get(key), _metric_type(key), fmt)
        for key, fmt in METRIC_FORMATS.items()
    }


def build_series(rows: List[Dict[str, Any]], start: str, end: str) -> List[Dict[str, Any]]:
    by_day: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for row in rows:
        by_day[str(row.get("date"))[:10]].append(row)

    series = []
    for day in daterange(start, end):
        key = day.isoformat()
        totals = aggregate_daily_rows(by_day.get(key, []))
        totals["date"] = key
        series.append(totals)
    return series


def top_campaigns(rows: List[Dict[str, Any]], limit: int = TOP_CAMPAIGNS_LIMIT) -> List[Dict[str, Any]]:
    grouped: Dict[tuple, Dict[str, Any]] = {}
    for row in rows:
        key = (row.get("source") or row.get("platform"), row.get("campaign_name"))
        entry = grouped.get(key)
        if entry is None:
            entry = {"source": key[0], "campaign_name": key[1], "status": row.get("campaign_status")}
            entry.update({field: 0.0 for field in CAMPAIGN_FIELDS})
            grouped[key] = entry
        for field in CAMPAIGN_FIELDS:
            entry[field] += to_float(row.get(field))

    campaigns = sorted(grouped.values(), key=lambda item: item["spend"], reverse=True)[:limit]
    for entry in campaigns:
        results = entry["messages"] or entry["leads"]
        entry["cpa"] = entry["spend"] / results if results else 0.0
    return campaigns


def _hide(block: Dict[str, Any], hidden: set) -> Dict[str, Any]:
    return {key: value for key, value in block.items() if VISIBILITY_ALIASES.get(key, key) not in hidden}


def client_dashboard(
    user: Dict[str, Any],
    client_id: str,
    range_: Range = "LAST_30_DAYS",
    platform: Optional[str] = None,
    today=None,
) -> Dict[str, Any]:
    if platform and platform not in PLATFORMS:
        raise ServiceError("platform must be google or meta", status=400)

    client = require_table_client()
    if not can_view_client(client, user, client_id):
        raise ServiceError("Forbidden", status=403)

    try:
        periods = comparison_periods(range_ or "LAST_30_DAYS", today)
    except ValueError as err:
        raise ServiceError(str(err), status=400)

    current_period = periods["current"]
    previous_period = periods["previous"]
    current_rows = load_daily_rows(client, client_id, current_period["start"], current_period["end"], platform)
    current = aggregate_daily_rows(current_rows)
    previous = period_snapshot(client, client_id, previous_period["start"], previous_period["end"], platform)

    campaign_rows = load_daily_rows(
        client,
        client_id,
        current_period["start"],
        current_period["end"],
        platform,
        table="daily_campaigns",
    )

    visibility = get_metric_visibility(client_id, client)
    hidden = {key for key, visible in visibility.items() if not visible}

    payload: Dict[str, Any] = {
        "client_id": client_id,
        "platform": platform,
        "periods": periods,
        "current": _hide(current, hidden),
        "previous": _hide(previous, hidden),
        "trends": _hide(build_trends(current, previous), hidden),
        "series": build_series(current_rows, current_period["start"], current_period["end"]),
        "top_campaigns": top_campaigns(campaign_rows),
        "hidden_metrics": sorted(hidden),
    }
    if "trend_charts" in hidden:
        payload["series"] = []
    if "campaign_names" in hidden:
        payload["top_campaigns"] = []
    return payload
