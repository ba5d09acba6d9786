"""
Configurações por cliente: relatório de WhatsApp, alertas de saldo e visibilidade de métricas.
"""
import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from clients import assigned_ids, get_link
from errors import ServiceError
from metrics import to_float
from periods import DEFAULT_REPORT_PERIOD, REPORT_PERIOD_TYPES
from postgres_client import require_table_client
from whatsapp_report import DEFAULT_REPORT_METRICS, merge_metrics

logger = logging.getLogger(__name__)

REPORT_SETTINGS_TABLE = "whatsapp_report_settings"
BALANCE_ALERTS_TABLE = "account_balance_alerts"
VISIBILITY_TABLE = "client_metric_visibility"

FREQUENCIES = ("daily", "weekly")
DEFAULT_SEND_TIME = "09:00"
_SEND_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

# campos em que NULL é um valor salvo (relatório diário não tem dia da semana)
NULLABLE_REPORT_FIELDS = ("weekday",)

# chaves configuráveis na tela de permissões
METRIC_KEYS = (
    "investment", "revenue", "roas", "leads", "messages", "cpa",
    "google_investment", "google_clicks", "google_impressions", "google_conversions",
    "google_ctr", "google_cpc", "google_cpa",
    "meta_investment", "meta_clicks", "meta_impressions", "meta_leads",
    "meta_ctr", "meta_cpc", "meta_cpa",
    "ga4_sessions", "ga4_events", "ga4_conversion_rate",
    "campaign_names", "ad_sets", "camp_investment", "camp_result", "camp_cpa",
    "camp_clicks", "camp_impressions", "camp_ctr", "camp_revenue", "camp_messages",
    "attribution_comparison", "discrepancy_percentage", "trend_charts", "funnel_visualization",
    "ctr", "cpc", "conversion_rate", "sessions", "events",
)


def require_link(client, manager_id: str, client_id: str) -> Dict[str, Any]:
    if not client_id:
        raise ServiceError("client_id is required", status=400)
    link = get_link(client, manager_id, client_id)
    if not link:
        raise ServiceError("Client not linked to this manager", status=403)
    return link


def _first(response) -> Optional[Dict[str, Any]]:
    rows = getattr(response, "data", None) or []
    return rows[0] if rows else None


def default_report_settings(agency_id: str, client_id: str) -> Dict[str, Any]:
    return {
        "agency_id": agency_id,
        "client_id": client_id,
        "phone_number": "",
        "frequency": "weekly",
        "weekday": 1,
        "send_time": DEFAULT_SEND_TIME,
        "is_active": False,
        "metrics": dict(DEFAULT_REPORT_METRICS),
        "include_comparison": True,
        "report_period_type": DEFAULT_REPORT_PERIOD,
    }


def get_report_settings(agency_id: str, client_id: str) -> Dict[str, Any]:
    client = require_table_client()
    require_link(client, agency_id, client_id)
    stored = _first(
        client.table(REPORT_SETTINGS_TABLE)
        .select("*")
        .eq("agency_id", agency_id)
        .eq("client_id", client_id)
        .limit(1)
        .execute()
    )
    settings = default_report_settings(agency_id, client_id)
    if stored:
        settings.update(
            {key: value for key, value in stored.items() if value is not None or key in NULLABLE_REPORT_FIELDS}
        )
    settings["metrics"] = merge_metrics(stored.get("metrics") if stored else None)
    return {"settings": settings, "exists": stored is not None}


def validate_report_settings(body: Mapping[str, Any]) -> Dict[str, Any]:
    """Valida o corpo enviado pela tela de configuração e devolve o registro normalizado."""
    phone = re.sub(r"\D", "", str(body.get("phone_number") or ""))
    is_active = bool(body.get("is_active", False))
    if is_active and not phone:
        raise ServiceError("phone_number is required to activate reports", status=400)

    frequency = body.get("frequency") or "weekly"
    if frequency not in FREQUENCIES:
        raise ServiceError("frequency must be daily or weekly", status=400)

    weekday = body.get("weekday")
    if frequency == "weekly":
        try:
            weekday = int(weekday if weekday is not None else 1)
        except (TypeError, ValueError):
            raise ServiceError("weekday must be an integer between 0 and 6", status=400)
        if not 0 <= weekday <= 6:
            raise ServiceError("weekday must be an integer between 0 and 6", status=400)
    else:
        weekday = None

    send_time = str(body.get("send_time") or DEFAULT_SEND_TIME)[:5]
    if not _SEND_TIME_RE.match(send_time):
        raise ServiceError("send_time must use the HH:MM format", status=400)

    period_type = body.get("report_period_type") or DEFAULT_REPORT_PERIOD
    if period_type not in REPORT_PERIOD_TYPES:
        raise ServiceError("Invalid report_period_type", status=400)

    metrics = body.get("metrics")
    if metrics is not None and not isinstance(metrics, dict):
        raise ServiceError("metrics must be an object", status=400)
    unknown = sorted(set(metrics or {}) - set(DEFAULT_REPORT_METRICS))
    if unknown:
        raise ServiceError(f"Unknown metrics: {', '.join(unknown)}", status=400)

    return {
        "phone_number": phone,
        "frequency": frequency,
        "weekday": weekday,
        "send_time": send_time,
        "is_active": is_active,
        "metrics": merge_metrics(metrics),
        "include_comparison": bool(body.get("include_comparison", True)),
        "report_period_type": period_type,
    }


def save_report_settings(agency_id: str, client_id: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    client = require_table_client()
    require_link(client, agency_id, client_id)
    record = validate_report_settings(body or {})
    record.update({"agency_id": agency_id, "client_id": client_id})
    response = client.table(REPORT_SETTINGS_TABLE).upsert(record, on_conflict="agency_id,client_id").execute()
    logger.info("Relatório de WhatsApp salvo para %s (ativo=%s)", client_id, record["is_active"])
    return {"success": True, "settings": _first(response) or record}


def list_balance_alerts(agency_id: str, client_id: str) -> Dict[str, Any]:
    client = require_table_client()
    require_link(client, agency_id, client_id)
    account_ids = assigned_ids(client, "client_meta_ad_accounts", "ad_account_id", client_id)
    stored = client.table(BALANCE_ALERTS_TABLE).select("*").eq("client_id", client_id).execute().data or []

    by_account = {row.get("ad_account_id"): row for row in stored}
    alerts: List[Dict[str, Any]] = []
    for account_id in account_ids:
        row = by_account.get(account_id)
        if row:
            alerts.append(row)
        else:
            alerts.append(
                {
                    "ad_account_id": account_id,
                    "threshold_value": 0,
                    "is_active": False,
                    "recipient_phone": None,
                }
            )
    return {"alerts": alerts}


def save_balance_alerts(agency_id: str, client_id: str, alerts: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
    if not isinstance(alerts, list):
        raise ServiceError("alerts must be a list", status=400)

    client = require_table_client()
    require_link(client, agency_id, client_id)
    allowed = set(assigned_ids(client, "client_meta_ad_accounts", "ad_account_id", client_id))

    records = []
    for alert in alerts:
        account_id = (alert or {}).get("ad_account_id")
        if account_id not in allowed:
            raise ServiceError(f"Ad account {account_id} is not assigned to this client", status=400)
        threshold = to_float(alert.get("threshold_value"))
        if threshold < 0:
            raise ServiceError("threshold_value must be zero or positive", status=400)
        records.append(
            {
                "agency_id": agency_id,
                "client_id": client_id,
                "ad_account_id": account_id,
                "threshold_value": threshold,
                "is_active": bool(alert.get("is_active")),
                "recipient_phone": re.sub(r"\D", "", str(alert.get("recipient_phone") or "")) or None,
            }
        )

    if records:
        client.table(BALANCE_ALERTS_TABLE).upsert(records, on_conflict="agency_id,ad_account_id").execute()
    logger.info("%s alerta(s) de saldo salvos para %s", len(records), client_id)
    return {"success": True, "saved": len(records)}


def get_metric_visibility(client_user_id: str, client=None) -> Dict[str, bool]:
    client = client or require_table_client()
    rows = (
        client.table(VISIBILITY_TABLE)
        .select("metric_key,is_visible")
        .eq("client_user_id", client_user_id)
        .execute()
        .data
        or []
    )
    return {row.get("metric_key"): bool(row.get("is_visible")) for row in rows if row.get("metric_key")}


def hidden_metrics(visibility: Mapping[str, bool]) -> List[str]:
    return sorted(key for key, visible in visibility.items() if not visible)


def save_metric_visibility(manager_id: str, client_user_id: str, mapping: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not isinstance(mapping, dict):
        raise ServiceError("visibility must be an object", status=400)
    unknown = sorted(set(mapping) - set(METRIC_KEYS))
    if unknown:
        raise ServiceError(f"Unknown metrics: {', '.join(unknown)}", status=400)

    client = require_table_client()
    require_link(client, manager_id, client_user_id)
    records = [
        {"client_user_id": client_user_id, "metric_key": key, "is_visible": bool(value)}
        for key, value in mapping.items()
    ]
    if records:
        client.table(VISIBILITY_TABLE).upsert(records, on_conflict="client_user_id,metric_key").execute()
    return {"success": True, "visibility": get_metric_visibility(client_user_id, client)}
