"""
Relatórios sob demanda: templates, instâncias geradas e notas padrão por cliente.
"""
import logging
from typing import Any, Dict, List, Optional

from client_settings import require_link
from dashboard import can_view_client, load_daily_rows, top_campaigns
from errors import ServiceError
from metrics import aggregate_daily_rows
from periods import parse_date, previous_period
from postgres_client import require_table_client

logger = logging.getLogger(__name__)

TEMPLATES_TABLE = "report_templates"
INSTANCES_TABLE = "report_instances"
SETTINGS_TABLE = "client_report_settings"

SECTION_LABELS = {
    "show_summary": "Resumo",
    "show_campaign_table": "Tabela de Campanhas",
    "show_comparison": "Comparativo",
    "show_top_campaigns": "Top Campanhas",
    "show_notes": "Notas Importantes",
    "show_recommendations": "Recomendações",
}


def _first(response) -> Optional[Dict[str, Any]]:
    rows = getattr(response, "data", None) or []
    return rows[0] if rows else None


def list_templates() -> List[Dict[str, Any]]:
    client = require_table_client()
    return client.table(TEMPLATES_TABLE).select("*").order("name", desc=False).execute().data or []


def _get_template(client, template_id: str) -> Dict[str, Any]:
    template = _first(client.table(TEMPLATES_TABLE).select("*").eq("id", template_id).limit(1).execute())
    if template is None:
        raise ServiceError("Template not found", status=404)
    return template


def _section_items(template: Dict[str, Any], sections: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    if sections:
        items = []
        for item in sections:
            key = (item or {}).get("key")
            if key not in SECTION_LABELS:
                raise ServiceError(f"Unknown section: {key}", status=400)
            items.append({"key": key, "enabled": bool(item.get("enabled"))})
        return items
    defaults = template.get("default_sections") or {}
    return [{"key": key, "enabled": bool(enabled)} for key, enabled in defaults.items()]


def build_sections_snapshot(
    template: Dict[str, Any],
    sections: Optional[List[Dict[str, Any]]] = None,
    custom_title: str = "",
    custom_subtitle: str = "",
) -> Dict[str, Any]:
    items = _section_items(template, sections)
    return {
        "sections": [item["key"] for item in items if item["enabled"]],
        "order": [item["key"] for item in items],
        "custom_title": custom_title or "",
        "custom_subtitle": custom_subtitle or "",
        "template_id": template.get("id"),
    }


def get_client_report_settings(client, client_id: str) -> Optional[Dict[str, Any]]:
    return _first(client.table(SETTINGS_TABLE).select("*").eq("client_id", client_id).limit(1).execute())


def create_report_instance(manager_id: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body = body or {}
    client_id = body.get("client_id")
    if not client_id:
        raise ServiceError("client_id is required", status=400)
    if not body.get("period_start") or not body.get("period_end"):
        raise ServiceError("period_start and period_end are required", status=400)
    try:
        start = parse_date(body["period_start"])
        end = parse_date(body["period_end"])
    except ValueError:
        raise ServiceError("Invalid period dates", status=400)
    if end < start:
        raise ServiceError("period_end must be on or after period_start", status=400)
    if not body.get("template_id"):
        raise ServiceError("template_id is required", status=400)

    client = require_table_client()
    require_link(client, manager_id, client_id)
    template = _get_template(client, body["template_id"])
    snapshot = build_sections_snapshot(
        template,
        body.get("sections"),
        body.get("custom_title") or "",
        body.get("custom_subtitle") or "",
    )

    notes = body.get("notes")
    if not notes:
        settings = get_client_report_settings(client, client_id)
        notes = (settings or {}).get("default_notes")

    record = {
        "client_id": client_id,
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
        "template_id": template.get("id"),
        "sections_snapshot": snapshot,
        "notes": notes or None,
        "sent": False,
    }
    response = client.table(INSTANCES_TABLE).insert(record).execute()
    instance = _first(response) or record
    logger.info("Relatório gerado para %s (%s a %s)", client_id, record["period_start"], record["period_end"])
    return instance


def get_report_instance(user: Dict[str, Any], report_id: str) -> Dict[str, Any]:
    client = require_table_client()
    instance = _first(client.table(INSTANCES_TABLE).select("*").eq("id", report_id).limit(1).execute())
    if instance is None:
        raise ServiceError("Report not found", status=404)
    client_id = instance.get("client_id")
    if not can_view_client(client, user, client_id):
        raise ServiceError("Forbidden", status=403)

    start = instance.get("period_start")
    end = instance.get("period_end")
    previous = previous_period(start, end)
    result = dict(instance)
    result["metrics"] = aggregate_daily_rows(load_daily_rows(client, client_id, start, end))
    result["previous_metrics"] = aggregate_daily_rows(
        load_daily_rows(client, client_id, previous["start"], previous["end"])
    )
    result["top_campaigns"] = top_campaigns(load_daily_rows(client, client_id, start, end, table="daily_campaigns"))
    return result


def save_client_report_settings(manager_id: str, client_id: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body = body or {}
    client = require_table_client()
    require_link(client, manager_id, client_id)
    record = {"client_id": client_id, "default_notes": body.get("default_notes") or None}
    for key in ("default_template_id", "auto_send_enabled", "frequency", "send_day", "send_email"):
        if key in body:
            record[key] = body[key]
    response = client.table(SETTINGS_TABLE).upsert(record, on_conflict="client_id").execute()
    return {"success": True, "settings": _first(response) or record}
