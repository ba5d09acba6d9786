import argparse
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.dirname(CURRENT_DIR)
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

import meta
from client_settings import REPORT_SETTINGS_TABLE, get_report_settings, validate_report_settings
from dashboard import period_snapshot
from periods import DEFAULT_REPORT_PERIOD, previous_period, report_period
from postgres_client import require_table_client
from whatsapp import find_cloud_connection
from whatsapp_report import brt_day_start, build_report, is_time_match, is_weekday_match

logger = logging.getLogger(__name__)

LOGS_TABLE = "whatsapp_report_logs"
DEFAULT_CLIENT_NAME = "Cliente"


def _client_label(client, agency_id: str, client_id: str) -> str:
    rows = (
        client.table("client_manager_links")
        .select("client_label")
        .eq("client_user_id", client_id)
        .eq("manager_id", agency_id)
        .limit(1)
        .execute()
        .data
        or []
    )
    return (rows[0].get("client_label") if rows else None) or DEFAULT_CLIENT_NAME


def _already_sent(client, setting: Dict[str, Any], now: datetime) -> bool:
    day_start = brt_day_start(now)
    rows = (
        client.table(LOGS_TABLE)
        .select("id")
        .eq("agency_id", setting.get("agency_id"))
        .eq("client_id", setting.get("client_id"))
        .gte("sent_at", day_start.isoformat())
        .eq("status", "success")
        .limit(1)
        .execute()
        .data
        or []
    )
    return bool(rows)


def render_report(client, setting: Dict[str, Any], today=None) -> Dict[str, Any]:
    """Agrega daily_metrics do período configurado e monta o texto do relatório."""
    period_type = setting.get("report_period_type") or DEFAULT_REPORT_PERIOD
    period = report_period(period_type, today)
    client_id = setting.get("client_id")

    data = period_snapshot(client, client_id, period["start"], period["end"])
    previous = None
    if setting.get("include_comparison"):
        prev = previous_period(period["start"], period["end"])
        previous = period_snapshot(client, client_id, prev["start"], prev["end"])

    message = build_report(
        data,
        setting.get("metrics") or {},
        bool(setting.get("include_comparison")),
        previous,
        _client_label(client, setting.get("agency_id"), client_id),
        period["start"],
        period["end"],
    )
    return {"message": message, "period": period, "report_period_type": period_type}


def _log(client, setting: Dict[str, Any], rendered_period: Dict[str, str], period_type: str, status: str, error=None):
    record = {
        "agency_id": setting.get("agency_id"),
        "client_id": setting.get("client_id"),
        "period_start": rendered_period["start"],
        "period_end": rendered_period["end"],
        "status": status,
        "report_period_type": period_type,
    }
    if error is not None:
        record["error_message"] = str(error)[:500]
    client.table(LOGS_TABLE).insert(record).execute()


def _send(client, setting: Dict[str, Any], message: str) -> None:
    connection = find_cloud_connection(client, setting.get("agency_id"))
    if not connection:
        raise RuntimeError("No active WhatsApp connection found")
    meta.send_whatsapp_text(
        connection["phone_number_id"],
        connection.get("access_token"),
        setting.get("phone_number"),
        message,
    )


def dispatch_reports(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    client = require_table_client()
    settings = (
        client.table(REPORT_SETTINGS_TABLE)
        .select("*")
        .eq("is_active", True)
        .execute()
        .data
        or []
    )
    if not settings:
        return {"processed": 0, "sent": 0, "failed": 0, "message": "No active settings"}

    processed = sent = failed = 0
    for setting in settings:
        processed += 1
        client_id = setting.get("client_id")
        try:
            if not is_time_match(setting.get("send_time"), now):
                continue
            if setting.get("frequency") == "weekly" and not is_weekday_match(setting.get("weekday"), now):
                continue
            if not setting.get("phone_number"):
                logger.warning("Relatório de %s ignorado: sem telefone", client_id)
                continue
            if _already_sent(client, setting, now):
                logger.info("Relatório de %s já enviado hoje", client_id)
                continue

            rendered = render_report(client, setting, now.date())
            _send(client, setting, rendered["message"])
            _log(client, setting, rendered["period"], rendered["report_period_type"], "success")
            sent += 1
            logger.info("Relatório enviado para %s (cliente %s)", setting.get("phone_number"), client_id)
        except Exception as err:  # noqa: BLE001
            failed += 1
            logger.error("Falha no relatório do cliente %s: %s", client_id, err)
            period_type = setting.get("report_period_type") or DEFAULT_REPORT_PERIOD
            try:
                _log(client, setting, report_period(period_type, now.date()), period_type, "error", err)
            except Exception as log_err:  # noqa: BLE001
                logger.error("Falha ao registrar erro do relatório: %s", log_err)

    return {"processed": processed, "sent": sent, "failed": failed}


def preview_report(agency_id: str, client_id: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    stored = get_report_settings(agency_id, client_id)["settings"]
    setting = dict(stored)
    if overrides:
        merged = dict(stored)
        merged.update(overrides)
        setting.update(validate_report_settings(merged))
    client = require_table_client()
    rendered = render_report(client, setting)
    return {"message": rendered["message"], "period": rendered["period"]}


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Dispara os relatórios de WhatsApp agendados.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    parse_args(argv)
    result = dispatch_reports()
    print(f"[whatsapp-reports] processados={result['processed']} enviados={result['sent']} falhas={result['failed']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
