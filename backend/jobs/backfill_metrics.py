import argparse
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.dirname(CURRENT_DIR)
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

import google_ads
import meta
from clients import assigned_ids, manager_for_client
from errors import ServiceError
from periods import utc_today
from postgres_client import get_postgres_client, require_table_client
from jobs.sync_daily_metrics import google_rows, meta_rows, upsert_daily_rows

logger = logging.getLogger(__name__)

INGEST_LOGS_TABLE = "ingest_logs"
JOB_TYPE = "metrics_backfill"
PLATFORM = "ads"
DEFAULT_DAYS = 30
MAX_DAYS = 90


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _insert_log(client_id: str) -> Tuple[Optional[object], Optional[object]]:
    client = get_postgres_client()
    if client is None:
        logger.info("[backfill] Banco não configurado; logs desabilitados.")
        return None, None
    record = {
        "platform": PLATFORM,
        "job_type": JOB_TYPE,
        "account_id": client_id,
        "status": "running",
        "started_at": _now_iso(),
        "finished_at": None,
        "records_inserted": 0,
        "records_updated": 0,
        "error_message": None,
    }
    try:
        response = client.table(INGEST_LOGS_TABLE).insert(record).execute()
        data = getattr(response, "data", None) or []
        log_id = data[0].get("id") if data else None
        return client, log_id
    except Exception as err:  # noqa: BLE001
        logger.error("[backfill] Falha ao registrar início para %s: %s", client_id, err)
        return client, None


def _finalize_log(
    client,
    log_id,
    status: str,
    inserted: int,
    error_message: Optional[str] = None,
) -> None:
    if client is None or not log_id:
        return
    payload = {
        "status": status,
        "finished_at": _now_iso(),
        "records_inserted": inserted,
        "records_updated": 0,
        "error_message": error_message,
    }
    try:
        client.table(INGEST_LOGS_TABLE).update(payload).eq("id", log_id).execute()
    except Exception as err:  # noqa: BLE001
        logger.error("[backfill] Falha ao finalizar log %s: %s", log_id, err)


def clamp_days(days: Optional[Any]) -> int:
    try:
        value = int(days) if days else DEFAULT_DAYS
    except (TypeError, ValueError):
        value = DEFAULT_DAYS
    return max(1, min(value, MAX_DAYS))


def _connections(client, manager_id: str) -> Dict[str, Dict[str, Any]]:
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


def backfill_client(client_id: Optional[str], days: Optional[Any] = DEFAULT_DAYS) -> Dict[str, Any]:
    if not client_id:
        raise ServiceError("client_id is required", status=400)
    days = clamp_days(days)

    client = require_table_client()
    manager_id = manager_for_client(client, client_id)
    if not manager_id:
        raise ServiceError("Client not found or no manager linked", status=404)

    connections = _connections(client, manager_id)
    if not connections:
        raise ServiceError("No active connections for manager", status=404)

    logger.info("[backfill] Cliente %s: processando %s dia(s)", client_id, days)
    google_ids = assigned_ids(client, "client_ad_accounts", "customer_id", client_id)
    meta_ids = assigned_ids(client, "client_meta_ad_accounts", "ad_account_id", client_id)
    google_conn = connections.get("google_ads") or {}
    meta_token = (connections.get("meta_ads") or {}).get("access_token")

    errors: List[str] = []
    google_token = None
    if google_conn.get("refresh_token") and google_ids:
        try:
            google_token = google_ads.refresh_access_token(google_conn["refresh_token"])
        except Exception as err:  # noqa: BLE001
            errors.append(f"Google token refresh failed: {err}")

    log_client, log_id = _insert_log(client_id)
    metrics_total = 0
    campaigns_total = 0
    today = utc_today()

    try:
        for offset in range(1, days + 1):
            day = (today - timedelta(days=offset)).isoformat()
            metrics: List[Dict[str, Any]] = []
            campaigns: List[Dict[str, Any]] = []

            if google_token:
                for customer_id in google_ids:
                    try:
                        rows = google_rows(client_id, customer_id, google_token, day)
                        metrics.extend(rows[0])
                        campaigns.extend(rows[1])
                    except Exception as err:  # noqa: BLE001
                        errors.append(f"Google {customer_id} {day}: {err}")

            if meta_token:
                for account_id in meta_ids:
                    try:
                        rows = meta_rows(
                            client_id,
                            account_id,
                            meta_token,
                            day,
                            conversion_actions=meta.LEAD_ACTIONS,
                            with_engagement=False,
                        )
                        metrics.extend(rows[0])
                        campaigns.extend(rows[1])
                    except Exception as err:  # noqa: BLE001
                        errors.append(f"Meta {account_id} {day}: {err}")

            inserted_metrics, inserted_campaigns = upsert_daily_rows(client, metrics, campaigns, errors, day)
            metrics_total += inserted_metrics
            campaigns_total += inserted_campaigns

        _finalize_log(
            log_client,
            log_id,
            "succeeded",
            metrics_total + campaigns_total,
            "; ".join(errors)[:500] if errors else None,
        )
    except Exception as err:  # noqa: BLE001
        _finalize_log(log_client, log_id, "failed", metrics_total + campaigns_total, str(err))
        raise

    logger.info(
        "[backfill] Cliente %s concluído: metrics=%s campaigns=%s erros=%s",
        client_id,
        metrics_total,
        campaigns_total,
        len(errors),
    )
    result: Dict[str, Any] = {
        "success": True,
        "days_processed": days,
        "metrics_upserted": metrics_total,
        "campaigns_upserted": campaigns_total,
    }
    if errors:
        result["errors"] = errors
    return result


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill de daily_metrics para um cliente (até 90 dias).")
    parser.add_argument("--client", dest="client_id", required=True, help="ID do usuário cliente.")
    parser.add_argument("--days", type=int, default=DEFAULT_DAYS, help="Quantidade de dias (default: 30, máx: 90).")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    args = parse_args(argv)
    try:
        result = backfill_client(args.client_id, args.days)
    except ServiceError as err:
        print(f"[backfill] {err}")
        return 1
    print(
        f"[backfill] {args.client_id}: dias={result['days_processed']} "
        f"metrics={result['metrics_upserted']} campaigns={result['campaigns_upserted']}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
