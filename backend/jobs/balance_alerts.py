import argparse
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.dirname(CURRENT_DIR)
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

import evolution
import meta
from client_settings import BALANCE_ALERTS_TABLE
from metrics import to_float
from periods import parse_datetime
from postgres_client import require_table_client

logger = logging.getLogger(__name__)

COOLDOWN = timedelta(hours=24)


def build_balance_message(account_id: str, balance: float, threshold: float) -> str:
    return (
        "⚠️ *Alerta Adscape - Saldo Baixo*\n\n"
        f"📋 Conta: {account_id}\n"
        f"💰 Saldo atual: R$ {balance:.2f}\n"
        f"🔻 Limite configurado: R$ {threshold:.2f}\n\n"
        "Ação necessária para manter campanhas ativas."
    )


def _meta_tokens(client, agency_ids: List[str]) -> Dict[str, str]:
    rows = (
        client.table("oauth_connections")
        .select("manager_id,access_token")
        .eq("provider", "meta_ads")
        .eq("connected", True)
        .in_("manager_id", agency_ids)
        .execute()
        .data
        or []
    )
    return {row["manager_id"]: row["access_token"] for row in rows if row.get("access_token")}


def _evolution_instances(client, agency_ids: List[str]) -> Dict[str, str]:
    rows = (
        client.table("whatsapp_connections")
        .select("agency_id,instance_name,status,provider")
        .eq("provider", "evolution")
        .eq("status", "connected")
        .in_("agency_id", agency_ids)
        .execute()
        .data
        or []
    )
    return {row["agency_id"]: row["instance_name"] for row in rows if row.get("instance_name")}


def in_cooldown(last_triggered_at: Any, now: datetime) -> bool:
    last = parse_datetime(last_triggered_at)
    return bool(last and now - last < COOLDOWN)


def _check_alert(client, alert: Dict[str, Any], token: str, instance: Optional[str], now: datetime) -> Dict[str, Any]:
    account_id = alert.get("ad_account_id")
    balance = meta.account_balance(account_id, token)["balance"]
    threshold = to_float(alert.get("threshold_value"))
    if balance > threshold:
        return {"ad_account_id": account_id, "ok": True, "balance": balance}

    if not instance:
        return {"ad_account_id": account_id, "skipped": "no_evolution_instance"}
    if not alert.get("recipient_phone"):
        return {"ad_account_id": account_id, "skipped": "no_recipient_phone"}

    evolution.send_text(instance, alert["recipient_phone"], build_balance_message(account_id, balance, threshold))
    (
        client.table(BALANCE_ALERTS_TABLE)
        .update({"last_triggered_at": now.isoformat()})
        .eq("id", alert.get("id"))
        .execute()
    )
    logger.info("Alerta de saldo disparado para %s (saldo %.2f)", account_id, balance)
    return {"ad_account_id": account_id, "triggered": True, "balance": balance}


def check_balance_alerts(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    client = require_table_client()
    alerts = client.table(BALANCE_ALERTS_TABLE).select("*").eq("is_active", True).execute().data or []
    if not alerts:
        return {"processed": 0, "results": [], "message": "No active alerts"}

    agency_ids = sorted({alert.get("agency_id") for alert in alerts if alert.get("agency_id")})
    tokens = _meta_tokens(client, agency_ids)
    instances = _evolution_instances(client, agency_ids)

    results: List[Dict[str, Any]] = []
    for alert in alerts:
        account_id = alert.get("ad_account_id")
        token = tokens.get(alert.get("agency_id"))
        if not token:
            results.append({"ad_account_id": account_id, "skipped": "no_meta_token"})
            continue
        if in_cooldown(alert.get("last_triggered_at"), now):
            results.append({"ad_account_id": account_id, "skipped": "cooldown"})
            continue
        try:
            results.append(_check_alert(client, alert, token, instances.get(alert.get("agency_id")), now))
        except Exception as err:  # noqa: BLE001
            logger.error("Falha ao verificar saldo de %s: %s", account_id, err)
            results.append({"ad_account_id": account_id, "error": str(err)})

    return {"processed": len(results), "results": results}


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Verifica saldos das contas Meta e envia alertas via WhatsApp.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    parse_args(argv)
    result = check_balance_alerts()
    triggered = sum(1 for item in result["results"] if item.get("triggered"))
    print(f"[balance-alerts] processados={result['processed']} disparados={triggered}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
