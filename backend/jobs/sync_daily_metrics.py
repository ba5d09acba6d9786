import argparse
import logging
import os
import sys
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.dirname(CURRENT_DIR)
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

import google_ads
import meta
from clients import assigned_ids
from metrics import safe_ratios, to_float
from periods import parse_date, utc_today
from postgres_client import require_table_client

logger = logging.getLogger(__name__)

METRICS_TABLE = "daily_metrics"
CAMPAIGNS_TABLE = "daily_campaigns"
METRICS_CONFLICT = "account_id,platform,date"
CAMPAIGNS_CONFLICT = "client_id,account_id,platform,date,campaign_name"
DAILY_CAMPAIGNS_LIMIT = 20

Rows = List[Dict[str, Any]]


def metrics_row(
    client_id: str,
    account_id: str,
    platform: str,
    day: str,
    spend: float,
    impressions: float,
    clicks: float,
    conversions: float,
    revenue: float,
) -> Dict[str, Any]:
    row = {
        "client_id": client_id,
        "account_id": account_id,
        "platform": platform,
        "date": day,
        "spend": spend,
        "impressions": impressions,
        "clicks": clicks,
        "conversions": conversions,
        "revenue": revenue,
    }
    row.update(safe_ratios(spend, impressions, clicks, conversions, revenue))
    return row


def google_rows(client_id: str, customer_id: str, access_token: str, day: str) -> Tuple[Rows, Rows]:
    metrics: Rows = []
    for result in google_ads.search_stream(customer_id, access_token, google_ads.customer_metrics_query(day=day)):
        m = result.get("metrics") or {}
        metrics.append(
            metrics_row(
                client_id,
                customer_id,
                "google",
                day,
                spend=google_ads.micros_to_units(m.get("costMicros")),
                impressions=to_float(m.get("impressions")),
                clicks=to_float(m.get("clicks")),
                conversions=to_float(m.get("conversions")),
                revenue=to_float(m.get("conversionsValue")),
            )
        )

    campaigns: Rows = []
    for result in google_ads.search_stream(customer_id, access_token, google_ads.campaigns_query(day=day)):
        m = result.get("metrics") or {}
        spend = google_ads.micros_to_units(m.get("costMicros"))
        conversions = to_float(m.get("conversions"))
        campaigns.append(
            {
                "client_id": client_id,
                "account_id": customer_id,
                "platform": "google",
                "date": day,
                "campaign_name": (result.get("campaign") or {}).get("name"),
                "campaign_status": "Ativa",
                "spend": spend,
                "clicks": to_float(m.get("clicks")),
                "conversions": conversions,
                "leads": 0,
                "messages": 0,
                "revenue": to_float(m.get("conversionsValue")),
                "cpa": spend / conversions if conversions > 0 else 0,
                "source": "Google Ads",
            }
        )
    return metrics, campaigns


def meta_rows(
    client_id: str,
    account_id: str,
    access_token: str,
    day: str,
    conversion_actions: Sequence[str] = meta.REGISTRATION_ACTIONS,
    with_engagement: bool = True,
) -> Tuple[Rows, Rows]:
    """
    Linhas de daily_metrics/daily_campaigns de uma conta Meta em um único dia.

    conversion_actions define o que conta como conversão no nível da conta;
    with_engagement inclui followers/profile_visits nas campanhas.
    """
    metrics: Rows = []
    insight = meta.account_insights(account_id, access_token, since=day, until=day)
    if insight:
        metrics.append(
            metrics_row(
                client_id,
                account_id,
                "meta",
                day,
                spend=to_float(insight.get("spend")),
                impressions=to_float(insight.get("impressions")),
                clicks=to_float(insight.get("clicks")),
                conversions=meta.sum_actions(insight.get("actions"), conversion_actions),
                revenue=meta.first_action_amount(insight.get("action_values"), meta.PURCHASE_ACTIONS),
            )
        )

    campaigns: Rows = []
    for campaign in meta.account_campaigns(
        account_id,
        access_token,
        since=day,
        until=day,
        limit=DAILY_CAMPAIGNS_LIMIT,
        active_only=True,
    ):
        data = meta.campaign_insight(campaign)
        actions = data.get("actions")
        spend = to_float(data.get("spend"))
        leads = meta.sum_actions(actions, meta.REGISTRATION_ACTIONS)
        messages = meta.action_value(actions, meta.MESSAGE_ACTIONS)
        is_message_campaign = campaign.get("objective") == "MESSAGES" or messages > 0
        primary_result = messages if is_message_campaign else leads

        row = {
            "client_id": client_id,
            "account_id": account_id,
            "platform": "meta",
            "date": day,
            "campaign_name": campaign.get("name"),
            "campaign_status": "Ativa",
            "spend": spend,
            "clicks": 0,
            "conversions": 0,
            "leads": leads,
            "messages": messages,
            "revenue": meta.first_action_amount(data.get("action_values"), meta.PURCHASE_ACTIONS),
            "cpa": spend / primary_result if primary_result > 0 else 0,
            "source": "Meta Ads",
        }
        if with_engagement:
            row["followers"] = meta.action_value(actions, meta.FOLLOW_ACTIONS)
            row["profile_visits"] = meta.action_value(actions, meta.PROFILE_VISIT_ACTIONS)
        campaigns.append(row)
    return metrics, campaigns


def upsert_daily_rows(
    client,
    metrics: Rows,
    campaigns: Rows,
    errors: Optional[List[str]] = None,
    label: str = "",
) -> Tuple[int, int]:
    """
    Grava daily_metrics e daily_campaigns de forma independente.
    Cada tabela só conta as linhas se o próprio upsert der certo; falhas vão para `errors`.
    """
    errors = errors if errors is not None else []
    metrics_count = campaigns_count = 0
    if metrics:
        try:
            client.table(METRICS_TABLE).upsert(metrics, on_conflict=METRICS_CONFLICT).execute()
            metrics_count = len(metrics)
        except Exception as err:  # noqa: BLE001
            logger.error("Falha no upsert de daily_metrics (%s): %s", label, err)
            errors.append(f"Upsert error for {label}: {err}")
    if campaigns:
        try:
            client.table(CAMPAIGNS_TABLE).upsert(campaigns, on_conflict=CAMPAIGNS_CONFLICT).execute()
            campaigns_count = len(campaigns)
        except Exception as err:  # noqa: BLE001
            logger.error("Falha no upsert de daily_campaigns (%s): %s", label, err)
            errors.append(f"Campaign upsert error for {label}: {err}")
    return metrics_count, campaigns_count


def _group_by_manager(connections: Rows) -> Dict[str, Dict[str, Dict[str, Any]]]:
    grouped: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
    for conn in connections:
        grouped[conn.get("manager_id")][conn.get("provider")] = conn
    return grouped


def real_client_ids(client, manager_id: str) -> List[str]:
    links = (
        client.table("client_manager_links")
        .select("client_user_id,is_demo")
        .eq("manager_id", manager_id)
        .execute()
        .data
        or []
    )
    return [link["client_user_id"] for link in links if link.get("client_user_id") and not link.get("is_demo")]


def _sync_client(
    client,
    client_id: str,
    connections: Dict[str, Dict[str, Any]],
    day: str,
    errors: List[str],
    manager_id: str,
) -> int:
    metrics: Rows = []
    campaigns: Rows = []

    google_conn = connections.get("google_ads")
    if google_conn and google_conn.get("refresh_token"):
        google_ids = assigned_ids(client, "client_ad_accounts", "customer_id", client_id)
        if google_ids:
            try:
                token = google_ads.refresh_access_token(google_conn["refresh_token"])
                for customer_id in google_ids:
                    account_metrics, account_campaigns = google_rows(client_id, customer_id, token, day)
                    metrics.extend(account_metrics)
                    campaigns.extend(account_campaigns)
            except Exception as err:  # noqa: BLE001
                logger.error("Google Ads falhou para gestor %s, cliente %s: %s", manager_id, client_id, err)
                errors.append(f"Google Ads error for manager {manager_id}, client {client_id}: {err}")

    meta_conn = connections.get("meta_ads")
    if meta_conn and meta_conn.get("access_token"):
        for account_id in assigned_ids(client, "client_meta_ad_accounts", "ad_account_id", client_id):
            try:
                account_metrics, account_campaigns = meta_rows(client_id, account_id, meta_conn["access_token"], day)
                metrics.extend(account_metrics)
                campaigns.extend(account_campaigns)
            except Exception as err:  # noqa: BLE001
                logger.error("Meta Ads falhou para %s: %s", account_id, err)
                errors.append(f"Meta Ads error for {account_id}: {err}")

    upserted, campaigns_count = upsert_daily_rows(client, metrics, campaigns, errors, f"client {client_id}")
    if campaigns_count:
        logger.info("%s linhas de daily_campaigns gravadas para %s", campaigns_count, client_id)
    return upserted


def sync_daily_metrics(target_date: Optional[date] = None) -> Dict[str, Any]:
    day = (target_date or (utc_today() - timedelta(days=1))).isoformat()
    logger.info("[sync-daily-metrics] Iniciando sincronização de %s", day)

    client = require_table_client()
    connections = client.table("oauth_connections").select("*").eq("connected", True).execute().data or []

    total = 0
    errors: List[str] = []
    for manager_id, provider_conns in _group_by_manager(connections).items():
        try:
            for client_id in real_client_ids(client, manager_id):
                total += _sync_client(client, client_id, provider_conns, day, errors, manager_id)
        except Exception as err:  # noqa: BLE001
            logger.exception("Falha ao sincronizar gestor %s: %s", manager_id, err)
            errors.append(f"Manager {manager_id} error: {err}")

    logger.info("[sync-daily-metrics] Concluído. upserted=%s erros=%s", total, len(errors))
    result: Dict[str, Any] = {"success": True, "date": day, "upserted": total}
    if errors:
        result["errors"] = errors
    return result


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sincroniza daily_metrics/daily_campaigns (padrão: ontem, UTC).")
    parser.add_argument("--date", dest="date", help="Dia a sincronizar (YYYY-MM-DD).")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    args = parse_args(argv)
    target = parse_date(args.date) if args.date else None
    result = sync_daily_metrics(target)
    print(f"[sync-daily-metrics] {result['date']}: upserted={result['upserted']} erros={len(result.get('errors') or [])}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
