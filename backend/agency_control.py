import logging
from typing import Any, Dict, List, Optional

from campaign_board import generate_health_tasks, task_counts
from dashboard import load_daily_rows
from decision_engine import calculate_client_health, normalize_strategy_type
from errors import ServiceError
from metrics import to_float
from periods import Range, comparison_periods
from postgres_client import require_table_client

logger = logging.getLogger(__name__)


def snapshot(rows: List[Dict[str, Any]]) -> Dict[str, float]:
    spend = sum(to_float(row.get("spend")) for row in rows)
    revenue = sum(to_float(row.get("revenue")) for row in rows)
    conversions = sum(to_float(row.get("conversions")) for row in rows)
    return {
        "spend": spend,
        "revenue": revenue,
        "conversions": conversions,
        "roas": revenue / spend if spend > 0 else 0.0,
        "cpa": spend / conversions if conversions > 0 else 0.0,
    }


def agency_health(
    manager_id: str,
    range_: Range = "LAST_7_DAYS",
    today=None,
    generate_tasks: bool = False,
) -> Dict[str, Any]:
    """
    Saúde de todos os clientes do gestor, ordenada por prioridade (1 = crítico) e score.
    """
    try:
        periods = comparison_periods(range_ or "LAST_7_DAYS", today)
    except ValueError as err:
        raise ServiceError(str(err), status=400)

    client = require_table_client()
    links = (
        client.table("client_manager_links")
        .select("client_user_id,client_label,strategy_type")
        .eq("manager_id", manager_id)
        .order("client_label", desc=False)
        .execute()
        .data
        or []
    )

    current_period = periods["current"]
    previous_period = periods["previous"]

    entries = []
    for link in links:
        client_id = link.get("client_user_id")
        strategy = normalize_strategy_type(link.get("strategy_type"))
        current = snapshot(load_daily_rows(client, client_id, current_period["start"], current_period["end"]))
        previous = snapshot(load_daily_rows(client, client_id, previous_period["start"], previous_period["end"]))
        decision = calculate_client_health(strategy, current, previous)
        if generate_tasks:
            try:
                generate_health_tasks(client_id, decision)
            except Exception as err:  # noqa: BLE001
                logger.error("Falha ao gerar tarefa automática para %s: %s", client_id, err)
        entries.append(
            {
                "client_id": client_id,
                "client_name": link.get("client_label"),
                "strategy_type": strategy,
                "status": decision["status"],
                "score": decision["score"],
                "variation": decision["variation"],
                "priority": decision["priority"],
                "recommendation": decision["recommendation"],
                "metrics_current": current,
                "metrics_previous": previous,
            }
        )

    entries.sort(key=lambda item: (item["priority"], -item["score"]))

    counts = task_counts([entry["client_id"] for entry in entries], client)
    for entry in entries:
        entry["tasks"] = counts.get(entry["client_id"], {"todo": 0, "in_progress": 0, "done": 0})
    return {"periods": periods, "clients": entries, "summary": summarize(entries)}


def summarize(entries: List[Dict[str, Any]]) -> Dict[str, int]:
    summary = {"CRITICAL": 0, "ATTENTION": 0, "STABLE": 0, "GROWING": 0}
    for entry in entries:
        status: Optional[str] = entry.get("status")
        if status in summary:
            summary[status] += 1
    return summary
