"""
Tarefas de otimização por cliente e quadro de planejamento de campanhas (campaign_plans).
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from errors import ServiceError
from postgres_client import require_table_client

logger = logging.getLogger(__name__)

TASKS_TABLE = "optimization_tasks"
PLANS_TABLE = "campaign_plans"

TASK_STATUSES = ("TODO", "IN_PROGRESS", "DONE")
TASK_STATUS_PRIORITY = {"TODO": 0, "IN_PROGRESS": 1, "DONE": 2}

HEALTH_TASK_TITLES = {
    "CRITICAL": "Revisar campanhas com queda crítica de performance",
    "ATTENTION": "Investigar variação de performance",
}

CAMPAIGN_STATUSES = ("PLANEJAMENTO", "PRONTO", "VEICULACAO", "TESTE", "FINALIZADO")
CAMPAIGN_PLATFORMS = ("Meta Ads", "Google Ads", "TikTok Ads", "LinkedIn Ads")
CAMPAIGN_OBJECTIVES = ("Conversão", "Geração de Leads", "Branding", "Tráfego")
CAMPAIGN_CTAS = ("Comprar Agora", "Saiba Mais", "Cadastre-se", "Baixar", "Entrar em Contato", "Inscrever-se")

DEFAULT_CHECKLIST = (
    "Pixel validado",
    "Evento configurado",
    "UTM aplicada",
    "Público criado",
    "Criativo aprovado",
)

EDITABLE_FIELDS = (
    "client_id",
    "client_name",
    "campaign_name",
    "platform",
    "objective",
    "budget",
    "start_date",
    "status",
    "creatives",
    "copy",
    "checklist",
    "notes",
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _first(response) -> Optional[Dict[str, Any]]:
    rows = getattr(response, "data", None) or []
    return rows[0] if rows else None


# --- tarefas de otimização ---


def _task_sort_key(task: Dict[str, Any]):
    return TASK_STATUS_PRIORITY.get(task.get("status"), 9)


def list_tasks(client_id: str) -> List[Dict[str, Any]]:
    client = require_table_client()
    tasks = (
        client.table(TASKS_TABLE)
        .select("*")
        .eq("client_id", client_id)
        .order("created_at", desc=True)
        .execute()
        .data
        or []
    )
    # sort estável: mantém created_at desc dentro de cada status
    tasks = sorted(tasks, key=lambda task: str(task.get("created_at") or ""), reverse=True)
    return sorted(tasks, key=_task_sort_key)


def create_task(
    client_id: str,
    title: Optional[str],
    description: Optional[str] = None,
    auto_generated: bool = False,
) -> Dict[str, Any]:
    title = (title or "").strip()
    if not title:
        raise ServiceError("title is required", status=400)
    client = require_table_client()
    record = {
        "client_id": client_id,
        "title": title,
        "description": description or None,
        "status": "TODO",
        "auto_generated": auto_generated,
    }
    response = client.table(TASKS_TABLE).insert(record).execute()
    return _first(response) or record


def update_task_status(task_id: str, status: Optional[str]) -> Dict[str, Any]:
    if status not in TASK_STATUSES:
        raise ServiceError("Invalid status", status=400)
    client = require_table_client()
    payload = {
        "status": status,
        "completed_at": _now_iso() if status == "DONE" else None,
    }
    response = client.table(TASKS_TABLE).update(payload).eq("id", task_id).execute()
    task = _first(response)
    if task is None:
        raise ServiceError("Task not found", status=404)
    return task


def get_task(task_id: str) -> Optional[Dict[str, Any]]:
    client = require_table_client()
    return _first(client.table(TASKS_TABLE).select("*").eq("id", task_id).limit(1).execute())


def task_counts(client_ids: Iterable[str], client=None) -> Dict[str, Dict[str, int]]:
    ids = [item for item in client_ids if item]
    counts = {item: {"todo": 0, "in_progress": 0, "done": 0} for item in ids}
    if not ids:
        return counts

    client = client or require_table_client()
    rows = client.table(TASKS_TABLE).select("client_id,status").in_("client_id", ids).execute().data or []
    for row in rows:
        entry = counts.get(row.get("client_id"))
        status = (row.get("status") or "").lower()
        if entry is not None and status in entry:
            entry[status] += 1
    return counts


def generate_health_tasks(client_id: str, health: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Cria uma tarefa automática para clientes em CRITICAL/ATTENTION.

    Não duplica: se já existe tarefa automática aberta com o mesmo título, nada é criado.
    """
    title = HEALTH_TASK_TITLES.get((health or {}).get("status"))
    if not title:
        return None

    client = require_table_client()
    existing = (
        client.table(TASKS_TABLE)
        .select("id,status")
        .eq("client_id", client_id)
        .eq("title", title)
        .eq("auto_generated", True)
        .execute()
        .data
        or []
    )
    if any(row.get("status") != "DONE" for row in existing):
        return None

    task = create_task(client_id, title, health.get("recommendation"), auto_generated=True)
    logger.info("Tarefa automática criada para %s (%s)", client_id, health.get("status"))
    return task


# --- quadro de campanhas ---


def new_campaign(
    manager_id: str,
    client_id: Optional[str] = None,
    client_name: Optional[str] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    campaign = {
        "manager_id": manager_id,
        "client_id": client_id,
        "client_name": client_name or "",
        "campaign_name": "Nova Campanha",
        "platform": "Meta Ads",
        "objective": "Conversão",
        "budget": 0,
        "start_date": date.today().isoformat(),
        "status": "PLANEJAMENTO",
        "creatives": [],
        "copy": {"headline": "", "primary_text": "", "description": "", "cta": "Saiba Mais"},
        "checklist": [
            {"id": f"ch{index}", "text": text, "checked": False}
            for index, text in enumerate(DEFAULT_CHECKLIST)
        ],
        "notes": "",
    }
    campaign.update(validate_campaign_fields(overrides))
    return campaign


def validate_campaign_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in (fields or {}).items():
        if key not in EDITABLE_FIELDS:
            continue
        cleaned[key] = value

    if "campaign_name" in cleaned and not str(cleaned["campaign_name"] or "").strip():
        raise ServiceError("campaign_name is required", status=400)
    if "platform" in cleaned and cleaned["platform"] not in CAMPAIGN_PLATFORMS:
        raise ServiceError("Invalid platform", status=400)
    if "objective" in cleaned and cleaned["objective"] not in CAMPAIGN_OBJECTIVES:
        raise ServiceError("Invalid objective", status=400)
    if "status" in cleaned and cleaned["status"] not in CAMPAIGN_STATUSES:
        raise ServiceError("Invalid status", status=400)
    if "budget" in cleaned:
        try:
            cleaned["budget"] = float(cleaned["budget"] or 0)
        except (TypeError, ValueError):
            raise ServiceError("budget must be a number", status=400)
        if cleaned["budget"] < 0:
            raise ServiceError("budget must be zero or positive", status=400)
    if "start_date" in cleaned:
        try:
            cleaned["start_date"] = date.fromisoformat(str(cleaned["start_date"])[:10]).isoformat()
        except ValueError:
            raise ServiceError("start_date must be YYYY-MM-DD", status=400)
    if "copy" in cleaned:
        copy = cleaned["copy"]
        if not isinstance(copy, dict):
            raise ServiceError("copy must be an object", status=400)
        if copy.get("cta") and copy["cta"] not in CAMPAIGN_CTAS:
            raise ServiceError("Invalid cta", status=400)
    for key in ("creatives", "checklist"):
        if key in cleaned and not isinstance(cleaned[key], list):
            raise ServiceError(f"{key} must be a list", status=400)
    return cleaned


def create_campaign(manager_id: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body = dict(body or {})
    record = new_campaign(manager_id, body.pop("client_id", None), body.pop("client_name", None), **body)
    client = require_table_client()
    response = client.table(PLANS_TABLE).insert(record).execute()
    return _first(response) or record


def list_campaigns(manager_id: str, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    filters = filters or {}
    client = require_table_client()
    query = client.table(PLANS_TABLE).select("*").eq("manager_id", manager_id)
    for key in ("client_id", "platform", "status"):
        value = filters.get(key)
        if value and value != "all":
            query = query.eq(key, value)
    campaigns = query.order("created_at", desc=False).execute().data or []

    columns: Dict[str, List[Dict[str, Any]]] = {status: [] for status in CAMPAIGN_STATUSES}
    for campaign in campaigns:
        columns.setdefault(campaign.get("status") or "PLANEJAMENTO", []).append(campaign)
    return {"campaigns": campaigns, "columns": columns}


def get_campaign(client, manager_id: str, campaign_id: str) -> Dict[str, Any]:
    campaign = _first(
        client.table(PLANS_TABLE)
        .select("*")
        .eq("id", campaign_id)
        .eq("manager_id", manager_id)
        .limit(1)
        .execute()
    )
    if campaign is None:
        raise ServiceError("Campaign not found", status=404)
    return campaign


def update_campaign(manager_id: str, campaign_id: str, fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    cleaned = validate_campaign_fields(fields or {})
    if not cleaned:
        raise ServiceError("No fields to update", status=400)
    client = require_table_client()
    campaign = get_campaign(client, manager_id, campaign_id)
    cleaned["updated_at"] = _now_iso()
    response = (
        client.table(PLANS_TABLE)
        .update(cleaned)
        .eq("id", campaign_id)
        .eq("manager_id", manager_id)
        .execute()
    )
    return _first(response) or dict(campaign, **cleaned)


def move_campaign(manager_id: str, campaign_id: str, status: Optional[str]) -> Dict[str, Any]:
    return update_campaign(manager_id, campaign_id, {"status": status})


def move_next(manager_id: str, campaign_id: str) -> Dict[str, Any]:
    client = require_table_client()
    campaign = get_campaign(client, manager_id, campaign_id)
    status = campaign.get("status")
    index = CAMPAIGN_STATUSES.index(status) if status in CAMPAIGN_STATUSES else 0
    if index >= len(CAMPAIGN_STATUSES) - 1:
        return campaign
    return move_campaign(manager_id, campaign_id, CAMPAIGN_STATUSES[index + 1])


def duplicate_campaign(manager_id: str, campaign_id: str) -> Dict[str, Any]:
    client = require_table_client()
    campaign = get_campaign(client, manager_id, campaign_id)
    record = {key: campaign.get(key) for key in EDITABLE_FIELDS}
    record["manager_id"] = manager_id
    record["campaign_name"] = f"{campaign.get('campaign_name') or ''} (Cópia)"
    response = client.table(PLANS_TABLE).insert(record).execute()
    return _first(response) or record


def delete_campaign(manager_id: str, campaign_id: str) -> Dict[str, Any]:
    client = require_table_client()
    get_campaign(client, manager_id, campaign_id)
    client.table(PLANS_TABLE).delete().eq("id", campaign_id).eq("manager_id", manager_id).execute()
    return {"success": True}
