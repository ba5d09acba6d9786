"""
Gestão dos clientes finais de uma agência: cadastro, vínculo e contas atribuídas.
"""
import logging
from typing import Any, Dict, List, Optional

from auth_utils import get_user_role, is_manager_role
from decision_engine import normalize_strategy_type
from errors import ServiceError
from postgres_client import require_table_client
from supabase_client import require_supabase_client

logger = logging.getLogger(__name__)

ASSIGNMENT_TABLES = {
    "google_accounts": ("client_ad_accounts", "customer_id"),
    "meta_accounts": ("client_meta_ad_accounts", "ad_account_id"),
    "ga4_properties": ("client_ga4_properties", "property_id"),
}


def get_link(client, manager_id: str, client_user_id: str) -> Optional[Dict[str, Any]]:
    rows = (
        client.table("client_manager_links")
        .select("*")
        .eq("client_user_id", client_user_id)
        .eq("manager_id", manager_id)
        .limit(1)
        .execute()
        .data
        or []
    )
    return rows[0] if rows else None


def manager_for_client(client, client_user_id: str) -> Optional[str]:
    rows = (
        client.table("client_manager_links")
        .select("manager_id")
        .eq("client_user_id", client_user_id)
        .limit(1)
        .execute()
        .data
        or []
    )
    return rows[0].get("manager_id") if rows else None


def assigned_ids(client, table: str, column: str, client_user_id: str) -> List[str]:
    rows = client.table(table).select(column).eq("client_user_id", client_user_id).execute().data or []
    return [row.get(column) for row in rows if row.get(column)]


def _by_client(rows: List[Dict[str, Any]], client_user_id: str, column: str) -> List[str]:
    return [row.get(column) for row in rows if row.get("client_user_id") == client_user_id]


def list_clients(client, manager_id: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    links = (
        client.table("client_manager_links")
        .select("id,client_user_id,client_label,strategy_type,created_at")
        .eq("manager_id", manager_id)
        .execute()
        .data
        or []
    )
    client_ids = [link.get("client_user_id") for link in links]

    profiles: Dict[str, Dict[str, Any]] = {}
    assignments: Dict[str, List[Dict[str, Any]]] = {key: [] for key in ASSIGNMENT_TABLES}
    if client_ids:
        for row in client.table("profiles").select("id,email,full_name").in_("id", client_ids).execute().data or []:
            profiles[row.get("id")] = row
        for key, (table, _column) in ASSIGNMENT_TABLES.items():
            assignments[key] = client.table(table).select("*").in_("client_user_id", client_ids).execute().data or []

    clients = []
    for link in links:
        profile = profiles.get(link.get("client_user_id")) or {}
        entry = dict(link)
        entry["email"] = profile.get("email")
        entry["full_name"] = profile.get("full_name")
        for key, (_table, column) in ASSIGNMENT_TABLES.items():
            entry[key] = _by_client(assignments[key], link.get("client_user_id"), column)
        clients.append(entry)

    google = (
        client.table("manager_ad_accounts")
        .select("customer_id,account_name")
        .eq("manager_id", manager_id)
        .eq("is_active", True)
        .execute()
        .data
        or []
    )
    meta_accounts = (
        client.table("manager_meta_ad_accounts")
        .select("ad_account_id,account_name")
        .eq("manager_id", manager_id)
        .eq("is_active", True)
        .execute()
        .data
        or []
    )
    ga4_conn = (
        client.table("oauth_connections")
        .select("account_data")
        .eq("manager_id", manager_id)
        .eq("provider", "ga4")
        .eq("connected", True)
        .limit(1)
        .execute()
        .data
        or []
    )
    ga4_items = (ga4_conn[0].get("account_data") if ga4_conn else None) or []
    ga4 = [
        {"property_id": item.get("id"), "name": item.get("name") or item.get("id")}
        for item in ga4_items
        if isinstance(item, dict) and item.get("selected")
    ]

    return {
        "clients": clients,
        "available_accounts": {"google": google, "meta": meta_accounts, "ga4": ga4},
    }


def create_client(client, manager_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    email = body.get("email")
    password = body.get("password")
    full_name = body.get("full_name") or ""
    if not email or not password:
        raise ServiceError("Email and password are required", status=400)

    auth_client = require_supabase_client()
    response = auth_client.auth.admin.create_user(
        {
            "email": email,
            "password": password,
            "email_confirm": True,
            "user_metadata": {"full_name": full_name},
        }
    )
    client_user_id = str(response.user.id)

    client.table("user_roles").update({"role": "client"}).eq("user_id", client_user_id).execute()
    client.table("client_manager_links").insert(
        {
            "client_user_id": client_user_id,
            "manager_id": manager_id,
            "client_label": body.get("client_label") or full_name or email,
            "strategy_type": normalize_strategy_type(body.get("strategy_type")),
        }
    ).execute()
    logger.info("Cliente %s criado pelo gestor %s", client_user_id, manager_id)
    return {"success": True, "client_user_id": client_user_id}


def update_client(client, manager_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    link_id = body.get("link_id")
    if not link_id:
        raise ServiceError("link_id is required", status=400)
    (
        client.table("client_manager_links")
        .update(
            {
                "client_label": body.get("client_label"),
                "strategy_type": normalize_strategy_type(body.get("strategy_type")),
            }
        )
        .eq("id", link_id)
        .eq("manager_id", manager_id)
        .execute()
    )
    return {"success": True}


def delete_client(client, manager_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    link_id = body.get("link_id")
    if not link_id:
        raise ServiceError("link_id is required", status=400)
    client.table("client_manager_links").delete().eq("id", link_id).eq("manager_id", manager_id).execute()
    return {"success": True}


def save_accounts(client, manager_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    client_user_id = body.get("client_user_id")
    if not client_user_id:
        raise ServiceError("client_user_id is required", status=400)
    if not get_link(client, manager_id, client_user_id):
        raise ServiceError("Client not linked to this manager", status=403)

    for key, (table, column) in ASSIGNMENT_TABLES.items():
        ids = body.get(key)
        if not isinstance(ids, list):
            continue
        client.table(table).delete().eq("client_user_id", client_user_id).execute()
        if ids:
            client.table(table).insert(
                [{"client_user_id": client_user_id, column: value} for value in ids]
            ).execute()
    return {"success": True}


ACTIONS = {
    "list": list_clients,
    "create": create_client,
    "update": update_client,
    "delete": delete_client,
    "save_accounts": save_accounts,
}


def manage_clients(manager_id: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body = body or {}
    client = require_table_client()
    if not is_manager_role(get_user_role(manager_id, client)):
        raise ServiceError("Forbidden: only managers can manage clients", status=403)

    action = body.get("action") or "list"
    handler = ACTIONS.get(action)
    if handler is None:
        raise ServiceError("Unknown action", status=400)
    return handler(client, manager_id, body)
