import logging
from typing import Any, Dict, List, Optional

from errors import ServiceError
from postgres_client import require_table_client

logger = logging.getLogger(__name__)

SECRET_COLUMNS = ("access_token", "refresh_token")

ACCOUNT_ACTIONS = {
    "save_google_accounts": ("manager_ad_accounts", "customer_id"),
    "save_meta_accounts": ("manager_meta_ad_accounts", "ad_account_id"),
    "save_ga4_properties": ("manager_ga4_properties", "property_id"),
}


def _strip_secrets(row: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in row.items() if key not in SECRET_COLUMNS}


def _rows(client, table: str, manager_id: str) -> List[Dict[str, Any]]:
    return client.table(table).select("*").eq("manager_id", manager_id).execute().data or []


def save_selected_accounts(client, manager_id: str, action: str, account_ids: List[str]) -> None:
    table, column = ACCOUNT_ACTIONS[action]
    client.table(table).update({"is_active": False}).eq("manager_id", manager_id).execute()
    for account_id in account_ids:
        (
            client.table(table)
            .update({"is_active": True})
            .eq("manager_id", manager_id)
            .eq(column, account_id)
            .execute()
        )
    logger.info("%s: %s conta(s) ativas para %s", table, len(account_ids), manager_id)


def list_connections(client, manager_id: str) -> Dict[str, Any]:
    return {
        "connections": [_strip_secrets(row) for row in _rows(client, "oauth_connections", manager_id)],
        "google_accounts": _rows(client, "manager_ad_accounts", manager_id),
        "meta_accounts": _rows(client, "manager_meta_ad_accounts", manager_id),
        "ga4_properties": _rows(client, "manager_ga4_properties", manager_id),
    }


def manage_connections(manager_id: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body = body or {}
    client = require_table_client()
    action = body.get("action")
    accounts = body.get("accounts")

    if action in ACCOUNT_ACTIONS and accounts is not None:
        if not isinstance(accounts, list):
            raise ServiceError("accounts must be a list", status=400)
        save_selected_accounts(client, manager_id, action, [str(item) for item in accounts])
        return {"success": True}

    provider = body.get("provider")
    if provider and body.get("account_data") is not None:
        (
            client.table("oauth_connections")
            .update({"account_data": body["account_data"]})
            .eq("manager_id", manager_id)
            .eq("provider", provider)
            .execute()
        )
        return {"success": True}

    return list_connections(client, manager_id)


def disconnect(manager_id: str, provider: str) -> Dict[str, Any]:
    client = require_table_client()
    (
        client.table("oauth_connections")
        .delete()
        .eq("manager_id", manager_id)
        .eq("provider", provider)
        .execute()
    )
    logger.info("Conexão %s removida para %s", provider, manager_id)
    return {"success": True}
