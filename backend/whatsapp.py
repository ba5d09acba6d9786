"""
Conexões de WhatsApp da agência: instâncias Evolution (QR code) e WhatsApp Cloud API.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import evolution
from errors import ServiceError
from periods import parse_datetime
from postgres_client import require_table_client

logger = logging.getLogger(__name__)

CONNECTIONS_TABLE = "whatsapp_connections"
PENDING_TABLE = "whatsapp_pending_connections"


def _scoped(query, user_id: str, client_id: Optional[str]):
    query = query.eq("agency_id", user_id)
    if client_id:
        return query.eq("client_id", client_id)
    return query.is_("client_id", "null")


def _first(response) -> Optional[Dict[str, Any]]:
    rows = getattr(response, "data", None) or []
    return rows[0] if rows else None


def get_instance_row(client, user_id: str, client_id: Optional[str] = None, connected_only: bool = False):
    query = _scoped(client.table(CONNECTIONS_TABLE).select("*"), user_id, client_id)
    if connected_only:
        query = query.eq("status", "connected")
    return _first(query.limit(1).execute())


def _replace_instance_row(client, user_id: str, client_id: Optional[str], record: Dict[str, Any]) -> None:
    _scoped(client.table(CONNECTIONS_TABLE).delete(), user_id, client_id).execute()
    client.table(CONNECTIONS_TABLE).insert(record).execute()


def _create_instance(client, user_id: str, client_id: Optional[str]) -> Dict[str, Any]:
    instance_name = evolution.build_instance_name(user_id, client_id)
    base_record = {
        "agency_id": user_id,
        "provider": "evolution",
        "instance_name": instance_name,
        "client_id": client_id or None,
    }

    if evolution.connection_state(instance_name) == "open":
        _replace_instance_row(client, user_id, client_id, dict(base_record, status="connected"))
        return {"success": True, "instance_name": instance_name, "already_connected": True}

    # instância antiga é descartada para gerar um QR novo
    evolution.delete_instance(instance_name)
    created = evolution.create_instance(instance_name)
    record = dict(
        base_record,
        instance_id=(created.get("instance") or {}).get("instanceId"),
        status="pending",
    )
    _replace_instance_row(client, user_id, client_id, record)
    return {
        "success": True,
        "instance_name": instance_name,
        "qrcode": (created.get("qrcode") or {}).get("base64"),
    }


def _get_qrcode(client, user_id: str, client_id: Optional[str]) -> Dict[str, Any]:
    row = get_instance_row(client, user_id, client_id)
    if not row or not row.get("instance_name"):
        raise ServiceError("No instance found. Create one first.", status=404)
    return {"qrcode": evolution.connect(row["instance_name"])}


def _check_status(client, user_id: str, client_id: Optional[str]) -> Dict[str, Any]:
    row = get_instance_row(client, user_id, client_id)
    if not row or not row.get("instance_name"):
        return {"connected": False, "status": "no_instance"}

    try:
        state = evolution.connection_state(row["instance_name"])
    except evolution.EvolutionAPIError as err:
        logger.warning("Falha ao consultar estado da instância %s: %s", row["instance_name"], err)
        return {"connected": False, "status": "error"}
    if state is None:
        return {"connected": False, "status": "error"}

    connected = state == "open"
    if connected and row.get("status") != "connected":
        _scoped(client.table(CONNECTIONS_TABLE).update({"status": "connected"}), user_id, client_id).execute()
    return {"connected": connected, "status": state or "unknown"}


def _send_message(client, user_id: str, client_id: Optional[str], body: Dict[str, Any]) -> Dict[str, Any]:
    phone = body.get("phone")
    message = body.get("message")
    if not phone or not message:
        raise ServiceError("Missing phone or message", status=400)

    row = get_instance_row(client, user_id, client_id, connected_only=True)
    if not row or not row.get("instance_name"):
        raise ServiceError("No connected WhatsApp instance found.", status=404)

    data = evolution.send_text(row["instance_name"], phone, message, dict(evolution.DEFAULT_SEND_OPTIONS))
    return {"success": True, "data": data}


def _disconnect(client, user_id: str, client_id: Optional[str]) -> Dict[str, Any]:
    row = get_instance_row(client, user_id, client_id)
    if row and row.get("instance_name"):
        evolution.delete_instance(row["instance_name"])
    _scoped(client.table(CONNECTIONS_TABLE).delete(), user_id, client_id).execute()
    return {"success": True}


def evolution_action(user_id: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body = body or {}
    action = body.get("action")
    client_id = body.get("client_id") or None
    client = require_table_client()

    if action == "create-instance":
        return _create_instance(client, user_id, client_id)
    if action == "get-qrcode":
        return _get_qrcode(client, user_id, client_id)
    if action == "check-status":
        return _check_status(client, user_id, client_id)
    if action == "send-message":
        return _send_message(client, user_id, client_id, body)
    if action == "disconnect":
        return _disconnect(client, user_id, client_id)
    raise ServiceError("Invalid action", status=400)


def _latest_pending(client, user_id: str) -> Optional[Dict[str, Any]]:
    return _first(
        client.table(PENDING_TABLE)
        .select("*")
        .eq("agency_id", user_id)
        .order("created_at", desc=True)
        .limit(1)
        .execute()
    )


def _is_expired(pending: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    expires_at = parse_datetime(pending.get("expires_at"))
    return bool(expires_at and expires_at < (now or datetime.now(timezone.utc)))


def get_pending_accounts(user_id: str) -> Dict[str, Any]:
    client = require_table_client()
    pending = _latest_pending(client, user_id)
    if not pending or _is_expired(pending):
        return {"accounts": []}
    return {"accounts": pending.get("accounts") or [], "expires_at": pending.get("expires_at")}


def confirm_selection(user_id: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body = body or {}
    waba_id = body.get("waba_id")
    phone_number_id = body.get("phone_number_id")
    if not waba_id or not phone_number_id:
        raise ServiceError("waba_id and phone_number_id are required", status=400)

    client = require_table_client()
    pending = _latest_pending(client, user_id)
    if not pending:
        raise ServiceError("No pending connection found. Please reconnect WhatsApp.", status=404)

    if _is_expired(pending):
        client.table(PENDING_TABLE).delete().eq("id", pending["id"]).execute()
        raise ServiceError("Pending connection expired. Please reconnect WhatsApp.", status=410)

    accounts: List[Dict[str, Any]] = pending.get("accounts") or []
    selected = next(
        (
            acc for acc in accounts
            if acc.get("waba_id") == waba_id and acc.get("phone_number_id") == phone_number_id
        ),
        None,
    )
    if selected is None:
        raise ServiceError("Selected account does not belong to your authorized accounts.", status=403)

    client.table(CONNECTIONS_TABLE).upsert(
        {
            "agency_id": user_id,
            "business_id": selected.get("business_id"),
            "waba_id": selected.get("waba_id"),
            "phone_number_id": selected.get("phone_number_id"),
            "access_token": pending.get("access_token"),
            "status": "connected",
        },
        on_conflict="agency_id",
    ).execute()
    client.table(PENDING_TABLE).delete().eq("agency_id", user_id).execute()
    logger.info("WhatsApp Cloud conectado para %s (WABA %s)", user_id, waba_id)
    return {"success": True}


def find_cloud_connection(client, agency_id: str, connected_only: bool = True) -> Optional[Dict[str, Any]]:
    """Conexão WhatsApp Cloud API (linha com phone_number_id) da agência."""
    query = client.table(CONNECTIONS_TABLE).select("*").eq("agency_id", agency_id)
    if connected_only:
        query = query.eq("status", "connected")
    for row in query.execute().data or []:
        if row.get("provider") != "evolution" and row.get("phone_number_id"):
            return row
    return None


def get_connection_status(user_id: str) -> Dict[str, Any]:
    client = require_table_client()
    row = find_cloud_connection(client, user_id, connected_only=False)
    if not row:
        return {"connected": False, "connection": None}
    row = {key: value for key, value in row.items() if key != "access_token"}
    return {"connected": row.get("status") == "connected", "connection": row}
