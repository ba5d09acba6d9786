"""
Webhook da Hotmart e consulta de assinaturas/planos.
"""
import hmac
import logging
import os
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from errors import ServiceError
from postgres_client import require_table_client
from supabase_client import require_supabase_client

load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), ".env"), override=False)

logger = logging.getLogger(__name__)

HOTMART_TOKEN = os.getenv("HOTMART_TOKEN")

LOGS_TABLE = "hotmart_webhook_logs"
SUBSCRIPTIONS_TABLE = "subscriptions"
PLANS_TABLE = "plans"

APPROVED_EVENTS = ("PURCHASE_APPROVED", "PURCHASE_COMPLETE")
CANCEL_EVENTS = ("PURCHASE_CANCELED", "SUBSCRIPTION_CANCELLATION")
REFUND_EVENTS = ("PURCHASE_REFUNDED",)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _first(response) -> Optional[Dict[str, Any]]:
    rows = getattr(response, "data", None) or []
    return rows[0] if rows else None


def _list_users(auth_client):
    response = auth_client.auth.admin.list_users()
    # versões do supabase-py devolvem lista direta ou objeto com .users
    return getattr(response, "users", response) or []


def find_user_id_by_email(email: str) -> Optional[str]:
    auth_client = require_supabase_client()
    target = email.strip().lower()
    for user in _list_users(auth_client):
        if (getattr(user, "email", None) or "").lower() == target:
            return str(user.id)
    return None


def _create_user(email: str, full_name: str) -> str:
    auth_client = require_supabase_client()
    response = auth_client.auth.admin.create_user(
        {
            "email": email,
            "password": secrets.token_urlsafe(24),
            "email_confirm": True,
            "user_metadata": {"full_name": full_name or ""},
        }
    )
    user = getattr(response, "user", None)
    if user is None:
        raise ServiceError(f"Failed to create user for {email}", status=500)
    return str(user.id)


def _activate(client, data: Dict[str, Any]) -> str:
    buyer = data.get("buyer") or {}
    email = buyer.get("email")
    if not email:
        raise ServiceError("No buyer email in webhook payload", status=400)

    product_id = (data.get("product") or {}).get("id")
    product_id = str(product_id) if product_id is not None else None
    plan = None
    if product_id:
        plan = _first(
            client.table(PLANS_TABLE)
            .select("id")
            .eq("hotmart_product_id", product_id)
            .eq("is_active", True)
            .limit(1)
            .execute()
        )

    user_id = find_user_id_by_email(email) or _create_user(email, buyer.get("name") or "")
    client.table(SUBSCRIPTIONS_TABLE).upsert(
        {
            "user_id": user_id,
            "plan_id": (plan or {}).get("id"),
            "status": "active",
            "started_at": _now_iso(),
            "hotmart_subscription_id": ((data.get("subscription") or {}).get("subscriber") or {}).get("code"),
            "hotmart_transaction_id": (data.get("purchase") or {}).get("transaction"),
            "hotmart_product_id": product_id,
        },
        on_conflict="user_id",
    ).execute()
    logger.info("Assinatura ativada para %s", email)
    return user_id


def _close(client, data: Dict[str, Any], status: str) -> Optional[str]:
    email = (data.get("buyer") or {}).get("email")
    if not email:
        return None
    user_id = find_user_id_by_email(email)
    if not user_id:
        logger.warning("Hotmart: usuário %s não encontrado para status %s", email, status)
        return None
    (
        client.table(SUBSCRIPTIONS_TABLE)
        .update({"status": status, "cancelled_at": _now_iso()})
        .eq("user_id", user_id)
        .execute()
    )
    logger.info("Assinatura %s para %s", status, email)
    return user_id


def process_webhook(body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not HOTMART_TOKEN:
        raise ServiceError("HOTMART_TOKEN not configured", status=500)
    body = body or {}
    provided = str(body.get("hottok") or "").encode("utf-8")
    if not hmac.compare_digest(provided, HOTMART_TOKEN.encode("utf-8")):
        logger.error("Hotmart: hottok inválido")
        raise ServiceError("Unauthorized", status=401)

    client = require_table_client()
    event = body.get("event")
    data = body.get("data") or {}

    log = _first(
        client.table(LOGS_TABLE).insert({"event_type": event, "payload": body, "processed": False}).execute()
    )

    if event in APPROVED_EVENTS:
        _activate(client, data)
        if log and log.get("id"):
            client.table(LOGS_TABLE).update({"processed": True}).eq("id", log["id"]).execute()
    elif event in CANCEL_EVENTS:
        _close(client, data, "cancelled")
    elif event in REFUND_EVENTS:
        _close(client, data, "refunded")
    else:
        logger.info("Hotmart: evento %s ignorado", event)

    return {"success": True}


def get_subscription(user_id: str, client=None) -> Dict[str, Any]:
    client = client or require_table_client()
    subscription = _first(
        client.table(SUBSCRIPTIONS_TABLE)
        .select("*")
        .eq("user_id", user_id)
        .eq("status", "active")
        .limit(1)
        .execute()
    )
    plan = None
    if subscription and subscription.get("plan_id"):
        plan = _first(client.table(PLANS_TABLE).select("*").eq("id", subscription["plan_id"]).limit(1).execute())

    return {
        "subscription": dict(subscription, plan=plan) if subscription else None,
        "is_active": bool(subscription and subscription.get("status") == "active"),
        "max_clients": int((plan or {}).get("max_clients") or 0),
        "max_ad_accounts": int((plan or {}).get("max_ad_accounts") or 0),
        "plan_name": (plan or {}).get("name"),
        "features": (plan or {}).get("features") or {},
    }


def has_feature(subscription: Optional[Dict[str, Any]], feature_key: str) -> bool:
    features = (subscription or {}).get("features") or {}
    return features.get(feature_key) is True
