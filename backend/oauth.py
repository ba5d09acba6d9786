"""
Fluxo OAuth dos provedores de mídia (Google Ads, GA4, Meta Ads) e do WhatsApp Cloud API.

O `state` é assinado (itsdangerous) e carrega apenas {provider, user_id}.
"""
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote, urlencode

import google_ads
import meta
from auth_utils import load_state, sign_state
from errors import ServiceError
from postgres_client import require_table_client

logger = logging.getLogger(__name__)

APP_URL = (os.getenv("APP_URL") or "http://localhost:5173").rstrip("/")
PUBLIC_API_URL = (os.getenv("PUBLIC_API_URL") or "http://localhost:3001").rstrip("/")
OAUTH_REDIRECT_URI = os.getenv("OAUTH_REDIRECT_URI") or f"{PUBLIC_API_URL}/api/oauth/callback"
META_REDIRECT_URI = os.getenv("META_REDIRECT_URI") or f"{PUBLIC_API_URL}/api/whatsapp/meta/callback"

PROVIDERS = ("google_ads", "ga4", "meta_ads")
WHATSAPP_PROVIDER = "whatsapp_cloud"

GOOGLE_SCOPES = {
    "google_ads": "https://www.googleapis.com/auth/adwords",
    "ga4": "https://www.googleapis.com/auth/analytics.readonly",
}
META_ADS_SCOPE = "ads_read,ads_management,business_management"
WHATSAPP_SCOPE = "whatsapp_business_management,whatsapp_business_messaging,business_management"
META_DIALOG_URL = f"https://www.facebook.com/{meta.VERSION}/dialog/oauth"

PENDING_TTL_MINUTES = 30


def connections_url(**params: str) -> str:
    return f"{APP_URL}/conexoes?{urlencode(params, quote_via=quote)}"


def build_authorization_url(provider: str, user_id: str) -> str:
    if provider not in PROVIDERS:
        raise ServiceError("Invalid provider", status=400)

    state = sign_state({"provider": provider, "user_id": user_id})

    if provider in GOOGLE_SCOPES:
        if not google_ads.CLIENT_ID:
            raise ServiceError("GOOGLE_CLIENT_ID not configured", status=500)
        params = {
            "client_id": google_ads.CLIENT_ID,
            "redirect_uri": OAUTH_REDIRECT_URI,
            "response_type": "code",
            "scope": GOOGLE_SCOPES[provider],
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        logger.info("URL de autorização Google gerada para %s", provider)
        return f"{google_ads.AUTH_URL}?{urlencode(params)}"

    if not meta.APP_ID:
        raise ServiceError("META_APP_ID not configured", status=500)
    params = {
        "client_id": meta.APP_ID,
        "redirect_uri": OAUTH_REDIRECT_URI,
        "response_type": "code",
        "scope": META_ADS_SCOPE,
        "state": state,
    }
    logger.info("URL de autorização Meta gerada para %s", provider)
    return f"{META_DIALOG_URL}?{urlencode(params)}"


def _read_callback_args(args: Mapping[str, Any]) -> Dict[str, Any]:
    code = args.get("code")
    raw_state = args.get("state")
    if not code or not raw_state:
        raise ServiceError("Missing code or state", status=400)
    state = load_state(raw_state)
    if not state or not state.get("user_id"):
        raise ServiceError("Invalid state", status=400)
    return {"code": code, "state": state}


def _expires_at(expires_in: Optional[int]) -> Optional[str]:
    if not expires_in:
        return None
    return (datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))).isoformat()


def _connect_google(client, user_id: str, provider: str, code: str) -> Dict[str, Any]:
    tokens = google_ads.exchange_code(code, OAUTH_REDIRECT_URI)
    access_token = tokens["access_token"]
    accounts: List[Dict[str, Any]] = []

    if provider == "google_ads":
        for acc in google_ads.discover_ad_accounts(access_token):
            client.table("manager_ad_accounts").upsert(
                {
                    "manager_id": user_id,
                    "customer_id": acc["id"],
                    "account_name": acc["name"],
                    "is_active": False,
                },
                on_conflict="manager_id,customer_id",
            ).execute()
            accounts.append(acc)
    else:
        for prop in google_ads.list_ga4_properties(access_token):
            client.table("manager_ga4_properties").upsert(
                {
                    "manager_id": user_id,
                    "property_id": prop["id"],
                    "property_name": prop["name"],
                    "is_active": False,
                },
                on_conflict="manager_id,property_id",
            ).execute()
            accounts.append(prop)

    return {
        "access_token": access_token,
        "refresh_token": tokens.get("refresh_token"),
        "expires_in": tokens.get("expires_in"),
        "accounts": accounts,
    }


def _connect_meta(client, user_id: str, code: str) -> Dict[str, Any]:
    tokens = meta.exchange_code(code, OAUTH_REDIRECT_URI)
    access_token = tokens["access_token"]
    accounts = []
    for acc in meta.list_ad_accounts(access_token):
        name = acc.get("name") or acc.get("id")
        client.table("manager_meta_ad_accounts").upsert(
            {
                "manager_id": user_id,
                "ad_account_id": acc.get("id"),
                "account_name": name,
                "is_active": False,
            },
            on_conflict="manager_id,ad_account_id",
        ).execute()
        accounts.append({"id": acc.get("id"), "name": name})
    logger.info("Contas Meta Ads encontradas: %s", len(accounts))
    return {
        "access_token": access_token,
        "refresh_token": None,
        "expires_in": tokens.get("expires_in"),
        "accounts": accounts,
    }


def handle_callback(args: Mapping[str, Any]) -> str:
    """
    Conclui o OAuth dos provedores de mídia e devolve a URL de redirect do SPA.
    """
    if args.get("error"):
        logger.error("Provedor retornou erro: %s - %s", args.get("error"), args.get("error_description"))
        return connections_url(error=args.get("error_description") or args.get("error"))

    parsed = _read_callback_args(args)
    state = parsed["state"]
    provider = state.get("provider")
    user_id = state["user_id"]
    if provider not in PROVIDERS:
        raise ServiceError("Invalid provider", status=400)

    client = require_table_client()
    try:
        if provider == "meta_ads":
            result = _connect_meta(client, user_id, parsed["code"])
        else:
            result = _connect_google(client, user_id, provider, parsed["code"])

        client.table("oauth_connections").upsert(
            {
                "manager_id": user_id,
                "provider": provider,
                "access_token": result["access_token"],
                "refresh_token": result["refresh_token"],
                "token_expires_at": _expires_at(result["expires_in"]),
                "account_data": [
                    {"id": acc["id"], "name": acc["name"], "selected": False}
                    for acc in result["accounts"]
                ],
                "connected": True,
            },
            on_conflict="manager_id,provider",
        ).execute()
    except Exception as err:  # noqa: BLE001
        logger.exception("OAuth callback error (%s): %s", provider, err)
        return connections_url(error=str(err))

    logger.info("Conexão salva para %s, usuário %s", provider, user_id)
    return connections_url(connected=provider)


# ---- WhatsApp Cloud API ----

def build_whatsapp_authorization_url(user_id: str) -> str:
    if not meta.APP_ID:
        raise ServiceError("META_APP_ID not configured", status=500)
    params = {
        "client_id": meta.APP_ID,
        "redirect_uri": META_REDIRECT_URI,
        "response_type": "code",
        "scope": WHATSAPP_SCOPE,
        "state": sign_state({"provider": WHATSAPP_PROVIDER, "user_id": user_id}),
    }
    return f"{META_DIALOG_URL}?{urlencode(params)}"


def handle_whatsapp_callback(args: Mapping[str, Any]) -> str:
    if args.get("error"):
        logger.error("WhatsApp OAuth error: %s - %s", args.get("error"), args.get("error_description"))
        return connections_url(error=args.get("error_description") or args.get("error"))

    parsed = _read_callback_args(args)
    if parsed["state"].get("provider") != WHATSAPP_PROVIDER:
        raise ServiceError("Invalid state", status=400)
    user_id = parsed["state"]["user_id"]
    client = require_table_client()

    try:
        access_token = meta.exchange_code(parsed["code"], META_REDIRECT_URI)["access_token"]
        accounts = meta.flatten_whatsapp_accounts(meta.list_whatsapp_businesses(access_token))
        logger.info("WhatsApp: %s número(s) encontrados para %s", len(accounts), user_id)

        if len(accounts) > 1:
            client.table("whatsapp_pending_connections").insert(
                {
                    "agency_id": user_id,
                    "access_token": access_token,
                    "accounts": accounts,
                    "expires_at": (
                        datetime.now(timezone.utc) + timedelta(minutes=PENDING_TTL_MINUTES)
                    ).isoformat(),
                }
            ).execute()
            return connections_url(whatsapp="select")

        selected = accounts[0] if accounts else {}
        client.table("whatsapp_connections").upsert(
            {
                "agency_id": user_id,
                "business_id": selected.get("business_id") or "pending",
                "waba_id": selected.get("waba_id") or "pending",
                "phone_number_id": selected.get("phone_number_id") or "pending",
                "access_token": access_token,
                "status": "connected" if selected else "pending_setup",
            },
            on_conflict="agency_id",
        ).execute()
    except Exception as err:  # noqa: BLE001
        logger.exception("WhatsApp callback error: %s", err)
        return connections_url(error=str(err))

    return connections_url(connected="whatsapp")
