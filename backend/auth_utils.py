import logging
import os
from typing import Any, Dict, Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

AUTH_SECRET_KEY = (
    os.getenv("AUTH_SECRET_KEY")
    or os.getenv("APP_SECRET_KEY")
    or os.getenv("META_APP_SECRET")
)
if not AUTH_SECRET_KEY:
    AUTH_SECRET_KEY = "change-me"
    logger.warning("AUTH_SECRET_KEY not set; using insecure fallback state secret.")

OAUTH_STATE_SALT = "adscape-oauth-state"
OAUTH_STATE_TTL_SECONDS = int(os.getenv("OAUTH_STATE_TTL_SECONDS", "900"))

USER_ROLES_TABLE = "user_roles"
VALID_ROLES = ("admin", "manager", "client")

_state_serializer = URLSafeTimedSerializer(AUTH_SECRET_KEY, salt=OAUTH_STATE_SALT)


def extract_bearer_token(req) -> Optional[str]:
    header = req.headers.get("Authorization", "").strip()
    if header.lower().startswith("bearer "):
        candidate = header[7:].strip()
        if candidate:
            return candidate
    token = req.args.get("token")
    if token:
        return token.strip()
    return None


def resolve_user(jwt: str) -> Optional[Dict[str, Any]]:
    """
    Valida o JWT do Supabase Auth e devolve {"id", "email"} do usuário.
    """
    client = get_supabase_client()
    if client is None or not jwt:
        return None
    try:
        response = client.auth.get_user(jwt)
    except Exception as err:  # noqa: BLE001
        logger.info("Token rejeitado pelo Supabase Auth: %s", err)
        return None

    user = getattr(response, "user", None)
    if user is None or not getattr(user, "id", None):
        return None
    return {"id": str(user.id), "email": getattr(user, "email", None)}


def get_user_role(user_id: str, client=None) -> Optional[str]:
    client = client or get_supabase_client()
    if client is None or not user_id:
        return None
    response = (
        client.table(USER_ROLES_TABLE)
        .select("role")
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    rows = getattr(response, "data", None) or []
    return rows[0].get("role") if rows else None


def is_manager_role(role: Optional[str]) -> bool:
    return role in ("manager", "admin")


def sign_state(payload: Dict[str, Any]) -> str:
    return _state_serializer.dumps(payload)


def load_state(raw: Optional[str], max_age: int = OAUTH_STATE_TTL_SECONDS) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        data = _state_serializer.loads(raw, max_age=max_age)
    except SignatureExpired:
        logger.warning("OAuth state expirado.")
        return None
    except BadSignature:
        logger.warning("OAuth state com assinatura inválida.")
        return None
    return data if isinstance(data, dict) else None
