# backend/evolution.py
import logging
import os
import re
from typing import Any, Dict, Optional

import requests
from dotenv import load_dotenv

load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), ".env"), override=False)

logger = logging.getLogger(__name__)

API_URL = (os.getenv("EVOLUTION_API_URL") or "").rstrip("/")
API_KEY = os.getenv("EVOLUTION_API_KEY")

DEFAULT_SEND_OPTIONS = {"delay": 1200, "presence": "composing", "linkPreview": True}


class EvolutionAPIError(Exception):
    def __init__(self, status: int, message: str, code: Optional[str] = None, error_type: Optional[str] = None,
                 raw: Optional[Any] = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.error_type = error_type
        self.raw = raw if raw is not None else {}


def _require_config() -> None:
    if not API_URL or not API_KEY:
        raise EvolutionAPIError(status=500, message="Evolution API not configured")


def _headers() -> Dict[str, str]:
    return {"apikey": API_KEY or "", "Content-Type": "application/json"}


def _raise_for(r: requests.Response, label: str) -> None:
    if r.ok:
        return
    raise EvolutionAPIError(
        status=r.status_code,
        message=f"Evolution API {label} error: {r.status_code} - {r.text}",
        raw={"raw": r.text},
    )


def build_instance_name(user_id: str, client_id: Optional[str] = None) -> str:
    if client_id:
        return f"adscape_c_{client_id.replace('-', '')[:16]}"
    return f"adscape_{user_id.replace('-', '')[:16]}"


def normalize_phone(phone: Optional[str]) -> str:
    return re.sub(r"\D", "", phone or "")


def connection_state(instance: str) -> Optional[str]:
    """Estado da instância ("open", "connecting", "close") ou None se ela não existir."""
    _require_config()
    r = requests.get(f"{API_URL}/instance/connectionState/{instance}", headers=_headers(), timeout=15)
    if not r.ok:
        return None
    try:
        data = r.json()
    except ValueError:
        return None
    return ((data or {}).get("instance") or {}).get("state")


def create_instance(instance: str) -> Dict[str, Any]:
    _require_config()
    r = requests.post(
        f"{API_URL}/instance/create",
        json={"instanceName": instance, "integration": "WHATSAPP-BAILEYS", "qrcode": True},
        headers=_headers(),
        timeout=15,
    )
    _raise_for(r, "create")
    return r.json()


def delete_instance(instance: str) -> None:
    if not API_URL or not API_KEY:
        return
    try:
        requests.delete(f"{API_URL}/instance/delete/{instance}", headers=_headers(), timeout=15)
    except requests.RequestException as err:
        logger.info("Instância %s não removida: %s", instance, err)


def connect(instance: str) -> Optional[str]:
    _require_config()
    r = requests.get(f"{API_URL}/instance/connect/{instance}", headers=_headers(), timeout=15)
    _raise_for(r, "connect")
    return (r.json() or {}).get("base64")


def send_text(instance: str, number: str, text: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    _require_config()
    payload: Dict[str, Any] = {"number": normalize_phone(number), "text": text}
    if options:
        payload["options"] = options
    r = requests.post(f"{API_URL}/message/sendText/{instance}", json=payload, headers=_headers(), timeout=15)
    _raise_for(r, "send")
    try:
        return r.json()
    except ValueError:
        return {}
