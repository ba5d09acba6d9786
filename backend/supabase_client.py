import os
import threading
from typing import Optional

from supabase import Client, create_client

from errors import StorageNotConfigured

_instance_lock = threading.Lock()
_client: Optional[Client] = None


def get_supabase_client() -> Optional[Client]:
    """
    Instancia o client Supabase (service role) sob demanda.

    Returns:
        Client ou None quando SUPABASE_URL / chave de serviço não estão definidos.
    """
    global _client

    if _client is not None:
        return _client

    url = os.getenv("SUPABASE_URL")
    key = (
        os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        or os.getenv("SUPABASE_API_KEY")
        or os.getenv("SUPABASE_SECRET")
    )

    if not url or not key:
        return None

    with _instance_lock:
        if _client is None:
            _client = create_client(url, key)
    return _client


def require_supabase_client() -> Client:
    client = get_supabase_client()
    if client is None:
        raise StorageNotConfigured()
    return client
