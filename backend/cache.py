"""
Cache dos payloads de fetch-ads-data na tabela ads_cache.

Cada entrada é identificada por (recurso, gestor, opções). Entradas vencidas continuam
sendo servidas como "stale" enquanto uma thread busca os dados novamente; o scheduler
também renova periodicamente as entradas com next_refresh_at vencido.
"""
import copy
import hashlib
import json
import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from periods import parse_datetime
from postgres_client import get_table_client

logger = logging.getLogger(__name__)

Fetcher = Callable[[str, Optional[Dict[str, Any]]], Any]

CACHE_TABLE = os.getenv("ADS_CACHE_TABLE", "ads_cache")
DEFAULT_TTL_HOURS = int(os.getenv("ADS_CACHE_TTL_HOURS", "6"))
ERROR_MAX_LENGTH = 500
# atraso até a próxima tentativa de uma entrada cuja renovação falhou
FAILURE_RETRY_MINUTES = int(os.getenv("ADS_CACHE_FAILURE_RETRY_MINUTES", "30"))

FETCHERS: Dict[str, Fetcher] = {}

_refresh_lock = threading.Lock()
_refreshing_keys: set = set()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def register_fetcher(resource: str, fetcher: Fetcher) -> None:
    FETCHERS[resource] = fetcher


def get_fetcher(resource: str) -> Fetcher:
    fetcher = FETCHERS.get(resource)
    if not fetcher:
        raise KeyError(f"Nenhum fetcher registrado para o recurso '{resource}'")
    return fetcher


def _normalize_extra(extra: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not extra:
        return None
    return json.loads(json.dumps(extra, sort_keys=True, default=str))


def compute_cache_key(resource: str, owner_id: str, extra: Optional[Dict[str, Any]]) -> str:
    options = json.dumps(extra, sort_keys=True, separators=(",", ":"), default=str) if extra else ""
    digest = hashlib.sha256(f"{resource}|{owner_id}|{options}".encode("utf-8")).hexdigest()[:16]
    return f"{resource}|{owner_id or 'na'}|{digest}"


def _load(client, cache_key: str) -> Optional[Dict[str, Any]]:
    try:
        rows = client.table(CACHE_TABLE).select("*").eq("cache_key", cache_key).limit(1).execute().data or []
    except Exception as err:  # noqa: BLE001
        logger.error("Falha ao consultar ads_cache: %s", err)
        return None
    return rows[0] if rows else None


def _mark_failed(client, cache_key: str, error_message: str) -> None:
    now = _utcnow()
    try:
        (
            client.table(CACHE_TABLE)
            .update(
                {
                    "last_refresh_status": "failed",
                    "last_refresh_error": error_message[:ERROR_MAX_LENGTH],
                    "next_refresh_at": (now + timedelta(minutes=FAILURE_RETRY_MINUTES)).isoformat(),
                    "updated_at": now.isoformat(),
                }
            )
            .eq("cache_key", cache_key)
            .execute()
        )
    except Exception as err:  # noqa: BLE001
        logger.error("Falha ao registrar erro no ads_cache: %s", err)


def _is_stale(entry: Dict[str, Any], now: datetime) -> bool:
    fetched_at = parse_datetime(entry.get("fetched_at"))
    if fetched_at is None:
        return False
    ttl_hours = int(entry.get("ttl_hours") or DEFAULT_TTL_HOURS)
    return fetched_at + timedelta(hours=ttl_hours) <= now


def _metadata(entry: Dict[str, Any], source: str, stale: bool = False) -> Dict[str, Any]:
    return {
        "cache_key": entry.get("cache_key"),
        "fetched_at": entry.get("fetched_at"),
        "next_refresh_at": entry.get("next_refresh_at"),
        "stale": stale,
        "source": source,
        "reason": entry.get("last_refresh_reason"),
        "ttl_hours": entry.get("ttl_hours") or DEFAULT_TTL_HOURS,
        "last_refresh_status": entry.get("last_refresh_status"),
        "last_refresh_error": entry.get("last_refresh_error"),
    }


def _fetch_and_store(
    client,
    cache_key: str,
    resource: str,
    owner_id: str,
    extra: Optional[Dict[str, Any]],
    fetcher: Fetcher,
    reason: Optional[str],
    previous: Optional[Dict[str, Any]],
) -> Tuple[Any, Dict[str, Any]]:
    payload = fetcher(owner_id, extra)
    now = _utcnow()
    entry = {
        "cache_key": cache_key,
        "resource": resource,
        "owner_id": owner_id,
        "extra": extra,
        "payload": payload,
        "fetched_at": now.isoformat(),
        "next_refresh_at": (now + timedelta(hours=DEFAULT_TTL_HOURS)).isoformat(),
        "ttl_hours": DEFAULT_TTL_HOURS,
        "last_refresh_reason": reason or ("prime" if previous is None else "refresh"),
        "last_refresh_status": "succeeded",
        "last_refresh_error": None,
        "updated_at": now.isoformat(),
    }
    client.table(CACHE_TABLE).upsert(entry, on_conflict="cache_key").execute()
    return payload, _metadata(entry, "prime" if previous is None else "refresh")


def _schedule_background_refresh(
    client,
    cache_key: str,
    resource: str,
    owner_id: str,
    extra: Optional[Dict[str, Any]],
    fetcher: Fetcher,
) -> bool:
    with _refresh_lock:
        if cache_key in _refreshing_keys:
            return False
        _refreshing_keys.add(cache_key)

    def run() -> None:
        try:
            _fetch_and_store(
                client, cache_key, resource, owner_id, extra, fetcher, "auto-stale", _load(client, cache_key)
            )
            logger.info("ads_cache %s atualizado em segundo plano.", cache_key)
        except Exception as err:  # noqa: BLE001
            logger.exception("Falha ao atualizar ads_cache %s em segundo plano: %s", cache_key, err)
            _mark_failed(client, cache_key, str(err))
        finally:
            with _refresh_lock:
                _refreshing_keys.discard(cache_key)

    threading.Thread(target=run, daemon=True).start()
    return True


def get_cached_payload(
    resource: str,
    owner_id: str,
    extra: Optional[Dict[str, Any]] = None,
    fetcher: Optional[Fetcher] = None,
    *,
    force: bool = False,
    refresh_reason: Optional[str] = None,
) -> Tuple[Any, Dict[str, Any]]:
    """
    Devolve (payload, meta). meta["source"] indica a origem:
    live (sem banco), prime (primeira busca), cache, stale (vencido, renovando) ou refresh (forçado).
    """
    fetcher = fetcher or FETCHERS.get(resource)
    if not fetcher:
        raise RuntimeError(f"Nenhum fetcher definido para '{resource}'")
    extra = _normalize_extra(extra)

    client = get_table_client()
    if client is None:
        payload = fetcher(owner_id, extra)
        meta = _metadata({"fetched_at": _utcnow().isoformat(), "last_refresh_status": "bypassed"}, "live")
        meta["reason"] = refresh_reason or "direct"
        return payload, meta

    cache_key = compute_cache_key(resource, owner_id, extra)
    stored = _load(client, cache_key)

    if stored and not force:
        stale = _is_stale(stored, _utcnow())
        if stale:
            _schedule_background_refresh(client, cache_key, resource, owner_id, extra, fetcher)
        return copy.deepcopy(stored.get("payload")), _metadata(stored, "stale" if stale else "cache", stale)

    try:
        payload, meta = _fetch_and_store(client, cache_key, resource, owner_id, extra, fetcher, refresh_reason, stored)
    except Exception as err:
        if stored:
            _mark_failed(client, cache_key, str(err))
        raise
    return copy.deepcopy(payload), meta


def due_entries(limit: int = 10) -> List[Dict[str, Any]]:
    client = get_table_client()
    if client is None:
        return []
    try:
        return (
            client.table(CACHE_TABLE)
            .select("cache_key,resource,owner_id,extra,next_refresh_at")
            .lte("next_refresh_at", _utcnow().isoformat())
            .order("next_refresh_at", desc=False)
            .limit(limit)
            .execute()
            .data
            or []
        )
    except Exception as err:  # noqa: BLE001
        logger.error("Falha ao listar entradas vencidas do ads_cache: %s", err)
        return []


def refresh_due_entries(limit: int = 10) -> Dict[str, int]:
    """Renova as entradas vencidas; usado pelo scheduler."""
    refreshed = failed = 0
    client = get_table_client()
    for entry in due_entries(limit):
        resource = entry.get("resource")
        owner_id = entry.get("owner_id")
        try:
            get_cached_payload(
                resource,
                owner_id,
                entry.get("extra"),
                get_fetcher(resource),
                force=True,
                refresh_reason="scheduled",
            )
            refreshed += 1
        except Exception as err:  # noqa: BLE001
            failed += 1
            logger.error("Falha ao renovar ads_cache %s/%s: %s", resource, owner_id, err)
            _mark_failed(client, entry["cache_key"], str(err))
    return {"refreshed": refreshed, "failed": failed}
