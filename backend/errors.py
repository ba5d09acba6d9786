from typing import Any, Dict, Optional


class ServiceError(Exception):
    """
    Erro de regra de negócio que deve virar uma resposta HTTP 4xx/5xx.
    """

    def __init__(self, message: str, status: int = 400, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status = status
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.args[0]}
        if self.details:
            payload.update(self.details)
        return payload


class StorageNotConfigured(ServiceError):
    def __init__(self, message: str = "supabase not configured"):
        super().__init__(message, status=503)
