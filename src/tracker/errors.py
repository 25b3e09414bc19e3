from typing import Any, Dict, List, Optional

from providers.base import ProviderError
from state.usage import StorageError

__all__ = [
    "ValidationError",
    "PolicyDenial",
    "RecordNotFound",
    "ProviderError",
    "StorageError",
]


class ValidationError(Exception):
    """Missing or malformed tracking input, rejected before any side effect."""

    def __init__(self, message: str, fields: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.fields = fields or []


class PolicyDenial(Exception):
    """The request was blocked by one or more safety filters. Nothing is recorded."""

    def __init__(self, reasons: List[Dict[str, str]], flags: Optional[Dict[str, Any]] = None) -> None:
        super().__init__("Request blocked by safety filters")
        self.reasons = reasons
        self.flags = flags or {}


class RecordNotFound(Exception):
    def __init__(self, record_id: str) -> None:
        super().__init__(f"Usage record not found: {record_id}")
        self.record_id = record_id
