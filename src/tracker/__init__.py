from .registry import ProviderRegistry
from .core import UsageTracker
from .errors import PolicyDenial, ProviderError, RecordNotFound, StorageError, ValidationError
from .notify import BackgroundPublisher, NotificationPort, NullNotifier

__all__ = [
    "ProviderRegistry",
    "UsageTracker",
    "PolicyDenial",
    "ProviderError",
    "RecordNotFound",
    "StorageError",
    "ValidationError",
    "BackgroundPublisher",
    "NotificationPort",
    "NullNotifier",
]
