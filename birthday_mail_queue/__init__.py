"""Rate-limited, retrying email delivery queue for birthday greetings."""

from .core import EmailQueueProcessor, ProcessorState
from .models import ContactSnapshot, MessageStatus, QueueConfig, QueuedMessage
from .persistence import QueueStore
from .rate_limit import RateLimiter

__all__ = [
    "ContactSnapshot",
    "EmailQueueProcessor",
    "MessageStatus",
    "ProcessorState",
    "QueueConfig",
    "QueueStore",
    "QueuedMessage",
    "RateLimiter",
]

__version__ = "0.1.0"
