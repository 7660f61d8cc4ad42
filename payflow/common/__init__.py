from .async_utils import guarded_call
from .logging import log_event, mask_email, sanitize_text, sanitize_value

__all__ = [
    "guarded_call",
    "log_event",
    "mask_email",
    "sanitize_text",
    "sanitize_value",
]
