"""Context sanitization and click/session bookkeeping"""

from tracking_service.collectors.click_session_store import ClickSessionStore, TouchpointLookup
from tracking_service.collectors.context_sanitizer import ContextSanitizer

__all__ = ["ClickSessionStore", "TouchpointLookup", "ContextSanitizer"]
