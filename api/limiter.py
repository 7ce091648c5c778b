"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and api/routes/auth.py
(to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same counter
store. If this were instantiated in each module separately, each module would
get its own isolated counter and rate limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_cfg = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=_cfg.rate_limit_storage_uri,
    enabled=_cfg.rate_limit_enabled,
)
