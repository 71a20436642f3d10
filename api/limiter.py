"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the route modules
(to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

The limit strings come from Settings. Decorators run at import time, before
any Settings object exists, so they reference the `limits` holder through
zero-argument callables; slowapi evaluates those on every request. The app
factory calls configure_limits(settings) once at startup.
"""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import Settings


class RateLimits:
    default: str = "100 per 15 minutes"
    auth: str = "5 per 15 minutes"
    upload: str = "10 per hour"


limits = RateLimits()


def configure_limits(settings: Settings) -> None:
    limits.default = settings.default_rate_limit
    limits.auth = settings.auth_rate_limit
    limits.upload = settings.upload_rate_limit


def default_limit() -> str:
    return limits.default


def auth_limit() -> str:
    return limits.auth


def upload_limit() -> str:
    return limits.upload


limiter = Limiter(key_func=get_remote_address, default_limits=[default_limit], storage_uri="memory://")
