"""
Per-client-IP request rate limiting (slowapi).

Lockout counters in the database are the real brute-force control; this
limiter only blunts request floods at the edge of each endpoint.
"""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

from ledgerguard.core.config import settings

limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)
