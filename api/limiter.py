"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in
api/routes/auth.py (to limit the password login with @limiter.limit()).

The per-flow limits (signup, forgot-password, ...) do not use slowapi: they
are keyed by email as well as IP and go through core.ratelimit.RateLimiter,
which can share counters across processes through Redis.

A single shared instance means every route shares the same counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
