"""Rate limiting configuration using slowapi."""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Per-client limits on auth endpoints; SMS uses its own per-phone limiter
limiter = Limiter(key_func=get_remote_address)
