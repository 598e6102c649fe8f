from slowapi import Limiter
from slowapi.util import get_remote_address

from orderflow.core.config import settings

# Counters are kept in RATE_LIMIT_STORAGE_URI (redis:// in production) so every
# API replica shares the same windows.
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    enabled=settings.RATE_LIMIT_ENABLED,
)
