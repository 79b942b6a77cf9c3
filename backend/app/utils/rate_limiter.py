# /app/utils/rate_limiter.py

from slowapi import Limiter
from app.utils.request_utils import get_remote_address
from app.config.settings import settings

# Shared slowapi limiter. Lives in its own module so main.py and the webhook
# routes can both import it without a circular import. Counters are kept in
# Redis so the limit holds across workers.

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    storage_uri=settings.redis_url if settings.environment == "production" else "memory://",
)
