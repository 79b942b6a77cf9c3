# /app/services/security_service.py

import hmac
import hashlib
import logging

from app.services.cache_service import cache_service

# This service provides the webhook-facing security checks: provider signature
# verification and per-IP / per-address request throttling backed by Redis.

logger = logging.getLogger(__name__)

class SecurityService:
    @staticmethod
    def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
        if not signature or not signature.startswith('sha256='):
            return False
        expected_signature = hmac.new(secret.encode('utf-8'), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected_signature, signature[7:])


# --- Rate Limiting ---
class AdvancedRateLimiter:
    def __init__(self, redis_client):
        self.redis = redis_client

    async def _hit(self, key: str, limit: int, window: int) -> bool:
        if not self.redis:
            return True
        try:
            current_count = await self.redis.incr(key)
            if current_count == 1:
                await self.redis.expire(key, window)
        except Exception as e:
            # fail open: a signed webhook is always acknowledged
            logger.warning(f"Rate limit check failed for {key}: {e}; allowing request")
            return True
        return current_count <= limit

    async def check_address_rate_limit(self, channel_address: str, limit: int = 20, window: int = 60) -> bool:
        return await self._hit(f"rate_limit:address:{channel_address}", limit, window)

    async def check_ip_rate_limit(self, ip_address: str, limit: int = 50, window: int = 60) -> bool:
        return await self._hit(f"rate_limit:ip:{ip_address}", limit, window)

# Globally accessible instance
rate_limiter = AdvancedRateLimiter(cache_service.redis)
