# /app/utils/circuit_breaker.py

import asyncio
import time
import logging
from enum import Enum
from typing import Any, Callable, Optional

from app.utils.metrics import circuit_state_gauge

# Breakers wrap calls to the Graph API, the completion providers, Redis and
# MongoDB. After `failure_threshold` consecutive failures calls are refused
# for `timeout` seconds, then a half-open probe period decides whether the
# circuit closes again. The current state is exported as a gauge.

logger = logging.getLogger(__name__)


class CircuitOpenError(Exception):
    """Raised instead of calling a dependency whose circuit is open."""

    def __init__(self, name: str):
        super().__init__(f"Circuit breaker is OPEN for {name}")
        self.name = name


class CircuitState(Enum):
    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


_GAUGE_VALUES = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


def _publish(name: str, state: CircuitState) -> None:
    circuit_state_gauge.labels(name=name).set(_GAUGE_VALUES[state])


class CircuitBreaker:
    """In-process breaker, one per dependency per worker."""

    def __init__(self, name: str = "default", failure_threshold: int = 5, timeout: int = 60, success_threshold: int = 3):
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failures = 0
        self.probe_successes = 0
        self.opened_at: Optional[float] = None
        self.state = CircuitState.CLOSED
        self._lock = asyncio.Lock()
        _publish(name, self.state)

    def _transition(self, state: CircuitState) -> None:
        if state == self.state:
            return
        logger.warning(f"Circuit '{self.name}': {self.state.value} -> {state.value} (failures={self.failures})")
        self.state = state
        if state == CircuitState.OPEN:
            self.opened_at = time.monotonic()
        elif state == CircuitState.CLOSED:
            self.failures = 0
        self.probe_successes = 0
        _publish(self.name, state)

    async def _admit(self) -> None:
        async with self._lock:
            if self.state != CircuitState.OPEN:
                return
            if self.opened_at is not None and time.monotonic() - self.opened_at >= self.timeout:
                self._transition(CircuitState.HALF_OPEN)
                return
            raise CircuitOpenError(self.name)

    async def call(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            async with self._lock:
                self.failures += 1
                if self.state == CircuitState.HALF_OPEN or self.failures >= self.failure_threshold:
                    self._transition(CircuitState.OPEN)
            raise

        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.probe_successes += 1
                if self.probe_successes >= self.success_threshold:
                    self._transition(CircuitState.CLOSED)
            else:
                self.failures = 0
        return result


class RedisCircuitBreaker:
    """
    Breaker whose state lives in Redis so every worker sees the same circuit.

    The state, failure count and opening time share one hash per service.
    When Redis itself is unreachable the circuit is treated as closed: losing
    the cache must not stop outbound messages.
    """

    def __init__(self, redis_client: Any, service_name: str, failure_threshold: int = 5, timeout: int = 60, success_threshold: int = 3):
        self.redis = redis_client
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.key = f"circuit:{service_name}"

    async def _read(self) -> dict:
        raw = await self.redis.hgetall(self.key)
        return {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in (raw or {}).items()
        }

    async def _set_state(self, state: CircuitState, **fields: Any) -> None:
        mapping = {"state": state.value, **{k: str(v) for k, v in fields.items()}}
        await self.redis.hset(self.key, mapping=mapping)
        await self.redis.expire(self.key, self.timeout * 2)
        _publish(self.service_name, state)

    async def is_open(self) -> bool:
        if not self.redis:
            return False
        try:
            circuit = await self._read()
            if circuit.get("state") != CircuitState.OPEN.value:
                return False
            if time.time() - float(circuit.get("opened_at", 0)) >= self.timeout:
                await self._set_state(CircuitState.HALF_OPEN, successes=0)
                logger.info(f"Circuit '{self.service_name}' is HALF_OPEN; probing")
                return False
            return True
        except Exception as e:
            logger.warning(f"Could not read circuit state for {self.service_name}, assuming closed: {e}")
            return False

    async def call(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        if await self.is_open():
            raise CircuitOpenError(self.service_name)
        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self._record(success=False)
            raise
        await self._record(success=True)
        return result

    async def _record(self, success: bool) -> None:
        if not self.redis:
            return
        try:
            circuit = await self._read()
            half_open = circuit.get("state") == CircuitState.HALF_OPEN.value
            if success:
                if not half_open:
                    await self.redis.hdel(self.key, "failures")
                    return
                successes = await self.redis.hincrby(self.key, "successes", 1)
                if successes >= self.success_threshold:
                    await self.redis.delete(self.key)
                    _publish(self.service_name, CircuitState.CLOSED)
                    logger.info(f"Circuit '{self.service_name}' is CLOSED again")
                return

            failures = await self.redis.hincrby(self.key, "failures", 1)
            await self.redis.expire(self.key, self.timeout * 2)
            if half_open or failures >= self.failure_threshold:
                await self._set_state(CircuitState.OPEN, opened_at=time.time())
                logger.error(f"Circuit '{self.service_name}' OPENED after {failures} failures")
        except Exception as e:
            logger.warning(f"Circuit bookkeeping failed for {self.service_name}: {e}")
