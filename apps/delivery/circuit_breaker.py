# apps/delivery/circuit_breaker.py
import time
from enum import Enum
from django.core.cache import cache
from django.conf import settings
import logging

from .exceptions import CircuitOpenError, ProviderTransportError

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

class ProviderCircuitBreaker:
    """Stops hammering a failing provider; state is shared between workers through the cache."""

    def __init__(self, failure_threshold=None, recovery_timeout=None):
        self.failure_threshold = failure_threshold or settings.MARKETING_CIRCUIT_FAILURE_THRESHOLD
        self.recovery_timeout = recovery_timeout or settings.MARKETING_CIRCUIT_RECOVERY_SECONDS

    def _get_cache_key(self, key):
        return f"circuit_breaker:delivery:{key}"

    def _get_state(self, key):
        return cache.get(self._get_cache_key(key), {
            'state': CircuitState.CLOSED.value,
            'failure_count': 0,
            'last_failure_time': None
        })

    def _set_state(self, key, state_data):
        cache.set(self._get_cache_key(key), state_data, 300)

    def _should_attempt_reset(self, state_data):
        if state_data['state'] != CircuitState.OPEN.value:
            return False
        return time.time() - state_data['last_failure_time'] >= self.recovery_timeout

    def call(self, key, func, *args, **kwargs):
        state_data = self._get_state(key)

        # Circuit OPEN - fail fast
        if state_data['state'] == CircuitState.OPEN.value:
            if not self._should_attempt_reset(state_data):
                raise CircuitOpenError(f"Delivery circuit open for {key}")
            state_data['state'] = CircuitState.HALF_OPEN.value
            self._set_state(key, state_data)

        try:
            result = func(*args, **kwargs)
        except ProviderTransportError as e:
            if e.retryable:
                self._record_failure(key, state_data)
            raise

        if state_data['state'] != CircuitState.CLOSED.value or state_data['failure_count']:
            self._reset_circuit(key)
            logger.info(f"Delivery circuit CLOSED for {key}")
        return result

    def _record_failure(self, key, state_data):
        state_data['failure_count'] += 1
        state_data['last_failure_time'] = time.time()

        if state_data['failure_count'] >= self.failure_threshold:
            state_data['state'] = CircuitState.OPEN.value
            logger.error(f"Delivery circuit OPENED for {key}")

        self._set_state(key, state_data)

    def _reset_circuit(self, key):
        self._set_state(key, {
            'state': CircuitState.CLOSED.value,
            'failure_count': 0,
            'last_failure_time': None
        })
