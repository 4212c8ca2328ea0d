"""gt CLI integration: client, circuit breaker and output models."""

from gastown.operator.gt.breaker import CircuitBreaker, CircuitState
from gastown.operator.gt.client import GTClient

__all__ = ["CircuitBreaker", "CircuitState", "GTClient"]
