import logging
import secrets
import time
from typing import Callable

from order_engine.errors import IdentifierExhausted

logger = logging.getLogger(__name__)


def _candidate_order_number() -> str:
    timestamp = str(int(time.time() * 1000))[-8:]
    return f"ORD-{timestamp}{secrets.randbelow(1000):03d}"


class OrderNumberGenerator:
    """Human-readable order numbers of the form ``ORD-<8 ms digits><3 random>``.

    ``exists`` is asked about each candidate; a taken number is retried up to
    ``max_attempts`` times before giving up with ``IdentifierExhausted``.
    """

    def __init__(self, exists: Callable[[str], bool], max_attempts: int = 10,
                 candidate: Callable[[], str] = _candidate_order_number):
        self._exists = exists
        self._max_attempts = max_attempts
        self._candidate = candidate

    def generate(self) -> str:
        for attempt in range(1, self._max_attempts + 1):
            number = self._candidate()
            if not self._exists(number):
                return number
            logger.info("Order number collision on %s (attempt %d)", number, attempt)
        raise IdentifierExhausted(
            f"Could not allocate a unique order number after {self._max_attempts} attempts"
        )


def payment_reference_candidate(order_number: str) -> str:
    return f"{order_number}-{time.time_ns() // 1000}"


def generate_payment_reference(order_number: str, exists: Callable[[str], bool], max_attempts: int = 10) -> str:
    generator = OrderNumberGenerator(
        exists,
        max_attempts=max_attempts,
        candidate=lambda: payment_reference_candidate(order_number),
    )
    return generator.generate()
