import asyncio
import random

from sqlalchemy.exc import DBAPIError, OperationalError, TimeoutError as PoolTimeoutError

from delivery_hub.core.errors import PerCityCommitError


def compute_backoff_seconds(attempt: int, base: float = 1.5, cap: float = 30.0) -> float:
    # exponential backoff with jitter; attempt is 1-based
    exp = min(cap, base * (2 ** max(0, attempt - 1)))
    jitter = random.uniform(0, min(0.5, exp / 3))
    return exp + jitter


def is_transient(exc: BaseException) -> bool:
    """Failures worth another attempt: store timeouts, dropped connections, lock waits."""
    if isinstance(exc, PerCityCommitError):
        return exc.transient
    if isinstance(exc, (OperationalError, PoolTimeoutError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, DBAPIError):
        return bool(exc.connection_invalidated)
    return False
