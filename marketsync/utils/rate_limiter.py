"""
Rate limiting de ventana deslizante por plataforma.

Cada plataforma tiene un presupuesto de requests por minuto. Si el
presupuesto está agotado, el request falla antes de enviarse (no hay
cola ni backpressure); el siguiente ciclo de sincronización reintenta.
"""

import logging
import time
from collections import deque
from typing import Callable, Deque, Dict

from marketsync.utils.distributed_lock import KeyedLocks
from marketsync.utils.error_handler import RateLimitException

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Ventana deslizante en memoria, con un lock por clave.

    Args:
        window_seconds: Tamaño de la ventana (60 segundos por defecto)
        clock: Fuente de tiempo monotónica, inyectable en tests
    """

    def __init__(self, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = {}
        self._locks = KeyedLocks()

    def _prune(self, key: str, now: float) -> Deque[float]:
        timestamps = self._requests.setdefault(key, deque())
        cutoff = now - self.window_seconds
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()
        return timestamps

    async def acquire(self, key: str, limit: int) -> None:
        """
        Reserva un slot para un request.

        Args:
            key: Plataforma o servicio
            limit: Requests permitidos por ventana

        Raises:
            RateLimitException: Si la ventana ya está llena
        """
        async with self._locks(key):
            now = self._clock()
            timestamps = self._prune(key, now)

            if len(timestamps) >= limit:
                retry_after = max(1, int(timestamps[0] + self.window_seconds - now) + 1)
                logger.warning(f"Rate limit exceeded for {key}: {len(timestamps)}/{limit} requests in window")
                raise RateLimitException(
                    message=f"Rate limit exceeded for {key}",
                    limit=limit,
                    reset_time=int(time.time()) + retry_after,
                    retry_after=retry_after,
                    details={"service": key},
                )

            timestamps.append(now)

    def remaining(self, key: str, limit: int) -> int:
        """Requests disponibles en la ventana actual."""
        return max(0, limit - len(self._prune(key, self._clock())))

    def reset(self, key: str) -> None:
        self._requests.pop(key, None)
