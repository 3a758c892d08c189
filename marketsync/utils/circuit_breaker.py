"""
Circuit breaker por servicio externo.

Cada plataforma tiene su propio circuito, de modo que la caída de una no
frena la sincronización de las otras tres. El estado vive en el cache
compartido (Redis o memoria) con TTL, así que un circuito que nadie toca
se cura solo:

- state / failures / last_failure expiran a la hora
- el contador de llamadas half-open expira a los 5 minutos

Las actualizaciones de contadores se hacen bajo un lock por servicio,
nunca bajo un lock global.
"""

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from marketsync.core.cache_manager import CacheBackend, MemoryCache
from marketsync.core.config import Settings, get_settings
from marketsync.utils.distributed_lock import KeyedLocks
from marketsync.utils.error_handler import CircuitOpenException, HalfOpenExhaustedException

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATE_TTL_SECONDS = 3600
HALF_OPEN_CALLS_TTL_SECONDS = 300


class CircuitState(Enum):
    """Estados del circuit breaker."""

    CLOSED = "closed"  # Funcionamiento normal
    OPEN = "open"  # Circuito abierto, fallar rápido
    HALF_OPEN = "half_open"  # Probando si se recuperó


class CircuitBreaker:
    """
    Implementa el patrón Circuit Breaker para un servicio con nombre.

    Example:
        >>> breaker = CircuitBreaker("platform_shopify", cache)
        >>> data = await breaker.call(session_get, url)
    """

    def __init__(
        self,
        service: str,
        cache: CacheBackend,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 3,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Inicializa el circuit breaker.

        Args:
            service: Nombre del servicio protegido
            cache: Backend donde se guarda el estado
            failure_threshold: Fallas consecutivas para abrir circuito
            recovery_timeout: Segundos desde la última falla antes de probar half-open
            half_open_max_calls: Llamadas de prueba permitidas en half-open
            locks: Registro de locks por clave (compartido entre breakers)
            clock: Fuente de tiempo en segundos epoch
        """
        self.service = service
        self.cache = cache
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self._locks = locks or KeyedLocks()
        self._clock = clock

    # === CLAVES DE CACHE ===

    def _key(self, suffix: str) -> str:
        return f"circuit_breaker:{self.service}:{suffix}"

    @property
    def _state_key(self) -> str:
        return self._key("state")

    @property
    def _failures_key(self) -> str:
        return self._key("failures")

    @property
    def _last_failure_key(self) -> str:
        return self._key("last_failure")

    @property
    def _half_open_calls_key(self) -> str:
        return self._key("half_open_calls")

    # === API PÚBLICA ===

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """
        Ejecuta la función protegida por el circuito.

        Args:
            func: Corrutina a ejecutar
            *args: Argumentos posicionales
            **kwargs: Argumentos con nombre

        Returns:
            Resultado de la función

        Raises:
            CircuitOpenException: Si el circuito está abierto
            HalfOpenExhaustedException: Si se agotaron las pruebas en half-open
            Exception: Cualquier error propio de la función
        """
        async with self._locks(self.service):
            state = await self._resolve_state()

            if state == CircuitState.OPEN:
                last_failure = await self.cache.get(self._last_failure_key)
                retry_after = None
                if last_failure is not None:
                    retry_after = max(0.0, float(last_failure) + self.recovery_timeout - self._clock())
                raise CircuitOpenException(self.service, retry_after=retry_after)

            if state == CircuitState.HALF_OPEN:
                calls = await self.cache.incr(self._half_open_calls_key, HALF_OPEN_CALLS_TTL_SECONDS)
                if calls > self.half_open_max_calls:
                    raise HalfOpenExhaustedException(self.service, self.half_open_max_calls)

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            await self.record_failure(e)
            raise

        await self.record_success()
        return result

    async def record_success(self) -> None:
        """Registra una ejecución exitosa."""
        async with self._locks(self.service):
            state = await self._stored_state()
            if state == CircuitState.HALF_OPEN:
                await self.cache.set(self._state_key, CircuitState.CLOSED.value, STATE_TTL_SECONDS)
                await self.cache.delete(self._failures_key, self._last_failure_key, self._half_open_calls_key)
                logger.info(f"✅ Circuit breaker CLOSED for {self.service} - service recovered")
            elif state == CircuitState.CLOSED:
                # Las fallas cuentan solo si son consecutivas
                await self.cache.delete(self._failures_key)

    async def record_failure(self, error: Optional[BaseException] = None) -> None:
        """Registra una falla."""
        async with self._locks(self.service):
            failures = await self.cache.incr(self._failures_key, STATE_TTL_SECONDS)
            await self.cache.set(self._last_failure_key, self._clock(), STATE_TTL_SECONDS)
            state = await self._stored_state()

            if state == CircuitState.HALF_OPEN:
                await self._open()
                logger.warning(f"Circuit breaker OPEN again for {self.service} - probe failed: {error}")
            elif state == CircuitState.CLOSED and failures >= self.failure_threshold:
                await self._open()
                logger.warning(f"❌ Circuit breaker OPEN for {self.service} - {failures} consecutive failures")
            else:
                logger.debug(f"Circuit breaker {self.service} failure {failures}/{self.failure_threshold}")

    async def get_state(self) -> CircuitState:
        """Estado almacenado actualmente (sin aplicar transiciones)."""
        return await self._stored_state()

    async def get_status(self) -> Dict[str, Any]:
        """
        Obtiene información del estado del circuit breaker.

        Returns:
            Dict: Estado actual
        """
        state = await self._stored_state()
        failures = await self.cache.get(self._failures_key)
        last_failure = await self.cache.get(self._last_failure_key)
        half_open_calls = await self.cache.get(self._half_open_calls_key)

        return {
            "service": self.service,
            "state": state.value,
            "failure_count": int(failures or 0),
            "last_failure": (
                datetime.fromtimestamp(float(last_failure), tz=timezone.utc).isoformat() if last_failure else None
            ),
            "half_open_calls": int(half_open_calls or 0),
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
            "half_open_max_calls": self.half_open_max_calls,
        }

    async def reset(self) -> None:
        """Vuelve el circuito a CLOSED y borra sus contadores."""
        async with self._locks(self.service):
            await self.cache.delete(
                self._state_key, self._failures_key, self._last_failure_key, self._half_open_calls_key
            )
        logger.info(f"🔄 Circuit breaker reset for {self.service}")

    # === ESTADO INTERNO ===

    async def _stored_state(self) -> CircuitState:
        raw = await self.cache.get(self._state_key)
        return CircuitState(raw) if raw else CircuitState.CLOSED

    async def _resolve_state(self) -> CircuitState:
        """Estado efectivo, aplicando OPEN -> HALF_OPEN cuando venció la espera."""
        state = await self._stored_state()
        if state != CircuitState.OPEN:
            return state

        last_failure = await self.cache.get(self._last_failure_key)
        if last_failure is None or self._clock() - float(last_failure) >= self.recovery_timeout:
            await self.cache.set(self._state_key, CircuitState.HALF_OPEN.value, STATE_TTL_SECONDS)
            await self.cache.delete(self._half_open_calls_key)
            logger.info(f"Circuit breaker moving to HALF_OPEN state for {self.service}")
            return CircuitState.HALF_OPEN

        return state

    async def _open(self) -> None:
        await self.cache.set(self._state_key, CircuitState.OPEN.value, STATE_TTL_SECONDS)
        await self.cache.delete(self._half_open_calls_key)


class CircuitBreakerRegistry:
    """
    Registro explícito de circuit breakers, uno por servicio.

    Se pasa por referencia a quien lo necesite; no hay estado global.
    """

    def __init__(
        self,
        cache: Optional[CacheBackend] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.cache = cache or MemoryCache()
        self._clock = clock
        self._locks = KeyedLocks()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, service: str) -> CircuitBreaker:
        """Obtiene (o crea) el breaker de un servicio."""
        breaker = self._breakers.get(service)
        if breaker is None:
            breaker = CircuitBreaker(
                service=service,
                cache=self.cache,
                failure_threshold=self.settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
                recovery_timeout=self.settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
                half_open_max_calls=self.settings.CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS,
                locks=self._locks,
                clock=self._clock,
            )
            self._breakers[service] = breaker
        return breaker

    async def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: await breaker.get_status() for name, breaker in self._breakers.items()}

    async def reset_all(self) -> None:
        for breaker in self._breakers.values():
            await breaker.reset()
