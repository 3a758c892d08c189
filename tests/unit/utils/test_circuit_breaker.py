"""Tests unitarios para el circuit breaker por plataforma."""

from unittest.mock import AsyncMock

import pytest

from marketsync.core.cache_manager import MemoryCache
from marketsync.utils.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from marketsync.utils.error_handler import CircuitOpenException, HalfOpenExhaustedException


def make_breaker(clock, **kwargs):
    params = {"failure_threshold": 3, "recovery_timeout": 60, "half_open_max_calls": 2}
    params.update(kwargs)
    return CircuitBreaker("platform_shopify", MemoryCache(), clock=clock, **params)


async def fail_times(breaker, times):
    failing = AsyncMock(side_effect=RuntimeError("boom"))
    for _ in range(times):
        with pytest.raises(RuntimeError):
            await breaker.call(failing)


class TestCircuitBreakerTransitions:
    """Tests para las transiciones closed -> open -> half_open."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold_consecutive_failures(self, clock):
        """Debe abrirse tras failure_threshold fallas consecutivas."""
        breaker = make_breaker(clock)

        await fail_times(breaker, 3)

        assert await breaker.get_state() == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self, clock):
        """Con el circuito abierto no debe ejecutar la función."""
        breaker = make_breaker(clock)
        await fail_times(breaker, 3)
        func = AsyncMock(return_value="ok")

        with pytest.raises(CircuitOpenException) as exc_info:
            await breaker.call(func)

        func.assert_not_called()
        assert exc_info.value.retry_after == pytest.approx(60)

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, clock):
        """Una llamada exitosa debe reiniciar el conteo de fallas consecutivas."""
        breaker = make_breaker(clock)

        await fail_times(breaker, 2)
        await breaker.call(AsyncMock(return_value="ok"))
        await fail_times(breaker, 2)

        assert await breaker.get_state() == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_moves_to_half_open_after_recovery_timeout(self, clock):
        """Tras recovery_timeout la siguiente llamada debe probar en half_open."""
        breaker = make_breaker(clock)
        await fail_times(breaker, 3)
        clock.advance(61)

        trial_call = AsyncMock(side_effect=RuntimeError("still down"))
        with pytest.raises(RuntimeError):
            await breaker.call(trial_call)

        trial_call.assert_called_once()
        assert await breaker.get_state() == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_success_in_half_open_closes_and_clears_failures(self, clock):
        """Un éxito en half_open debe cerrar el circuito y poner fallas en cero."""
        breaker = make_breaker(clock)
        await fail_times(breaker, 3)
        clock.advance(60)

        result = await breaker.call(AsyncMock(return_value="ok"))

        status = await breaker.get_status()
        assert result == "ok"
        assert status["state"] == "closed"
        assert status["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_half_open_limits_trial_calls(self, clock):
        """Debe rechazar llamadas de prueba por encima de half_open_max_calls."""
        breaker = make_breaker(clock, half_open_max_calls=1)
        await fail_times(breaker, 3)
        clock.advance(61)

        # Llega a half_open y deja la prueba en curso sin registrar resultado
        assert await breaker._resolve_state() == CircuitState.HALF_OPEN
        await breaker.cache.incr(breaker._half_open_calls_key)

        with pytest.raises(HalfOpenExhaustedException):
            await breaker.call(AsyncMock(return_value="ok"))

    @pytest.mark.asyncio
    async def test_reset_closes_circuit(self, clock):
        """reset() debe volver el circuito a closed."""
        breaker = make_breaker(clock)
        await fail_times(breaker, 3)

        await breaker.reset()

        assert await breaker.get_state() == CircuitState.CLOSED


class TestCircuitBreakerRegistry:
    """Tests para el registro de breakers."""

    @pytest.mark.asyncio
    async def test_breakers_are_isolated_per_service(self, settings, clock):
        """La caída de una plataforma no debe abrir el circuito de otra."""
        registry = CircuitBreakerRegistry(cache=MemoryCache(), settings=settings, clock=clock)
        shopee = registry.get("platform_shopee")

        await fail_times(shopee, settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD)

        assert await shopee.get_state() == CircuitState.OPEN
        assert await registry.get("platform_lazada").get_state() == CircuitState.CLOSED
        assert registry.get("platform_shopee") is shopee

    @pytest.mark.asyncio
    async def test_get_all_status_and_reset_all(self, settings, clock):
        """Debe reportar y reiniciar todos los breakers creados."""
        registry = CircuitBreakerRegistry(cache=MemoryCache(), settings=settings, clock=clock)
        await fail_times(registry.get("platform_tiktok"), settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD)

        status = await registry.get_all_status()
        assert status["platform_tiktok"]["state"] == "open"

        await registry.reset_all()
        assert (await registry.get_all_status())["platform_tiktok"]["state"] == "closed"
