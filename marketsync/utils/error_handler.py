"""
Sistema de manejo de errores personalizado.

Este módulo define todas las excepciones personalizadas de la aplicación
y proporciona utilidades para manejo consistente de errores.

Política de propagación:
- Los errores por elemento (un pedido, un conflicto) se aíslan y se
  reportan en contadores agregados.
- Los errores por plataforma se aíslan en la frontera de la plataforma.
- Ningún error de este núcleo es fatal para el proceso.
"""

import logging
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class ErrorCode(Enum):
    """
    Códigos de error estandardizados para la aplicación.
    """

    # Errores generales
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Errores de plataformas
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    PLATFORM_API_ERROR = "PLATFORM_API_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    HALF_OPEN_EXHAUSTED = "HALF_OPEN_EXHAUSTED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SSRF_REJECTED = "SSRF_REJECTED"

    # Errores de datos
    NORMALIZATION_FAILED = "NORMALIZATION_FAILED"

    # Errores de sincronización
    SYNC_FAILED = "SYNC_FAILED"


class ErrorSeverity(Enum):
    """
    Niveles de severidad para errores.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AppException(Exception):
    """
    Excepción base para todas las excepciones personalizadas de la aplicación.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        is_retryable: bool = False,
        is_critical: bool = False,
    ):
        """
        Inicializa la excepción.

        Args:
            message: Mensaje de error
            error_code: Código de error estandardizado
            details: Información adicional del error
            status_code: Código HTTP asociado
            severity: Severidad del error
            is_retryable: Si la operación puede reintentarse
            is_critical: Si requiere alerta inmediata
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.status_code = status_code
        self.severity = severity
        self.is_retryable = is_retryable
        self.is_critical = is_critical
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convierte la excepción a diccionario.

        Returns:
            Dict: Representación de la excepción
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code.value,
            "details": self.details,
            "status_code": self.status_code,
            "severity": self.severity.value,
            "is_retryable": self.is_retryable,
            "is_critical": self.is_critical,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        """String representation del error."""
        return f"{self.error_code.value}: {self.message}"


class ValidationException(AppException):
    """
    Excepción para credenciales o configuración inválidas.

    Se rechaza antes de usarse y nunca se reintenta.
    """

    def __init__(
        self,
        message: str,
        field: str,
        invalid_value: Any = None,
        expected_format: Optional[str] = None,
        **kwargs,
    ):
        """
        Inicializa la excepción de validación.

        Args:
            message: Mensaje de error
            field: Campo que falló la validación
            invalid_value: Valor que causó el error (nunca un secreto)
            expected_format: Formato esperado
            **kwargs: Argumentos adicionales para AppException
        """
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=422,
            severity=ErrorSeverity.LOW,
            **kwargs,
        )
        self.field = field
        self.invalid_value = invalid_value
        self.expected_format = expected_format

        self.details.update(
            {
                "field": field,
                "invalid_value": str(invalid_value) if invalid_value is not None else None,
                "expected_format": expected_format,
            }
        )


class AuthenticationException(AppException):
    """
    Excepción cuando un conector no logra autenticarse con su plataforma.
    """

    def __init__(self, message: str, platform: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTHENTICATION_FAILED,
            status_code=401,
            severity=ErrorSeverity.HIGH,
            **kwargs,
        )
        self.platform = platform
        self.details.update({"platform": platform})


class NormalizationException(AppException):
    """
    Excepción para un pedido crudo que no puede normalizarse.

    Es un error suave: el llamador la registra y excluye el pedido del lote.
    """

    def __init__(
        self,
        message: str,
        platform: str,
        field: Optional[str] = None,
        order_id: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.NORMALIZATION_FAILED,
            status_code=422,
            severity=ErrorSeverity.LOW,
            **kwargs,
        )
        self.platform = platform
        self.field = field
        self.order_id = order_id
        self.details.update({"platform": platform, "field": field, "order_id": order_id})


class PlatformAPIException(AppException):
    """
    Excepción para errores devueltos por la API de una plataforma.
    """

    def __init__(
        self,
        message: str,
        platform: str,
        api_response_code: Optional[int] = None,
        endpoint: Optional[str] = None,
        platform_error: Optional[str] = None,
        **kwargs,
    ):
        """
        Inicializa la excepción de API de plataforma.

        Args:
            message: Mensaje de error
            platform: Plataforma que respondió
            api_response_code: Código HTTP de la respuesta
            endpoint: Endpoint que falló
            platform_error: Código de error propio de la plataforma
            **kwargs: Argumentos adicionales para AppException
        """
        severity = ErrorSeverity.MEDIUM
        if api_response_code and api_response_code >= 500:
            severity = ErrorSeverity.HIGH

        super().__init__(
            message=message,
            error_code=ErrorCode.PLATFORM_API_ERROR,
            status_code=api_response_code or 503,
            severity=severity,
            is_retryable=True,
            **kwargs,
        )
        self.platform = platform
        self.api_response_code = api_response_code
        self.endpoint = endpoint
        self.platform_error = platform_error

        self.details.update(
            {
                "platform": platform,
                "api_response_code": api_response_code,
                "endpoint": endpoint,
                "platform_error": platform_error,
            }
        )


class CircuitOpenException(AppException):
    """
    Excepción cuando el circuit breaker rechaza la llamada por estar abierto.
    """

    def __init__(self, service: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(
            message=f"Circuit breaker is open for service: {service}",
            error_code=ErrorCode.CIRCUIT_OPEN,
            status_code=503,
            severity=ErrorSeverity.MEDIUM,
            is_retryable=True,
            **kwargs,
        )
        self.service = service
        self.retry_after = retry_after
        self.details.update({"service": service, "retry_after": retry_after})


class HalfOpenExhaustedException(AppException):
    """
    Excepción cuando se agotan las llamadas de prueba en estado half-open.
    """

    def __init__(self, service: str, max_calls: int, **kwargs):
        super().__init__(
            message=f"Circuit breaker half-open max calls exceeded for service: {service}",
            error_code=ErrorCode.HALF_OPEN_EXHAUSTED,
            status_code=503,
            severity=ErrorSeverity.MEDIUM,
            is_retryable=True,
            **kwargs,
        )
        self.service = service
        self.max_calls = max_calls
        self.details.update({"service": service, "max_calls": max_calls})


class RateLimitException(AppException):
    """
    Excepción para errores de rate limiting.
    """

    def __init__(self, message: str, limit: int, reset_time: int, retry_after: int, **kwargs):
        """
        Inicializa la excepción de rate limiting.

        Args:
            message: Mensaje de error
            limit: Límite de requests
            reset_time: Timestamp de reset
            retry_after: Segundos para reintentar
            **kwargs: Argumentos adicionales para AppException
        """
        super().__init__(
            message=message,
            error_code=ErrorCode.RATE_LIMIT_EXCEEDED,
            status_code=429,
            severity=ErrorSeverity.LOW,
            is_retryable=True,
            **kwargs,
        )

        self.limit = limit
        self.reset_time = reset_time
        self.retry_after = retry_after

        self.details.update({"limit": limit, "reset_time": reset_time, "retry_after": retry_after})


class SsrfRejectedException(AppException):
    """
    Excepción cuando una URL saliente no pasa la validación SSRF.

    Indica una configuración incorrecta; es fatal solo para ese request.
    """

    def __init__(self, message: str, url: str, reason: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.SSRF_REJECTED,
            status_code=400,
            severity=ErrorSeverity.HIGH,
            **kwargs,
        )
        self.url = url
        self.reason = reason
        self.details.update({"url": url, "reason": reason})


class SyncException(AppException):
    """
    Excepción para errores de sincronización.
    """

    def __init__(
        self,
        message: str,
        service: str,
        operation: str,
        failed_records: Optional[List[Dict]] = None,
        sync_stats: Optional[Dict[str, Any]] = None,
        retry_suggested: bool = True,
        **kwargs,
    ):
        """
        Inicializa la excepción de sincronización.

        Args:
            message: Mensaje de error
            service: Plataforma o servicio involucrado
            operation: Operación que falló
            failed_records: Registros que fallaron
            sync_stats: Estadísticas de la sincronización
            retry_suggested: Si se sugiere reintentar
            **kwargs: Argumentos adicionales para AppException
        """
        super().__init__(
            message=message,
            error_code=ErrorCode.SYNC_FAILED,
            status_code=500,
            severity=ErrorSeverity.HIGH,
            is_retryable=retry_suggested,
            **kwargs,
        )

        self.service = service
        self.operation = operation
        self.failed_records = failed_records or []
        self.sync_stats = sync_stats or {}
        self.retry_suggested = retry_suggested

        self.details.update(
            {
                "service": service,
                "operation": operation,
                "failed_count": len(self.failed_records),
                "sync_stats": sync_stats,
                "retry_suggested": retry_suggested,
            }
        )


# === FUNCIONES DE UTILIDAD ===


def convert_to_app_exception(exception: Exception, context: Optional[Dict[str, Any]] = None) -> AppException:
    """
    Convierte una excepción estándar a AppException.

    Args:
        exception: Excepción a convertir
        context: Contexto adicional

    Returns:
        AppException: Excepción convertida
    """
    if isinstance(exception, AppException):
        return exception

    context = context or {}
    exception_type = type(exception).__name__
    message = str(exception)

    if isinstance(exception, (ValueError, TypeError, KeyError)):
        return ValidationException(
            message=message,
            field=context.get("field", "unknown"),
            details={"original_exception": exception_type, **context},
        )

    return AppException(
        message=f"{exception_type}: {message}",
        details={"original_exception": exception_type, **context},
    )


def log_error(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    level: Optional[int] = None,
) -> None:
    """
    Loggea un error de manera consistente.

    Args:
        exception: Excepción a loggear
        context: Contexto adicional
        level: Nivel de logging (por defecto se deriva de la severidad)
    """
    context = context or {}

    log_data = {
        "exception_type": type(exception).__name__,
        "exception_message": str(exception),
        **context,
    }

    if isinstance(exception, AppException):
        message = f"{exception.error_code.value}: {exception.message}"
        log_data.update(
            {
                "error_code": exception.error_code.value,
                "severity": exception.severity.value,
                "is_retryable": exception.is_retryable,
                "is_critical": exception.is_critical,
            }
        )
        if level is None:
            level = {
                ErrorSeverity.LOW: logging.WARNING,
                ErrorSeverity.MEDIUM: logging.WARNING,
                ErrorSeverity.HIGH: logging.ERROR,
                ErrorSeverity.CRITICAL: logging.CRITICAL,
            }[exception.severity]
    else:
        message = f"Unhandled exception: {type(exception).__name__}: {str(exception)}"
        log_data["traceback"] = traceback.format_exc()

    logger.log(level if level is not None else logging.ERROR, message, extra=log_data)


class ErrorAggregator:
    """
    Agregador de errores para procesos batch.

    Los errores de severidad baja o media se tratan como warnings
    (p. ej. un pedido que no normaliza); los altos como errores.
    """

    def __init__(self):
        """Inicializa el agregador."""
        self.errors: List[AppException] = []
        self.warnings: List[AppException] = []
        self.total_processed = 0

    def add_error(self, exception: Union[AppException, Exception], context: Optional[Dict] = None):
        """
        Agrega un error al agregador.

        Args:
            exception: Excepción a agregar
            context: Contexto adicional
        """
        if not isinstance(exception, AppException):
            exception = convert_to_app_exception(exception, context)
        elif context:
            exception.details.update(context)

        if exception.severity in [ErrorSeverity.LOW, ErrorSeverity.MEDIUM]:
            self.warnings.append(exception)
        else:
            self.errors.append(exception)

        if exception.is_critical:
            log_error(exception, context, logging.CRITICAL)

    def increment_processed(self):
        """Incrementa contador de procesados."""
        self.total_processed += 1

    @property
    def count(self) -> int:
        """Total de errores y warnings registrados."""
        return len(self.errors) + len(self.warnings)

    def messages(self) -> List[str]:
        """Mensajes legibles de todos los problemas registrados."""
        return [str(e) for e in self.errors + self.warnings]

