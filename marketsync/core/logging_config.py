"""
Configuración avanzada del sistema de logging.

Este módulo configura un sistema de logging robusto con:
- Handlers de consola y archivo con rotación
- Formateo personalizado con colores o JSON estructurado
- Filtro de datos sensibles: ninguna credencial llega a un sink
- Helpers para operaciones de sincronización y llamadas a APIs
"""

import json
import logging
import logging.config
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from marketsync.core.config import Settings, get_settings
from marketsync.utils.redaction import REDACTED, is_sensitive_key, redact_credentials, redact_text

# Atributos estándar de LogRecord que no se consideran "extra"
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "taskName",
    }
)


class ColoredFormatter(logging.Formatter):
    """
    Formatter personalizado que agrega colores a los logs en consola.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Verde
        "WARNING": "\033[33m",  # Amarillo
        "ERROR": "\033[31m",  # Rojo
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def format(self, record):
        formatted = super().format(record)

        if hasattr(sys.stderr, "isatty") and sys.stderr.isatty():
            color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
            reset = self.COLORS["RESET"]
            formatted = formatted.replace(record.levelname, f"{color}{record.levelname}{reset}")

        return formatted


class StructuredFormatter(logging.Formatter):
    """
    Formatter para logging estructurado en JSON.
    Útil para sistemas de monitoreo como ELK Stack.
    """

    def format(self, record):
        """
        Formatea el record como JSON estructurado.

        Args:
            record: LogRecord a formatear

        Returns:
            str: Mensaje en formato JSON
        """
        settings = get_settings()
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "app_name": settings.APP_NAME,
            "environment": settings.ENVIRONMENT,
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        extra_fields = {k: v for k, v in record.__dict__.items() if k not in _RESERVED_RECORD_ATTRS}
        if extra_fields:
            log_entry["extra"] = extra_fields

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class SensitiveDataFilter(logging.Filter):
    """
    Filtro que oculta credenciales en el mensaje y en los campos extra.

    Se instala en todos los handlers para que ningún secreto
    llegue a consola, archivo o JSON.
    """

    def filter(self, record):
        if isinstance(record.msg, str):
            record.msg = redact_text(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_credentials(record.args)
            else:
                record.args = tuple(redact_credentials(a) if isinstance(a, (str, dict)) else a for a in record.args)

        for key in list(record.__dict__.keys()):
            if key in _RESERVED_RECORD_ATTRS:
                continue
            value = record.__dict__[key]
            if is_sensitive_key(key) and value not in (None, ""):
                record.__dict__[key] = REDACTED
            elif isinstance(value, (dict, list, str)):
                record.__dict__[key] = redact_credentials(value)

        return True


class SyncOperationFilter(logging.Filter):
    """
    Filtro específico para operaciones de sincronización.
    """

    def filter(self, record):
        sync_modules = ["sync", "connector", "aggregator", "dedup"]

        if any(module in record.name.lower() for module in sync_modules):
            record.operation_type = "sync"

        return True


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configura el sistema de logging completo de la aplicación.

    Args:
        settings: Configuración a usar (por defecto get_settings())
    """
    settings = settings or get_settings()

    if settings.LOG_FILE_PATH:
        Path(settings.LOG_FILE_PATH).parent.mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig(get_logging_configuration(settings))
    configure_specific_loggers(settings)

    logger = logging.getLogger(__name__)
    logger.info(f"Sistema de logging configurado - Nivel: {settings.LOG_LEVEL}")
    if settings.LOG_FILE_PATH:
        logger.info(f"Logs guardándose en: {settings.LOG_FILE_PATH}")


def get_logging_configuration(settings: Optional[Settings] = None) -> Dict[str, Any]:
    """
    Genera configuración completa de logging para dictConfig.

    Args:
        settings: Configuración a usar (por defecto get_settings())

    Returns:
        Dict: Configuración de logging
    """
    settings = settings or get_settings()
    log_config = settings.get_logging_config()

    if log_config["format"] == "json":
        console_formatter = "json"
    elif log_config["colored"]:
        console_formatter = "colored"
    else:
        console_formatter = "standard"

    config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "sensitive_data": {"()": SensitiveDataFilter},
            "sync_operation": {"()": SyncOperationFilter},
        },
        "formatters": {
            "standard": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "detailed": {
                "format": ("%(asctime)s - %(name)s - %(levelname)s - %(module)s.%(funcName)s:%(lineno)d - %(message)s"),
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "colored": {
                "()": ColoredFormatter,
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "json": {"()": StructuredFormatter},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_config["level"],
                "formatter": console_formatter,
                "filters": ["sensitive_data", "sync_operation"],
                "stream": "ext://sys.stdout",
            }
        },
        "root": {"level": log_config["level"], "handlers": ["console"]},
    }

    if log_config["file_path"]:
        config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_config["level"],
            "formatter": "json" if log_config["format"] == "json" else "detailed",
            "filters": ["sensitive_data", "sync_operation"],
            "filename": log_config["file_path"],
            "maxBytes": log_config["max_bytes"],
            "backupCount": log_config["backup_count"],
            "encoding": "utf-8",
        }
        config["root"]["handlers"].append("file")

    return config


def configure_specific_loggers(settings: Optional[Settings] = None) -> None:
    """
    Configura loggers específicos y reduce el ruido de librerías externas.
    """
    settings = settings or get_settings()

    logging.getLogger("marketsync.services").setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)

    for logger_name in ["aiohttp.access", "aiohttp.client", "asyncio", "redis"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def log_sync_operation(operation: str, service: str, **kwargs):
    """
    Logger específico para operaciones de sincronización.

    Args:
        operation: Tipo de operación (sync, dedup, store, etc.)
        service: Plataforma o servicio involucrado
        **kwargs: Datos adicionales
    """
    logger = logging.getLogger("marketsync.sync.operation")

    extra_data = {
        "sync_operation": operation,
        "service": service,
        "sync_timestamp": datetime.now(timezone.utc).isoformat(),
        **kwargs,
    }

    logger.info(f"Sync operation: {operation} on {service}", extra=extra_data)


def log_api_call(method: str, url: str, status_code: int, duration: float, **kwargs):
    """
    Logger específico para llamadas a APIs externas.

    Args:
        method: Método HTTP
        url: URL de la API (sin query string, que puede contener firmas)
        status_code: Código de respuesta
        duration: Duración en segundos
        **kwargs: Datos adicionales
    """
    logger = logging.getLogger("marketsync.api.call")

    extra_data = {
        "method": method,
        "url": url,
        "status_code": status_code,
        "duration_ms": round(duration * 1000, 2),
        **kwargs,
    }

    if 200 <= status_code < 300:
        level = logging.INFO
    elif 400 <= status_code < 500:
        level = logging.WARNING
    else:
        level = logging.ERROR

    logger.log(
        level,
        f"API call: {method} {url} -> {status_code} ({duration * 1000:.1f}ms)",
        extra=extra_data,
    )

