"""
Línea de comandos de MarketSync.

    python -m marketsync --credentials platforms.json sync --platform shopify --force
    python -m marketsync status
    python -m marketsync run
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from marketsync.bootstrap import ServiceContainer, build_container, load_platform_credentials
from marketsync.core.config import get_environment_info, get_settings
from marketsync.core.logging_config import setup_logging
from marketsync.core.redis_client import test_redis_connection
from marketsync.domain.models import PlatformType
from marketsync.utils.error_handler import AppException
from marketsync.version import version_info, version_string

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="marketsync",
        description="Sincroniza y reconcilia pedidos de Shopee, Lazada, Shopify y TikTok Shop",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {version_string()}")
    parser.add_argument(
        "--credentials",
        metavar="FILE",
        help="Archivo JSON con credenciales por plataforma (por defecto PLATFORM_CREDENTIALS_FILE)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Ejecutar un ciclo de sincronización")
    sync_parser.add_argument(
        "--platform",
        choices=[p.value for p in PlatformType],
        help="Sincronizar solo esta plataforma",
    )
    sync_parser.add_argument(
        "--force",
        action="store_true",
        help="Sincronizar aunque la plataforma no esté vencida",
    )

    subparsers.add_parser("status", help="Mostrar el estado de sincronización por plataforma")
    subparsers.add_parser("run", help="Ejecutar el scheduler hasta recibir SIGINT/SIGTERM")

    schema_parser = subparsers.add_parser("schema", help="Mostrar el esquema de credenciales de una plataforma")
    schema_parser.add_argument("platform", choices=[p.value for p in PlatformType])

    return parser


async def run_sync(container: ServiceContainer, platform: Optional[str], force: bool) -> Dict[str, Any]:
    manager = container.sync_manager
    if platform is None and not force:
        return await manager.schedule_sync()

    if platform is None:
        targets: List[PlatformType] = [c.platform_type for c in await container.config_repository.list_active()]
    else:
        targets = [PlatformType.parse(platform)]

    results = {}
    for target in targets:
        if force:
            results[target.value] = await manager.force_sync(target)
        else:
            results[target.value] = await manager.perform_sync(target)
    return results


async def run_scheduler(container: ServiceContainer) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still stops asyncio.run
            pass

    await container.scheduler.start()
    await stop.wait()
    await container.scheduler.stop()


async def execute(args: argparse.Namespace) -> int:
    container = build_container()
    try:
        if args.command == "schema":
            _print(container.connector_factory.get_configuration_schema(args.platform))
            return 0

        summary = await load_platform_credentials(container, args.credentials)
        if summary["failed"]:
            logger.warning(f"Platforms with invalid credentials: {', '.join(summary['failed'])}")

        if args.command == "sync":
            results = await run_sync(container, args.platform, args.force)
            _print(results)
            return 0 if all(r.get("status") != "failed" for r in results.values()) else 1

        if args.command == "status":
            _print(
                {
                    "version": version_info(),
                    "environment": get_environment_info(container.settings),
                    "redis_connected": (
                        await test_redis_connection() if container.settings.REDIS_URL else None
                    ),
                    "platforms": await container.sync_manager.get_sync_status(),
                    "statistics": await container.sync_manager.get_sync_statistics(),
                    "circuit_breakers": await container.breakers.get_all_status(),
                }
            )
            return 0

        if args.command == "run":
            if not container.settings.ENABLE_SCHEDULED_SYNC:
                logger.warning("⚠️ ENABLE_SCHEDULED_SYNC=false, scheduler not started")
                return 0
            await run_scheduler(container)
            return 0

        return 2
    finally:
        await container.close()


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str, ensure_ascii=False))


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(get_settings())

    try:
        return asyncio.run(execute(args))
    except AppException as e:
        logger.error(f"❌ {e.message}")
        return 1
    except KeyboardInterrupt:
        logger.info("🛑 Interrumpido por el usuario")
        return 130


if __name__ == "__main__":
    sys.exit(main())
