"""MediGuard server entry point: ``python -m mediguard.core.server.main``."""

from __future__ import annotations

import logging
from ipaddress import ip_address

from mediguard.core.config.settings import get_settings
from mediguard.core.server.app import create_app


def _is_loopback_host(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def run() -> None:
    """Start the MediGuard MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.mediguard_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    logger = logging.getLogger(__name__)
    if not settings.mediguard_allow_insecure_bind and not _is_loopback_host(settings.mediguard_host):
        raise RuntimeError(
            "Refusing to bind MediGuard to a non-loopback host without an auth layer. "
            "Set MEDIGUARD_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )
    logger.info(
        "Starting MediGuard server on %s:%d (reminders in %s)",
        settings.mediguard_host,
        settings.mediguard_port,
        settings.schedule_timezone,
    )

    mcp = create_app()
    mcp.run(
        transport="streamable-http",
        host=settings.mediguard_host,
        port=settings.mediguard_port,
    )


if __name__ == "__main__":
    run()
