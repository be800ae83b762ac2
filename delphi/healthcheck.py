"""Service health checks: ping the generation and search APIs before a run."""

import asyncio
import logging

from delphi.providers.base import ServiceClient

logger = logging.getLogger(__name__)

_TIMEOUT_SEC = 15.0


async def _check_one(client: ServiceClient, timeout_sec: float) -> tuple[str, bool, str]:
    """Ping a single service. Returns (name, ok, error_message)."""
    try:
        await asyncio.wait_for(client.ping(), timeout=timeout_sec)
        return client.name(), True, ""
    except TimeoutError:
        return client.name(), False, f"timed out after {timeout_sec:.0f}s"
    except Exception as exc:
        return client.name(), False, str(exc)


async def run_health_checks(
    clients: list[ServiceClient],
    timeout_sec: float = _TIMEOUT_SEC,
) -> dict[str, tuple[bool, str]]:
    """Ping all services in parallel.

    Returns:
        Dict mapping service name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(c, timeout_sec) for c in clients))
    for name, ok, err in results:
        if not ok:
            logger.warning("Health check failed for %s: %s", name, err)
    return {name: (ok, err) for name, ok, err in results}
