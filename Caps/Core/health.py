"""Health checks for Caps."""

import logging
from typing import Any, Dict

from Caps.Core.playbook.ledger import LedgerUnavailable
from Caps.Core.utils.datetime_helpers import now as get_now

logger = logging.getLogger(__name__)


def check_ledger_health(engine) -> Dict[str, Any]:
    """Check the ledger store can be read."""
    try:
        run_count = len(engine.ledger.list_run_ids())
        return {
            "status": "healthy",
            "backend": engine.ledger.store.backend_name,
            "runs": run_count,
        }
    except LedgerUnavailable as e:
        logger.error(f"Ledger health check failed: {e}")
        return {
            "status": "unhealthy",
            "backend": engine.ledger.store.backend_name,
            "error": str(e),
        }


def check_runner_health(engine) -> Dict[str, Any]:
    """Report which capabilities have a runner."""
    capabilities = engine.registry.capabilities()
    return {
        "status": "healthy" if capabilities else "degraded",
        "capabilities": capabilities,
    }


def get_full_health_status(engine) -> Dict[str, Any]:
    """Get comprehensive health status."""
    ledger = check_ledger_health(engine)
    runners = check_runner_health(engine)

    if ledger["status"] != "healthy":
        overall = "unhealthy"
    elif runners["status"] != "healthy":
        overall = "degraded"
    else:
        overall = "healthy"

    return {
        "status": overall,
        "timestamp": get_now().isoformat(),
        "components": {
            "ledger": ledger,
            "runners": runners,
            "playbooks": {"status": "healthy", "loaded": len(engine.catalog)},
        },
    }


def get_liveness_status() -> Dict[str, Any]:
    """Liveness only says the process answers."""
    return {"status": "alive", "timestamp": get_now().isoformat()}


def get_readiness_status(engine) -> Dict[str, Any]:
    """Ready when the ledger can be read."""
    ledger = check_ledger_health(engine)
    return {
        "status": "ready" if ledger["status"] == "healthy" else "not_ready",
        "ledger": ledger,
    }
