from __future__ import annotations

import logging

from .host import Host

logger = logging.getLogger(__name__)


def is_online(host: Host, *, probe_host: str = "8.8.8.8", timeout_s: int = 1) -> bool:
    """Best-effort outbound connectivity check; False on an air-gapped node."""

    if not host.has_command("ping"):
        logger.info("ping not available; assuming no connectivity")
        return False
    r = host.query(["ping", "-c", "1", "-W", str(timeout_s), probe_host])
    return r.returncode == 0


def check_airgap(host: Host, *, probe_host: str = "8.8.8.8") -> bool:
    """Log the isolation status. Returns True when the node looks air-gapped."""

    if is_online(host, probe_host=probe_host):
        logger.warning("Network connectivity detected - this should be an air-gapped node")
        logger.warning("Proceeding anyway, but verify network isolation")
        return False
    logger.info("Confirmed: no internet connectivity (air-gapped)")
    return True
