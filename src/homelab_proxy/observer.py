"""Progress reporting for health checks and cleanups.

The probing and cleanup code never logs its progress directly. It reports
events to a ``HealthObserver`` passed in by the caller, so it can run silently
under test and loudly from the CLI.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from homelab_proxy.cleanup import CleanupResult, StaleRecord
    from homelab_proxy.health import ProbeResult


class HealthObserver:
    """Observer that ignores every event. Subclass and override what you need."""

    def probe_started(self, hostname: str) -> None:
        pass

    def probe_finished(self, result: "ProbeResult") -> None:
        pass

    def batch_failed(self, window_start: int, hostnames: Sequence[str], error: BaseException) -> None:
        pass

    def record_removed(self, stale: "StaleRecord") -> None:
        pass

    def record_failed(self, stale: "StaleRecord", error: BaseException) -> None:
        pass

    def proxy_host_skipped(self, stale: "StaleRecord", error: BaseException) -> None:
        pass

    def cleanup_finished(self, result: "CleanupResult") -> None:
        pass


class LoggingObserver(HealthObserver):
    """Report events through the standard ``logging`` module."""

    def __init__(self, logger: logging.Logger | None = None):
        self._logger = logger or logging.getLogger("homelab_proxy")

    def probe_started(self, hostname: str) -> None:
        self._logger.debug(f"Checking health of {hostname}...")

    def probe_finished(self, result: "ProbeResult") -> None:
        if result.is_healthy:
            protocol = result.protocol.value if result.protocol else "?"
            self._logger.info(
                f"{result.hostname} is healthy ({result.status_code} via {protocol}, "
                f"{result.response_time_ms}ms)"
            )
        else:
            self._logger.warning(f"{result.hostname} is STALE ({result.reason})")

    def batch_failed(self, window_start: int, hostnames: Sequence[str], error: BaseException) -> None:
        end = window_start + len(hostnames)
        self._logger.error(f"Error checking batch {window_start}-{end}: {error}")

    def record_removed(self, stale: "StaleRecord") -> None:
        self._logger.info(f"Removed {stale.name}")

    def record_failed(self, stale: "StaleRecord", error: BaseException) -> None:
        self._logger.error(f"Failed to remove {stale.name}: {error}")

    def proxy_host_skipped(self, stale: "StaleRecord", error: BaseException) -> None:
        self._logger.warning(f"Could not remove proxy host for {stale.name}: {error}")

    def cleanup_finished(self, result: "CleanupResult") -> None:
        self._logger.info(result.summary())
