"""Aggregate probe results into a health report."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from homelab_proxy.health import ProbeResult


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class HealthReport:
    """Healthy/stale partition of a batch of probe results.

    ``healthy_percentage`` is None when there were no results to report on.
    """

    total: int
    healthy_count: int
    stale_count: int
    healthy_percentage: Optional[int]
    healthy: Tuple[ProbeResult, ...] = ()
    stale: Tuple[ProbeResult, ...] = ()
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def percentage_text(self) -> str:
        return "n/a" if self.healthy_percentage is None else f"{self.healthy_percentage}%"

    def to_dict(self) -> Dict[str, Any]:
        """Machine-readable form, as written by ``write_report``."""
        return {
            "summary": {
                "total": self.total,
                "healthy": self.healthy_count,
                "stale": self.stale_count,
                "healthyPercentage": self.healthy_percentage,
            },
            "details": {
                "healthy": [
                    {
                        "hostname": r.hostname,
                        "statusCode": r.status_code,
                        "responseTime": r.response_time_ms,
                        "protocol": r.protocol.value if r.protocol else None,
                    }
                    for r in self.healthy
                ],
                "stale": [
                    {
                        "hostname": r.hostname,
                        "error": r.error.describe() if r.error else None,
                        "statusCode": r.status_code,
                        "responseTime": r.response_time_ms,
                    }
                    for r in self.stale
                ],
            },
            "timestamp": self.generated_at.isoformat(),
        }


def build_report(results: Sequence[ProbeResult]) -> HealthReport:
    healthy = tuple(r for r in results if r.is_healthy)
    stale = tuple(r for r in results if not r.is_healthy)
    total = len(results)
    percentage = _round_half_up(100 * len(healthy) / total) if total else None
    return HealthReport(
        total=total,
        healthy_count=len(healthy),
        stale_count=len(stale),
        healthy_percentage=percentage,
        healthy=healthy,
        stale=stale,
    )


def write_report(report: HealthReport, path: str) -> Path:
    """Write the report as indented JSON, creating parent directories."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(report.to_dict(), indent=2), "utf-8")
    return target
