"""Stale record cleanup.

Finds CNAME records whose hosts no longer answer and removes them from the
DNS provider and the proxy host manager. Removal happens record by record: a
failure on one record is reported and the next record is processed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from homelab_proxy.health import (
    DEFAULT_CONCURRENCY,
    DEFAULT_TIMEOUT_MS,
    CredentialProvider,
    Credentials,
    HealthProber,
    ProbeResult,
    probe_all,
)
from homelab_proxy.observer import HealthObserver
from homelab_proxy.providers import DNSProvider, ManagedRecord, ProxyHostProvider
from homelab_proxy.report import HealthReport, build_report

logger = logging.getLogger(__name__)

DKIM_LABEL = "_domainkey"

# =============================================================================
# Enums and Data Classes
# =============================================================================


class CleanupPolicy(Enum):
    """What to do with stale records once they are found."""

    DRY_RUN = "dry-run"
    CONFIRM = "confirm"
    AUTO_REMOVE = "auto-remove"


class OutcomeStatus(Enum):
    WOULD_REMOVE = "would_remove"
    REMOVED = "removed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class CleanupSettings:
    """Resolved health-check options, read from configuration once per run."""

    timeout_ms: int = DEFAULT_TIMEOUT_MS
    concurrency: int = DEFAULT_CONCURRENCY
    credentials: Optional[Credentials] = None


@dataclass(frozen=True)
class StaleRecord:
    """A DNS record together with the probe that found it stale."""

    record: ManagedRecord
    result: ProbeResult

    @property
    def name(self) -> str:
        return self.record.name

    @property
    def reason(self) -> str:
        return self.result.reason


@dataclass(frozen=True)
class RecordOutcome:
    stale: StaleRecord
    status: OutcomeStatus
    proxy_host_removed: bool = False
    error: str = ""


@dataclass
class CleanupResult:
    """What a cleanup did, record by record."""

    policy: CleanupPolicy
    total: int
    removed_count: int = 0
    outcomes: List[RecordOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed(self) -> List[RecordOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.FAILED]

    def summary(self) -> str:
        if self.policy == CleanupPolicy.DRY_RUN:
            return f"Dry run: would remove {self.total} stale record(s); removed 0 of {self.total}."
        if self.cancelled:
            return f"Cleanup cancelled: removed 0 of {self.total} stale records."
        return f"Cleanup completed: removed {self.removed_count} of {self.total} stale records."


class CleanupSetupError(Exception):
    """The DNS provider or proxy host manager cannot be reached at all."""


# =============================================================================
# Target Selection
# =============================================================================


def is_dkim_record(name: str) -> bool:
    return DKIM_LABEL in name.lower().split(".")


def select_probe_targets(records: Sequence[ManagedRecord]) -> List[ManagedRecord]:
    """CNAME records eligible for health-based cleanup, in listing order.

    DKIM key records never point at a web service, so they are never probed.
    """
    targets = []
    for record in records:
        if record.type.upper() != "CNAME":
            continue
        if is_dkim_record(record.name):
            logger.debug(f"Excluding DKIM record '{record.name}' from health checks")
            continue
        targets.append(record)
    return targets


def find_stale_records(
    records: Sequence[ManagedRecord], results: Sequence[ProbeResult]
) -> List[StaleRecord]:
    """Pair each record with its probe result and keep the unhealthy ones."""
    if len(records) != len(results):
        raise ValueError(f"Got {len(results)} probe results for {len(records)} records")
    return [
        StaleRecord(record=record, result=result)
        for record, result in zip(records, results)
        if not result.is_healthy
    ]


# =============================================================================
# Health Check Run
# =============================================================================


@dataclass
class HealthCheckRun:
    """Everything a health check produced: the probed records and their outcome."""

    records: List[ManagedRecord]
    results: List[ProbeResult]
    report: HealthReport
    stale: List[StaleRecord]


def run_health_check(
    dns_provider: DNSProvider,
    settings: CleanupSettings,
    *,
    auth_provider: Optional[CredentialProvider] = None,
    observer: Optional[HealthObserver] = None,
    prober: Optional[HealthProber] = None,
    domain: Optional[str] = None,
) -> HealthCheckRun:
    """List the DNS records, probe every eligible one and report on them.

    Provider errors while listing records propagate: without the list there is
    nothing to check.
    """
    records = select_probe_targets(dns_provider.list_records(domain))
    logger.info(f"Found {len(records)} CNAME records to check")
    results = probe_all(
        [r.name for r in records],
        settings.timeout_ms,
        settings.concurrency,
        settings.credentials,
        auth_provider,
        prober=prober,
        observer=observer,
    )
    return HealthCheckRun(
        records=records,
        results=results,
        report=build_report(results),
        stale=find_stale_records(records, results),
    )


# =============================================================================
# Cleanup Orchestrator
# =============================================================================


class CleanupOrchestrator:
    """Remove stale records from the DNS provider and the proxy host manager."""

    def __init__(
        self,
        *,
        dns_provider: DNSProvider,
        proxy_provider: ProxyHostProvider,
        confirm: Optional[Callable[[str], bool]] = None,
        observer: Optional[HealthObserver] = None,
    ):
        self.dns_provider = dns_provider
        self.proxy_provider = proxy_provider
        self.confirm = confirm
        self.observer = observer or HealthObserver()

    def _check_stores(self) -> None:
        for store in (self.dns_provider, self.proxy_provider):
            if not store.test_connection():
                raise CleanupSetupError(f"Cannot connect to {store.name}")

    def _remove(self, stale: StaleRecord) -> RecordOutcome:
        if is_dkim_record(stale.name):
            return RecordOutcome(stale, OutcomeStatus.SKIPPED, error="DKIM records are never removed")

        subdomain, domain = stale.record.split_name()
        try:
            self.dns_provider.delete_record(subdomain, domain)
        except Exception as e:
            self.observer.record_failed(stale, e)
            return RecordOutcome(stale, OutcomeStatus.FAILED, error=str(e))

        proxy_removed = True
        proxy_error = ""
        try:
            self.proxy_provider.delete_proxy_host(subdomain, domain)
        except Exception as e:
            # Not every record has a proxy host; the DNS removal still counts.
            proxy_removed = False
            proxy_error = str(e)
            self.observer.proxy_host_skipped(stale, e)

        self.observer.record_removed(stale)
        return RecordOutcome(stale, OutcomeStatus.REMOVED, proxy_removed, proxy_error)

    def cleanup(self, stale_records: Sequence[StaleRecord], policy: CleanupPolicy) -> CleanupResult:
        """Apply ``policy`` to ``stale_records``.

        DRY_RUN lists what would be removed without touching either store.
        CONFIRM asks ``confirm`` first and removes nothing if it declines.
        AUTO_REMOVE removes without asking.

        Raises CleanupSetupError if either store is unreachable before the
        first removal.
        """
        result = CleanupResult(policy=policy, total=len(stale_records))

        if policy == CleanupPolicy.DRY_RUN:
            result.outcomes = [RecordOutcome(s, OutcomeStatus.WOULD_REMOVE, error=s.reason) for s in stale_records]
            self.observer.cleanup_finished(result)
            return result

        if not stale_records:
            self.observer.cleanup_finished(result)
            return result

        if policy == CleanupPolicy.CONFIRM:
            if self.confirm is None:
                raise ValueError("CONFIRM policy requires a confirm callback")
            message = (
                f"Remove {len(stale_records)} stale records from "
                f"{self.dns_provider.name} and {self.proxy_provider.name}?"
            )
            if not self.confirm(message):
                result.cancelled = True
                self.observer.cleanup_finished(result)
                return result

        self._check_stores()

        for stale in stale_records:
            outcome = self._remove(stale)
            result.outcomes.append(outcome)
            if outcome.status == OutcomeStatus.REMOVED:
                result.removed_count += 1

        self.observer.cleanup_finished(result)
        return result


def outcome_rows(result: CleanupResult) -> List[Tuple[str, str, str, str]]:
    """Table rows (domain, target, reason, status) for display."""
    return [
        (o.stale.name, o.stale.record.content, o.stale.reason, o.status.value.replace("_", " ").upper())
        for o in result.outcomes
    ]
