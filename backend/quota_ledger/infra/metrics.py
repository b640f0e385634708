import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.storage_reservations = None
            self.org_storage_quota_rejections = None
            self.storage_reservation_bytes = None
            self.storage_bytes_reclaimed = None
            self.storage_reconciliation_deviations = None
            self.storage_reservations_pending = None
            self.job_last_success = None
            self.job_errors = None
            return

        self.storage_reservations = Counter(
            "storage_reservations_total",
            "Storage reservation lifecycle events by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.org_storage_quota_rejections = Counter(
            "org_storage_quota_rejections_total",
            "Reservations rejected because the organization quota was exhausted.",
            ["reason"],
            registry=self.registry,
        )
        self.storage_reservation_bytes = Counter(
            "storage_reservation_bytes_total",
            "Bytes moved through reservations by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.storage_bytes_reclaimed = Counter(
            "storage_bytes_reclaimed_total",
            "Bytes released by sweeping expired reservations.",
            registry=self.registry,
        )
        self.storage_reconciliation_deviations = Counter(
            "storage_reconciliation_deviations_total",
            "Reconciliation runs that found ledger drift, by whether it was corrected.",
            ["corrected"],
            registry=self.registry,
        )
        self.storage_reservations_pending = Gauge(
            "storage_reservations_pending",
            "Outstanding storage reservations not yet past their TTL.",
            registry=self.registry,
        )
        self.job_last_success = Gauge(
            "job_last_success_timestamp",
            "Unix timestamp for the latest successful job loop.",
            ["job"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Job execution errors by job and reason.",
            ["job", "reason"],
            registry=self.registry,
        )

    def record_storage_reservation(self, outcome: str, bytes_count: int = 0) -> None:
        if not self.enabled or self.storage_reservations is None or self.storage_reservation_bytes is None:
            return
        safe_outcome = outcome or "unknown"
        self.storage_reservations.labels(outcome=safe_outcome).inc()
        if bytes_count > 0:
            self.storage_reservation_bytes.labels(outcome=safe_outcome).inc(bytes_count)

    def record_org_storage_quota_rejection(self, reason: str) -> None:
        if not self.enabled or self.org_storage_quota_rejections is None:
            return
        self.org_storage_quota_rejections.labels(reason=reason or "unknown").inc()

    def record_storage_bytes_reclaimed(self, bytes_count: int) -> None:
        if not self.enabled or self.storage_bytes_reclaimed is None:
            return
        if bytes_count <= 0:
            return
        self.storage_bytes_reclaimed.inc(bytes_count)

    def record_storage_reconciliation_deviation(self, corrected: bool) -> None:
        if not self.enabled or self.storage_reconciliation_deviations is None:
            return
        self.storage_reconciliation_deviations.labels(corrected="true" if corrected else "false").inc()

    def set_storage_reservations_pending(self, count: int) -> None:
        if not self.enabled or self.storage_reservations_pending is None:
            return
        self.storage_reservations_pending.set(max(0, count))

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_last_success.labels(job=job).set(ts)

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        self.job_errors.labels(job=job, reason=reason or "unknown").inc()

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
