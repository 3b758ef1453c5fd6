"""Prometheus metrics."""

from prometheus_client import Counter, Gauge, Histogram

# Registry metrics
entries_appended = Counter(
    "verifactu_entries_appended_total",
    "Total registry entries appended",
    ["status"],
)

# Submission metrics
submission_attempts = Counter(
    "verifactu_submission_attempts_total",
    "Total submission attempts to the tax authority",
    ["outcome"],  # sent, rejected, transient_error, certificate_blocked
)

submission_duration = Histogram(
    "verifactu_submission_duration_seconds",
    "Tax authority round-trip duration",
)

worker_ticks = Counter(
    "verifactu_worker_ticks_total",
    "Total submission worker ticks",
)

tenants_throttled = Counter(
    "verifactu_tenants_throttled_total",
    "Tenants skipped by flow control",
)

stale_sending_recovered = Counter(
    "verifactu_stale_sending_recovered_total",
    "Entries recovered from an interrupted submission",
)

retries_exhausted = Counter(
    "verifactu_retries_exhausted_total",
    "Entries left for an operator after the last automatic retry",
)

# Certificate metrics
certificate_alerts = Counter(
    "verifactu_certificate_alerts_total",
    "Certificate expiry notifications emitted",
    ["level"],
)

certificates_blocked = Gauge(
    "verifactu_certificates_blocked",
    "Tenants whose certificate is expired or missing",
)

# Notification metrics
notification_deliveries = Counter(
    "verifactu_notification_deliveries_total",
    "Total notification deliveries",
    ["status"],
)
