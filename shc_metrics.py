"""
SecureHealth Chain - Prometheus Metrics
Ledger activity, enforcement outcomes and API latency
"""

from typing import Any, Dict

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

from shc_audit_v1 import AuditEvent, AuditEventKind

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# LEDGER METRICS
# ============================================

audit_event_counter = Counter(
    'shc_audit_events_total',
    'Total number of accepted transitions by event kind',
    ['kind'],
    registry=metrics_registry
)

patients_registered_gauge = Gauge(
    'shc_patients_registered',
    'Number of patient records on the ledger',
    registry=metrics_registry
)

payment_amount_histogram = Histogram(
    'shc_payment_amount',
    'Payment amounts in the smallest currency unit',
    buckets=[10, 100, 1000, 10000, 100000, 1000000],
    registry=metrics_registry
)

escrow_balance_gauge = Gauge(
    'shc_escrow_balance',
    'Funds held in escrow awaiting withdrawal',
    registry=metrics_registry
)

block_number_gauge = Gauge(
    'shc_block_number',
    'Latest block number handed out by the ledger clock',
    registry=metrics_registry
)

# ============================================
# ENFORCEMENT METRICS
# ============================================

transition_rejected_counter = Counter(
    'shc_transitions_rejected_total',
    'Total number of transitions rejected by the gate',
    ['endpoint', 'error'],
    registry=metrics_registry
)

system_health_gauge = Gauge(
    'shc_system_health_score',
    'Share of passed invariant checks (0-1)',
    registry=metrics_registry
)

ledger_integrity_gauge = Gauge(
    'shc_ledger_integrity',
    'Decision ledger integrity (1=verified, 0=compromised)',
    registry=metrics_registry
)

# ============================================
# PERFORMANCE METRICS
# ============================================

api_request_duration_histogram = Histogram(
    'shc_api_request_duration_seconds',
    'API request duration',
    ['endpoint', 'method'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
    registry=metrics_registry
)

api_request_counter = Counter(
    'shc_api_requests_total',
    'Total API requests',
    ['endpoint', 'method', 'status_code'],
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

def record_audit_event(event: AuditEvent):
    """Audit observer: count the transition and observe payment amounts."""
    audit_event_counter.labels(kind=event.kind.value).inc()
    block_number_gauge.set(event.block_number)

    if event.kind is AuditEventKind.PAYMENT_PROCESSED:
        payment_amount_histogram.observe(event.data.get('amount', 0))

def record_rejection(endpoint: str, error: str):
    """Record a transition rejected by the gate."""
    transition_rejected_counter.labels(endpoint=endpoint, error=error).inc()

def update_system_health(health: Dict[str, Any]):
    """Set health and state gauges from a get_system_health() snapshot."""
    system_health_gauge.set(health['health_score'])
    ledger_integrity_gauge.set(1 if health['ledger_integrity'] else 0)
    patients_registered_gauge.set(health['total_records'])
    escrow_balance_gauge.set(health['escrow_balance'])

def record_api_request(endpoint: str, method: str, status_code: int, duration: float):
    """Record API request metrics."""
    api_request_counter.labels(
        endpoint=endpoint,
        method=method,
        status_code=status_code
    ).inc()
    api_request_duration_histogram.labels(
        endpoint=endpoint,
        method=method
    ).observe(duration)
