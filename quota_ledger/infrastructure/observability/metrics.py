"""Prometheus metrics for approvals, liquidity pressure, sweeps and notifications"""

from prometheus_client import Counter, Histogram, Gauge

# Approval metrics
approval_counter = Counter(
    "quota_ledger_approvals_total",
    "Admin decisions committed",
    ["entity", "type", "outcome"],  # entity: transaction | loan, outcome: APPROVED | REJECTED
)

scope_failure_counter = Counter(
    "quota_ledger_scope_failures_total",
    "Transaction scopes rolled back",
    ["error_kind"],  # precondition | insufficient_resource | infra
)

liquidity_warning_counter = Counter(
    "quota_ledger_liquidity_warnings_total",
    "Withdrawals approved while real liquidity was below the payout",
)

# Sweep metrics
sweep_loans_counter = Counter(
    "quota_ledger_sweep_loans_total",
    "Loans processed by batch sweeps",
    ["sweep", "outcome"],  # sweep: liquidation | fgc | referrals
)

fgc_covered_cents_counter = Counter(
    "quota_ledger_fgc_covered_cents_total",
    "Debt covered by the credit guarantee fund, in cents",
)

real_liquidity_gauge = Gauge(
    "quota_ledger_real_liquidity_cents",
    "Operating cash net of reserves, user balances and fixed costs",
)

# Notification metrics
notification_latency_histogram = Histogram(
    "notification_latency_seconds",
    "Notification webhook response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

notification_failure_counter = Counter(
    "notification_failures_total",
    "Failed notification deliveries",
)

# Service health
operation_duration_histogram = Histogram(
    "quota_ledger_operation_duration_seconds",
    "Ledger operation latency",
    ["operation", "success"],
)


def record_approval(entity: str, entity_type: str, outcome: str) -> None:
    """Record a committed approval or rejection"""
    approval_counter.labels(entity=entity, type=entity_type, outcome=outcome).inc()


def record_sweep_outcome(sweep: str, outcome: str, count: int = 1) -> None:
    """Record per-loan sweep outcomes (liquidated, overdue, covered, skipped, failed)"""
    if count > 0:
        sweep_loans_counter.labels(sweep=sweep, outcome=outcome).inc(count)
