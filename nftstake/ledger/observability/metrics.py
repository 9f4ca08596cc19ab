# MIT License
# Copyright (c) 2025 Hashborn

"""
Prometheus Metrics Exporter

Exports staking engine metrics in Prometheus format.

Metrics:
- Total staked units, active stakers
- Reward index, reward rate, reward paid
- Operations by type and status, batch sizes
- Pause state
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry

# Create registry for metrics
metrics_registry = CollectorRegistry()

# ═══════════════════════════════════════════════════════════════════
# STAKE METRICS
# ═══════════════════════════════════════════════════════════════════

total_staked = Gauge(
    'nftstake_total_staked',
    'Units currently held in custody',
    registry=metrics_registry
)

stakers_active = Gauge(
    'nftstake_stakers_active',
    'Stakers with a non-zero stake',
    registry=metrics_registry
)

paused = Gauge(
    'nftstake_paused',
    'Pause gate state (1 = paused)',
    registry=metrics_registry
)

# ═══════════════════════════════════════════════════════════════════
# REWARD METRICS
# ═══════════════════════════════════════════════════════════════════

reward_per_unit_stored = Gauge(
    'nftstake_reward_per_unit_stored',
    'Last settled reward-per-unit index (scaled by REWARD_PRECISION)',
    registry=metrics_registry
)

reward_rate = Gauge(
    'nftstake_reward_rate',
    'Reward units emitted per second',
    registry=metrics_registry
)

rewards_paid_total = Counter(
    'nftstake_rewards_paid_total',
    'Total reward units paid out',
    registry=metrics_registry
)

# ═══════════════════════════════════════════════════════════════════
# OPERATION METRICS
# ═══════════════════════════════════════════════════════════════════

operations_total = Counter(
    'nftstake_operations_total',
    'Engine operations by type and status',
    ['op_type', 'status'],
    registry=metrics_registry
)

operation_failures_total = Counter(
    'nftstake_operation_failures_total',
    'Rejected operations by error class',
    ['op_type', 'error'],
    registry=metrics_registry
)

batch_size = Histogram(
    'nftstake_batch_size',
    'Units per stake/withdraw/exit batch',
    buckets=[1, 2, 5, 10, 20, 50, 100],
    registry=metrics_registry
)


# ═══════════════════════════════════════════════════════════════════
# HELPER FUNCTIONS
# ═══════════════════════════════════════════════════════════════════

def record_operation(op_type: str, status: str, units: int, reward_paid: int):
    """
    Update counters for a committed operation.

    Args:
        op_type: Operation type name
        status: 'confirmed'
        units: Batch size (0 for claim)
        reward_paid: Reward units transferred
    """
    operations_total.labels(op_type=op_type, status=status).inc()
    if units:
        batch_size.observe(units)
    if reward_paid:
        rewards_paid_total.inc(reward_paid)


def record_failure(op_type: str, error: str):
    operations_total.labels(op_type=op_type, status='failed').inc()
    operation_failures_total.labels(op_type=op_type, error=error).inc()


def update_metrics(engine):
    """
    Update all gauges from engine state.
    Called when metrics are scraped. Only updates Gauges, not Counters/Histograms.

    Args:
        engine: StakingEngine instance
    """
    state = engine.state

    total_staked.set(state.total_staked)
    stakers_active.set(sum(1 for acc in state.all_accounts() if acc.balance > 0))
    reward_per_unit_stored.set(state.reward.reward_per_unit_stored)
    reward_rate.set(state.reward.reward_rate)
    paused.set(1 if engine.is_paused() else 0)
