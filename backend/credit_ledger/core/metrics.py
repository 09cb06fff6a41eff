"""Prometheus metrics for the ledger"""
from prometheus_client import Counter, Gauge

ledger_operations_counter = Counter(
    'ledger_operations_total',
    'Ledger operations by operation and outcome',
    ['operation', 'outcome']
)

compensation_runs_counter = Counter(
    'ledger_compensation_runs_total',
    'Total number of compensation sweep runs',
    ['status']
)

compensation_actions_counter = Counter(
    'ledger_compensation_actions_total',
    'Compensation decisions taken by the sweeper',
    ['action']
)

settlement_events_counter = Counter(
    'ledger_settlement_events_total',
    'Generation settlement events consumed from the queue',
    ['status']
)

open_reservations_gauge = Gauge(
    'ledger_open_reservations',
    'Reservations currently held in reserved state'
)


def record_operation(operation: str, result: dict) -> None:
    """Count a ledger result under its outcome label"""
    if not result.get('ok'):
        outcome = result.get('reason', 'failed')
    elif result.get('idempotent') or result.get('already_released') or result.get('already_refunded'):
        outcome = 'idempotent'
    elif result.get('noop'):
        outcome = 'noop'
    else:
        outcome = 'applied'
    ledger_operations_counter.labels(operation=operation, outcome=outcome).inc()
