"""Prometheus metrics for the application"""
from prometheus_client import REGISTRY, Counter


def _counter(name: str, documentation: str, labels=()):
    # Re-importing the module (tests, reloads) must not register twice
    try:
        return Counter(name, documentation, list(labels))
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Ingress
events_counter = _counter(
    'paysync_events',
    'Payment events by provider and reconciliation outcome',
    ['provider', 'outcome']
)

entitlement_extensions_counter = _counter(
    'paysync_entitlement_extensions',
    'Entitlement extensions applied',
    ['provider']
)

# Expiry sweep
sweep_runs_counter = _counter(
    'paysync_sweep_runs',
    'Total number of expiry sweep runs',
    ['status']
)

sweep_downgrades_counter = _counter(
    'paysync_sweep_downgrades',
    'Entitlements downgraded by the expiry sweep',
    ['field']
)
