"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY

# Webhook metrics
try:
    webhook_events_counter = Counter(
        'donation_ledger_webhook_events_total',
        'Total number of provider events handled, by canonical type and outcome',
        ['event_type', 'outcome']
    )
except ValueError:
    webhook_events_counter = REGISTRY._names_to_collectors.get('donation_ledger_webhook_events_total')

# Remote re-fetch metrics
try:
    provider_fetches_counter = Counter(
        'donation_ledger_provider_fetches_total',
        'Total number of remote re-fetches performed while reconciling events',
        ['object', 'status']
    )
except ValueError:
    provider_fetches_counter = REGISTRY._names_to_collectors.get('donation_ledger_provider_fetches_total')

# Ledger write metrics
try:
    ledger_writes_counter = Counter(
        'donation_ledger_writes_total',
        'Total number of ledger writes, by entity and outcome',
        ['entity', 'outcome']
    )
except ValueError:
    ledger_writes_counter = REGISTRY._names_to_collectors.get('donation_ledger_writes_total')
