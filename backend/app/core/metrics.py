"""Prometheus metrics for the application"""
from prometheus_client import Counter, Histogram, REGISTRY

# Webhook pipeline metrics
try:
    notifications_counter = Counter(
        'petstore_webhook_notifications_total',
        'Total number of webhook notifications by type and outcome',
        ['type', 'outcome']
    )
except ValueError:
    notifications_counter = REGISTRY._names_to_collectors.get('petstore_webhook_notifications_total')

try:
    processing_seconds_histogram = Histogram(
        'petstore_webhook_processing_seconds',
        'Time spent handling a webhook notification',
        ['outcome'],
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
    )
except ValueError:
    processing_seconds_histogram = REGISTRY._names_to_collectors.get('petstore_webhook_processing_seconds')

# Entity resolution metrics
try:
    resolution_counter = Counter(
        'petstore_webhook_resolution_total',
        'Entity resolution attempts by method (none = miss)',
        ['method']
    )
except ValueError:
    resolution_counter = REGISTRY._names_to_collectors.get('petstore_webhook_resolution_total')

try:
    reconcile_conflicts_counter = Counter(
        'petstore_webhook_reconcile_conflicts_total',
        'Status transitions rejected by the monotonicity rule',
        ['entity_type']
    )
except ValueError:
    reconcile_conflicts_counter = REGISTRY._names_to_collectors.get('petstore_webhook_reconcile_conflicts_total')

# Idempotency metrics
try:
    idempotency_cache_hits_counter = Counter(
        'petstore_idempotency_cache_hits_total',
        'Operations answered from a cached idempotent result'
    )
except ValueError:
    idempotency_cache_hits_counter = REGISTRY._names_to_collectors.get('petstore_idempotency_cache_hits_total')

try:
    idempotency_lock_timeouts_counter = Counter(
        'petstore_idempotency_lock_timeouts_total',
        'Operations that gave up waiting for a distributed lock'
    )
except ValueError:
    idempotency_lock_timeouts_counter = REGISTRY._names_to_collectors.get('petstore_idempotency_lock_timeouts_total')
