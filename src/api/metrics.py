"""
Prometheus metrics for monitoring API performance and behavior.
"""
from prometheus_client import Counter, Histogram

# Request metrics
zone_requests_total = Counter(
    'zone_requests_total',
    'Total number of zone query requests',
    ['endpoint', 'status']
)

# Latency metrics
request_duration_seconds = Histogram(
    'request_duration_seconds',
    'Request latency in seconds',
    ['endpoint']
)

# Search metrics
zones_returned_total = Counter(
    'zones_returned_total',
    'Zones returned by search and sub-zone queries',
    ['endpoint']
)

# Index metrics
index_operations_total = Counter(
    'index_operations_total',
    'Total spatial index operations',
    ['operation', 'status']
)

index_reloads_total = Counter(
    'index_reloads_total',
    'Reloads of the spatial index from its backing store',
    ['status']
)
