"""
Prometheus metrics for the identity and routing core.

Exposed at /metrics by main.py via prometheus_client.make_asgi_app().
"""

from prometheus_client import Counter, Gauge, Histogram


# ============================================================================
# Connection routing
# ============================================================================

tenant_pools_active = Gauge(
    'storegate_tenant_pools_active',
    'Number of cached tenant connection pools'
)

tenant_pools_created_total = Counter(
    'storegate_tenant_pools_created_total',
    'Total number of tenant connection pools opened'
)

tenant_pools_evicted_total = Counter(
    'storegate_tenant_pools_evicted_total',
    'Total number of tenant connection pools closed',
    ['reason']  # idle, invalidated, shutdown
)

tenant_pool_open_seconds = Histogram(
    'storegate_tenant_pool_open_seconds',
    'Time to open and probe a tenant connection pool',
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)


# ============================================================================
# Authentication
# ============================================================================

login_attempts_total = Counter(
    'storegate_login_attempts_total',
    'Login attempts by outcome',
    ['outcome']  # success, invalid_credentials, locked, disabled, tenant_suspended, sync_error
)

request_auth_failures_total = Counter(
    'storegate_request_auth_failures_total',
    'Rejected authenticated requests',
    ['reason']  # missing_token, invalid_token, session_revoked, user_inactive, routing
)
