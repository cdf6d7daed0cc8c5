"""
Monitoring and observability integrations.

Provides:
- Prometheus metrics for tenant pools and authentication
"""
