"""Health verification for a freshly deployed stack.

This package provides:
- HealthVerifier: retried service/readiness checks plus resource and log checks
- probe_http / SystemResources: the probes it uses by default
"""

from analytics_deploy.health.probes import ResourceProbe, SystemResources, probe_http
from analytics_deploy.health.verifier import HealthVerifier

__all__ = [
    "HealthVerifier",
    "ResourceProbe",
    "SystemResources",
    "probe_http",
]
