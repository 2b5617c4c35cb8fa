"""Health diagnostics module."""

from .checks import HealthCheck, HealthReport, HealthStatus, run_health_checks

__all__ = ["HealthCheck", "HealthReport", "HealthStatus", "run_health_checks"]
