"""
Monitoring and observability package.

This package contains webhook alerting and Prometheus metrics.
"""

from vaultsync.monitoring.alerting import Alert, AlertConfig, AlertManager, AlertSeverity, AlertType
from vaultsync.monitoring.metrics import VaultMetrics, start_metrics_server

__all__ = [
    "AlertSeverity",
    "AlertType",
    "Alert",
    "AlertConfig",
    "AlertManager",
    "VaultMetrics",
    "start_metrics_server",
]
