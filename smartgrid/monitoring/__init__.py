"""
Monitoring package - Prometheus metrics and the management HTTP API.
"""

from smartgrid.monitoring.metrics_rich import GridMetrics

__all__ = ["GridMetrics"]
