"""
Prometheus metrics for the grid engine.

Organized into: lifecycle, execution, positions, strategy, operational.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class GridMetrics:
    """Grid engine metrics on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self._registry = reg

        # === Lifecycle Metrics ===
        self.grids_created = Counter(
            'grids_created_total',
            'Grids created from signals',
            labelnames=['pair', 'direction'],
            registry=reg
        )
        self.grids_rejected = Counter(
            'grids_rejected_total',
            'Grid creations rejected',
            labelnames=['reason'],
            registry=reg
        )
        self.grids_completed = Counter(
            'grids_completed_total',
            'Grids completed',
            labelnames=['pair', 'reason'],
            registry=reg
        )
        self.active_grids = Gauge(
            'active_grids',
            'Grids currently ACTIVE',
            registry=reg
        )

        # === Execution Metrics ===
        self.orders_submitted = Counter(
            'orders_submitted_total',
            'Orders accepted by the venue',
            labelnames=['pair', 'kind'],
            registry=reg
        )
        self.orders_cancelled = Counter(
            'orders_cancelled_total',
            'Orders cancelled on the venue',
            labelnames=['pair', 'kind'],
            registry=reg
        )
        self.venue_errors = Counter(
            'venue_errors_total',
            'Failed or timed-out venue calls',
            labelnames=['operation'],
            registry=reg
        )
        self.venue_latency_ms = Histogram(
            'venue_latency_ms',
            'Venue call latency (milliseconds)',
            labelnames=['operation'],
            buckets=[10, 50, 100, 250, 500, 1000, 2500, 5000, 10000],
            registry=reg
        )

        # === Position Metrics ===
        self.positions_opened = Counter(
            'positions_opened_total',
            'Positions opened by entry fills',
            labelnames=['pair'],
            registry=reg
        )
        self.positions_closed = Counter(
            'positions_closed_total',
            'Positions closed',
            labelnames=['pair', 'reason'],
            registry=reg
        )
        self.realized_profit = Gauge(
            'realized_profit',
            'Realized profit of the active grid (quote currency)',
            labelnames=['pair'],
            registry=reg
        )
        self.drawdown_pct = Gauge(
            'drawdown_pct',
            'Current unrealized drawdown of open positions (%)',
            labelnames=['pair'],
            registry=reg
        )

        # === Strategy Metrics ===
        self.atr_value = Gauge(
            'atr_value',
            'Latest ATR',
            labelnames=['pair'],
            registry=reg
        )
        self.grid_step = Gauge(
            'grid_step',
            'Current grid step (price units)',
            labelnames=['pair'],
            registry=reg
        )
        self.grid_adjustments = Counter(
            'grid_adjustments_total',
            'Volatility re-adaptations',
            labelnames=['pair'],
            registry=reg
        )

        # === Operational Metrics ===
        self.tick_duration_ms = Histogram(
            'tick_duration_ms',
            'Reconciliation tick duration (milliseconds)',
            buckets=[10, 50, 100, 250, 500, 1000, 5000, 30000],
            registry=reg
        )
        self.tick_errors = Counter(
            'tick_errors_total',
            'Per-grid tick failures',
            registry=reg
        )

    def get_registry(self) -> CollectorRegistry:
        return self._registry

    def render(self) -> bytes:
        """Prometheus text exposition."""
        return generate_latest(self._registry)
