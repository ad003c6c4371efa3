"""ChurnWatch — Daily Metric Registry.

Defines the four per-account daily metrics, the DailyMetric columns they
populate, and how each one rolls up into a month. Extraction jobs, the
monthly rollup and the risk engine all read metric metadata from here.
"""

from enum import Enum
from typing import Dict


class AggregationType(str, Enum):
    """How daily values combine into a monthly figure."""

    SUM = "sum"  # Cumulative activity: spend, messages, redemptions
    MEAN = "mean"  # Point-in-time gauge: active subscribers


class MetricDefinition:
    """Describes a single daily metric."""

    def __init__(
        self,
        name: str,
        aggregation: AggregationType,
        unit: str = "",
        description: str = "",
    ):
        self.name = name
        self.aggregation = aggregation
        self.unit = unit
        self.description = description

    @property
    def column(self) -> str:
        """DailyMetric column holding the value."""
        return self.name

    @property
    def timestamp_column(self) -> str:
        """DailyMetric column recording when the value was last extracted."""
        return f"{self.name}_updated_at"

    @property
    def is_gauge(self) -> bool:
        return self.aggregation == AggregationType.MEAN

    def __repr__(self) -> str:
        return f"<Metric {self.name} ({self.aggregation.value})>"


SPEND = "spend"
MESSAGES_DELIVERED = "messages_delivered"
REDEMPTIONS = "redemptions"
ACTIVE_SUBSCRIBERS = "active_subscribers"

DAILY_METRICS: Dict[str, MetricDefinition] = {
    SPEND: MetricDefinition(
        SPEND, AggregationType.SUM, "currency", "Revenue billed to the account"
    ),
    MESSAGES_DELIVERED: MetricDefinition(
        MESSAGES_DELIVERED, AggregationType.SUM, "count", "Text messages delivered"
    ),
    REDEMPTIONS: MetricDefinition(
        REDEMPTIONS, AggregationType.SUM, "count", "Coupons redeemed"
    ),
    ACTIVE_SUBSCRIBERS: MetricDefinition(
        ACTIVE_SUBSCRIBERS,
        AggregationType.MEAN,
        "count",
        "Subscribers active at end of day",
    ),
}


def get_metric(name: str) -> MetricDefinition:
    """Look up a metric by name, raising KeyError for unknown names."""
    try:
        return DAILY_METRICS[name]
    except KeyError:
        raise KeyError(
            f"Unknown metric '{name}'. Expected one of: {', '.join(DAILY_METRICS)}"
        ) from None


def metric_names() -> list[str]:
    """Return metric names in extraction order."""
    return list(DAILY_METRICS)
