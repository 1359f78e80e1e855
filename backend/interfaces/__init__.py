from .metrics_feed import MetricsFeed

__all__ = ["MetricsFeed"]
