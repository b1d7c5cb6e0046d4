"""Trend and insight classification across repeated RHC studies."""

from trends.classifier import (
    LatestSummary,
    TrendDirection,
    TrendInsight,
    TrendMetric,
    TrendPoint,
    Trends,
    build_trends,
    classify_trend,
    detect_insights,
    latest_summary,
)

__all__ = [
    "LatestSummary",
    "TrendDirection",
    "TrendInsight",
    "TrendMetric",
    "TrendPoint",
    "Trends",
    "build_trends",
    "classify_trend",
    "detect_insights",
    "latest_summary",
]
