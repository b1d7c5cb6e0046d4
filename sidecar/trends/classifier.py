"""
Longitudinal trends across a patient's RHC studies.

Only the first and last point of a series are compared; intermediate studies
are ignored. Insight rules are independent, so several may fire at once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence

DEFAULT_EPS = 1e-9


class TrendMetric(str, Enum):
    RAP = "RAP"
    MPAP = "MPAP"
    PCWP = "PCWP"
    CI = "CI"
    PVR = "PVR"
    CPO = "CPO"


class TrendDirection(str, Enum):
    INCREASING = "INCREASING"
    DECREASING = "DECREASING"
    STABLE = "STABLE"
    INSUFFICIENT = "INSUFFICIENT"


class TrendInsight(str, Enum):
    POST_CAPILLARY_PATTERN = "POST_CAPILLARY_PATTERN"
    PRE_CAPILLARY_PATTERN = "PRE_CAPILLARY_PATTERN"
    RIGHT_CONGESTION_LOW_FLOW = "RIGHT_CONGESTION_LOW_FLOW"
    FAVORABLE_RESPONSE = "FAVORABLE_RESPONSE"
    NONE = "NONE"


@dataclass(frozen=True)
class MetricSpec:
    metric: TrendMetric
    column: str
    label: str
    unit: str
    decimals: int


# Snapshot column, display label/unit and decimals per metric
METRICS: tuple[MetricSpec, ...] = (
    MetricSpec(TrendMetric.RAP, "rap_mmhg", "RAP", "mmHg", 0),
    MetricSpec(TrendMetric.MPAP, "mpap_mmhg", "mPAP", "mmHg", 0),
    MetricSpec(TrendMetric.PCWP, "pawp_mmhg", "PCWP", "mmHg", 0),
    MetricSpec(TrendMetric.CI, "cardiac_index_lmin_m2", "CI", "L/min/m2", 1),
    MetricSpec(TrendMetric.PVR, "pvr_wood", "PVR", "WU", 1),
    MetricSpec(TrendMetric.CPO, "cardiac_power_w", "CPO", "W", 2),
)


@dataclass(frozen=True)
class TrendPoint:
    x_millis: int
    y: float


@dataclass
class TrendSeries:
    metric: TrendMetric
    points: list[TrendPoint] = field(default_factory=list)
    direction: TrendDirection = TrendDirection.INSUFFICIENT


@dataclass
class Trends:
    series: list[TrendSeries]
    directions: dict[TrendMetric, TrendDirection]
    insights: list[TrendInsight]


@dataclass(frozen=True)
class SummaryRow:
    metric: TrendMetric
    label: str
    value: Optional[float]
    decimals: int
    unit: str


@dataclass
class LatestSummary:
    study_id: str
    started_at_millis: int
    rows: list[SummaryRow]

    @property
    def has_any_value(self) -> bool:
        return any(r.value is not None for r in self.rows)


def classify_trend(points: Sequence[TrendPoint], eps: float = DEFAULT_EPS) -> TrendDirection:
    if len(points) < 2:
        return TrendDirection.INSUFFICIENT
    delta = points[-1].y - points[0].y
    if abs(delta) < eps:
        return TrendDirection.STABLE
    if delta > 0:
        return TrendDirection.INCREASING
    return TrendDirection.DECREASING


def detect_insights(directions: Mapping[TrendMetric, TrendDirection]) -> list[TrendInsight]:
    """Apply the clinical pattern rules. Returns ``[NONE]`` when nothing matches."""
    up = TrendDirection.INCREASING
    down = TrendDirection.DECREASING

    mpap = directions.get(TrendMetric.MPAP)
    pcwp = directions.get(TrendMetric.PCWP)
    pvr = directions.get(TrendMetric.PVR)
    rap = directions.get(TrendMetric.RAP)
    ci = directions.get(TrendMetric.CI)
    cpo = directions.get(TrendMetric.CPO)

    insights: list[TrendInsight] = []
    if mpap == up and pcwp == up:
        insights.append(TrendInsight.POST_CAPILLARY_PATTERN)
    if mpap == up and pvr == up and pcwp != up:
        insights.append(TrendInsight.PRE_CAPILLARY_PATTERN)
    if rap == up and (ci == down or cpo == down):
        insights.append(TrendInsight.RIGHT_CONGESTION_LOW_FLOW)
    if pvr == down and (ci == up or cpo == up):
        insights.append(TrendInsight.FAVORABLE_RESPONSE)

    if not insights:
        insights.append(TrendInsight.NONE)
    return insights


def _points_of(studies: Iterable[Mapping[str, Any]], column: str) -> list[TrendPoint]:
    points = []
    for item in studies:
        rhc = item.get("rhc")
        if not rhc:
            continue
        y = rhc.get(column)
        if y is None:
            continue
        points.append(TrendPoint(x_millis=item["study"]["started_at_millis"], y=float(y)))
    points.sort(key=lambda p: p.x_millis)
    return points


def build_trends(studies: Sequence[Mapping[str, Any]], eps: float = DEFAULT_EPS) -> Optional[Trends]:
    """Trends over ``[{"study": ..., "rhc": ...}, ...]``; None for fewer than two studies."""
    if len(studies) < 2:
        return None

    series = []
    directions: dict[TrendMetric, TrendDirection] = {}
    for spec in METRICS:
        points = _points_of(studies, spec.column)
        direction = classify_trend(points, eps)
        series.append(TrendSeries(metric=spec.metric, points=points, direction=direction))
        directions[spec.metric] = direction

    return Trends(series=series, directions=directions, insights=detect_insights(directions))


def latest_summary(study: Mapping[str, Any], rhc: Optional[Mapping[str, Any]]) -> LatestSummary:
    rows = [
        SummaryRow(
            metric=spec.metric,
            label=spec.label,
            value=rhc.get(spec.column) if rhc else None,
            decimals=spec.decimals,
            unit=spec.unit,
        )
        for spec in METRICS
    ]
    return LatestSummary(
        study_id=study["id"],
        started_at_millis=study["started_at_millis"],
        rows=rows,
    )


def last_update_millis(study: Mapping[str, Any], rhc: Optional[Mapping[str, Any]]) -> Optional[int]:
    """Most recent change to a study or its snapshot, None if never recorded."""
    latest = max(study.get("updated_at_millis") or 0, (rhc or {}).get("updated_at_millis") or 0)
    return latest if latest > 0 else None
