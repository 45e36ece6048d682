"""Indicator helpers: safe ratios, threshold bands and period comparison."""

from decimal import Decimal
from typing import NamedTuple, Optional, Union

from fincontrol.engines.money import percent_change
from fincontrol.models.reports import (
    Comparison,
    Indicator,
    IndicatorStatus,
    RatioSentinel,
    Trend,
)

Number = Union[Decimal, float, int]


class IndicatorSpec(NamedTuple):
    key: str
    label: str
    group: str
    unit: str
    green: float
    yellow: float
    inverse: bool = False


def safe_ratio(
    numerator: Number,
    denominator: Number,
    scale: Number = 1,
    positive_denominator: bool = False,
) -> tuple[Optional[float], Optional[RatioSentinel]]:
    """
    numerator / denominator * scale, or a sentinel when the denominator is
    zero (or, with `positive_denominator`, not positive): infinite when the
    numerator is positive, undefined otherwise.
    """
    missing = denominator <= 0 if positive_denominator else denominator == 0
    if missing:
        if numerator > 0:
            return None, RatioSentinel.INFINITE
        return None, RatioSentinel.UNDEFINED
    return float(Decimal(numerator) / Decimal(denominator) * Decimal(scale)), None


def band(
    value: Optional[float],
    sentinel: Optional[RatioSentinel],
    green: float,
    yellow: float,
    inverse: bool,
) -> IndicatorStatus:
    if sentinel == RatioSentinel.INFINITE:
        return IndicatorStatus.DANGER if inverse else IndicatorStatus.SUCCESS
    if sentinel is not None or value is None:
        return IndicatorStatus.NEUTRAL
    if inverse:
        if value <= green:
            return IndicatorStatus.SUCCESS
        if value <= yellow:
            return IndicatorStatus.WARNING
        return IndicatorStatus.DANGER
    if value >= green:
        return IndicatorStatus.SUCCESS
    if value >= yellow:
        return IndicatorStatus.WARNING
    return IndicatorStatus.DANGER


def build_indicator(
    spec: IndicatorSpec,
    ratio: tuple[Optional[float], Optional[RatioSentinel]],
) -> Indicator:
    value, sentinel = ratio
    return Indicator(
        key=spec.key,
        label=spec.label,
        group=spec.group,
        unit=spec.unit,
        value=value,
        sentinel=sentinel,
        green=spec.green,
        yellow=spec.yellow,
        inverse=spec.inverse,
        status=band(value, sentinel, spec.green, spec.yellow, spec.inverse),
    )


def _trend(change: Optional[float]) -> Trend:
    if change is None or change == 0:
        return Trend.STABLE
    return Trend.UP if change > 0 else Trend.DOWN


def compare_indicator(current: Indicator, previous: Optional[Indicator]) -> Indicator:
    """
    Attach the previous period's value and the trend.

    No change is computed against a sentinel or a zero previous value.
    `is_improvement` reads the trend against the indicator's direction.
    """
    if previous is None:
        return current
    change = None
    if (
        current.value is not None
        and previous.value is not None
        and previous.value != 0
    ):
        change = (current.value - previous.value) / abs(previous.value) * 100
    trend = _trend(change)
    improvement = None
    if trend != Trend.STABLE:
        improvement = (trend == Trend.UP) != current.inverse
    return current.model_copy(update={
        "previous_value": previous.value,
        "previous_sentinel": previous.sentinel,
        "change_percent": change,
        "trend": trend,
        "is_improvement": improvement,
    })


def compare_amounts(key: str, current: Decimal, previous: Decimal) -> Comparison:
    change = percent_change(current, previous)
    return Comparison(
        key=key,
        current=current,
        previous=previous,
        change_percent=change,
        trend=_trend(change),
    )
