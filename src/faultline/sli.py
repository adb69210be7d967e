"""Service level indicators over recovery metric history."""

from __future__ import annotations

import statistics
from typing import TYPE_CHECKING

from pydantic import Field

from faultline.models import CamelModel, RecoveryMetric

if TYPE_CHECKING:
    from collections.abc import Sequence

RECENT_METRICS = 10


class SLIReport(CamelModel):
    """Recovery SLIs for one workload.

    ``success_rate`` is a percentage rounded to two decimals.  The average
    MTTR only considers successful recoveries while the median is taken
    over every recorded metric, failed ones contributing their zero MTTR.
    """

    total_recoveries: int = 0
    successful_recoveries: int = 0
    success_rate: float = 100.0
    avg_mttr_ms: int = Field(default=0, alias="avgMTTRMs")
    median_mttr_ms: float = Field(default=0, alias="medianMTTRMs")
    last_recovery: str | None = None
    recent_metrics: list[RecoveryMetric] = Field(default_factory=list)


def calculate_sli(metrics: Sequence[RecoveryMetric]) -> SLIReport:
    """Reduce a metric history to an ``SLIReport``.

    Args:
        metrics: Recovery metrics, oldest first.

    Returns:
        The aggregated report; an empty history yields a 100% success rate.
    """
    if not metrics:
        return SLIReport()

    total = len(metrics)
    successful = [m for m in metrics if m.recovered]
    avg_mttr = round(sum(m.mttr_ms for m in successful) / len(successful)) if successful else 0

    return SLIReport(
        total_recoveries=total,
        successful_recoveries=len(successful),
        success_rate=round(len(successful) / total * 100, 2),
        avg_mttr_ms=avg_mttr,
        median_mttr_ms=statistics.median(m.mttr_ms for m in metrics),
        last_recovery=metrics[-1].timestamp,
        recent_metrics=list(metrics[-RECENT_METRICS:]),
    )
