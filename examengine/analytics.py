"""
Student dashboard analytics over graded results.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from .models import Result
from .store import SessionStore

TREND_LENGTH = 15
DASHBOARD_MODULES = ("reading", "listening", "writing")


@dataclass
class TrendPoint:
    created_at: Optional[datetime]
    band_score: float
    module: str


@dataclass
class ModuleAverage:
    module: str
    average_band: float
    tests_taken: int


@dataclass
class StudentAnalytics:
    trend: List[TrendPoint]
    modules: List[ModuleAverage]


def student_analytics(results: List[Result], trend_length: int = TREND_LENGTH) -> StudentAnalytics:
    """
    Band trend and per-module averages of a student's results.

    Only results with a band score count, so manual results still waiting
    for review are left out.

    Args:
        results: The student's results, oldest first
        trend_length: Number of most recent results in the trend

    Returns:
        StudentAnalytics with the trend oldest first and one average per
        dashboard module (0.0 and 0 tests when the module has no results)
    """
    graded = [r for r in results if r.band_score is not None]

    recent = graded[-trend_length:] if trend_length > 0 else []
    trend = [TrendPoint(r.created_at, r.band_score, r.module) for r in recent]

    modules = list(DASHBOARD_MODULES)
    modules.extend(sorted({r.module for r in graded} - set(modules)))

    averages = []
    for module in modules:
        bands = [r.band_score for r in graded if r.module == module]
        average = round(sum(bands) / len(bands), 1) if bands else 0.0
        averages.append(ModuleAverage(module, average, len(bands)))

    return StudentAnalytics(trend=trend, modules=averages)


def analytics_for_user(store: SessionStore, user_id: str) -> StudentAnalytics:
    """Analytics of one student's stored results."""
    return student_analytics(store.list_results(user_id=user_id))
