"""Credit pricing for captioning jobs.

Billing is per started minute: 61 seconds costs two minutes. Each requested
translation language adds its own per-minute rate on top of the base rate.
"""

from __future__ import annotations

import math

from ..core.errors import InvalidInputError
from ..models import CreditEstimate

BASE_RATE = 10
TRANSLATION_RATE = 5


def _billable_minutes(duration_seconds: float) -> int:
    if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, (int, float)):
        raise InvalidInputError("duration_seconds must be a number")
    if math.isnan(duration_seconds) or math.isinf(duration_seconds):
        raise InvalidInputError("duration_seconds must be finite")
    if duration_seconds < 0:
        raise InvalidInputError("duration_seconds must not be negative")
    return math.ceil(duration_seconds / 60)


def _check_language_count(translation_language_count: int) -> None:
    if isinstance(translation_language_count, bool) or not isinstance(
        translation_language_count, int
    ):
        raise InvalidInputError("translation_language_count must be an integer")
    if translation_language_count < 0:
        raise InvalidInputError("translation_language_count must not be negative")


def calculate_required_credits(
    duration_seconds: float,
    translation_language_count: int = 0,
    *,
    base_rate: int = BASE_RATE,
    translation_rate: int = TRANSLATION_RATE,
) -> int:
    minutes = _billable_minutes(duration_seconds)
    _check_language_count(translation_language_count)
    return minutes * base_rate + minutes * translation_rate * translation_language_count


def estimate_credits(
    duration_seconds: float,
    translation_language_count: int = 0,
    *,
    base_rate: int = BASE_RATE,
    translation_rate: int = TRANSLATION_RATE,
) -> CreditEstimate:
    """Same computation as :func:`calculate_required_credits`, itemised."""
    minutes = _billable_minutes(duration_seconds)
    _check_language_count(translation_language_count)
    base_credits = minutes * base_rate
    translation_credits = minutes * translation_rate * translation_language_count
    return CreditEstimate(
        duration_seconds=duration_seconds,
        duration_minutes=minutes,
        translation_language_count=translation_language_count,
        base_credits=base_credits,
        translation_credits=translation_credits,
        total_credits=base_credits + translation_credits,
    )
