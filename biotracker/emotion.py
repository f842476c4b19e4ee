"""
Emotion classifier adapter.

Classifiers are external; they hand back a mapping of category → score.
This module normalises that mapping onto the seven canonical categories and
picks the dominant one.
"""

from __future__ import annotations

import math
from typing import Any, Mapping, Optional

from biotracker.geometry import clamp01
from biotracker.models import EMOTION_CATEGORIES, EmotionScores


def _score(raw: Mapping[str, Any], key: str) -> float:
    value = raw.get(key, 0.0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return clamp01(float(value))


def classify_emotions(raw: Mapping[str, Any], timestamp: Optional[float] = None) -> EmotionScores:
    """Build ``EmotionScores`` from raw classifier output.

    Ties go to the earlier category in canonical order, so an all-zero input
    yields ``happy`` with score 0.
    """
    scores = {c: _score(raw, c) for c in EMOTION_CATEGORIES}
    dominant = EMOTION_CATEGORIES[0]
    for category in EMOTION_CATEGORIES[1:]:
        if scores[category] > scores[dominant]:
            dominant = category
    return EmotionScores(
        **scores,
        dominant=dominant,
        dominant_score=scores[dominant],
        timestamp=timestamp,
    )
