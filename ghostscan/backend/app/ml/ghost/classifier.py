"""
GhostScan Ghost Classifier — formula ghost-v1.

Scores how likely a follower is disengaged. Every feature lies in [0, 1]
with 1 meaning ghost-like:

  recency     r = 1.0 when the follower never interacted,
                  else min(days_since_last_interaction / 180, 1)
  engagement  e = 1 / (1 + (likes + 2 * comments) / 3)
  newness     n = max(0, 1 - account_age_days / 90)
                  (account_created_at, else follower_since, else 0)

  score = 0.45 r + 0.40 e + 0.15 n
          + 0.05 if private
          - 0.25 if verified
  clamped to [0, 1], rounded to 4 decimals.

The score is a pure function of the entry and the reference time ``as_of``
(the scan's start time): no randomness, no wall-clock reads. The 0.75
ghost threshold is applied by consumers, never here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import numpy as np

from app.services.ingest.export_parser import FollowerEntry

logger = logging.getLogger(__name__)

CLASSIFIER_VERSION = "ghost-v1"

SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class GhostWeights:
    recency: float = 0.45
    engagement: float = 0.40
    newness: float = 0.15
    private_bonus: float = 0.05
    verified_discount: float = 0.25
    recency_horizon_days: float = 180.0
    engagement_scale: float = 3.0
    comment_weight: float = 2.0
    newness_horizon_days: float = 90.0


@dataclass(frozen=True)
class GhostFeatures:
    recency: float
    engagement: float
    newness: float


class GhostClassifier:
    """Deterministic weighted-feature scorer."""

    version = CLASSIFIER_VERSION

    def __init__(self, weights: Optional[GhostWeights] = None):
        self.weights = weights or GhostWeights()

    def features(self, entry: FollowerEntry, as_of: datetime) -> GhostFeatures:
        w = self.weights

        if entry.last_interaction_at is None:
            recency = 1.0
        else:
            days = max(_days_between(entry.last_interaction_at, as_of), 0.0)
            recency = min(days / w.recency_horizon_days, 1.0)

        interactions = max(entry.total_likes, 0) + w.comment_weight * max(entry.total_comments, 0)
        engagement = 1.0 / (1.0 + interactions / w.engagement_scale)

        born = entry.account_created_at or entry.follower_since
        if born is None:
            newness = 0.0
        else:
            age = max(_days_between(born, as_of), 0.0)
            newness = max(0.0, 1.0 - age / w.newness_horizon_days)

        return GhostFeatures(recency=recency, engagement=engagement, newness=newness)

    def score(self, entry: FollowerEntry, as_of: datetime) -> float:
        w = self.weights
        f = self.features(entry, as_of)

        score = w.recency * f.recency + w.engagement * f.engagement + w.newness * f.newness
        if entry.is_private:
            score += w.private_bonus
        if entry.is_verified:
            score -= w.verified_discount

        return round(min(max(score, 0.0), 1.0), 4)


def _days_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / SECONDS_PER_DAY


def score_histogram(scores: Iterable[float], buckets: int = 10) -> List[int]:
    """Counts per equal-width bucket over [0, 1]; 1.0 lands in the last bucket."""
    values = np.fromiter(scores, dtype=float)
    counts, _ = np.histogram(values, bins=buckets, range=(0.0, 1.0))
    return [int(c) for c in counts]


def score_summary(scores: Iterable[float]) -> Dict[str, float]:
    values = np.fromiter(scores, dtype=float)
    if values.size == 0:
        return {"mean": 0.0, "median": 0.0, "p90": 0.0}
    return {
        "mean": round(float(values.mean()), 4),
        "median": round(float(np.median(values)), 4),
        "p90": round(float(np.percentile(values, 90)), 4),
    }


ghost_classifier = GhostClassifier()
