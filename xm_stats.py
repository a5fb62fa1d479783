"""
X Match Forecaster — Smoothed Rates & Weighted Aggregates

Small-sample win rates are noisy: 3-0 on a weapon says very little. Every
weapon- and map-specific rate is therefore pulled toward a prior rate by a
fixed number of pseudo-games (Beta prior), and every aggregate over records
carries the per-record weight assigned by the personal/population blend.

Weighted samples also need an honest sample size for interval sizing. A pool
of 50 down-weighted records is worth fewer than 50 observations; the Kish
effective sample size captures that:

    n_eff = (Σw)² / Σ(w²)

which equals n when all weights are equal.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple

import numpy as np

from xm_config import DEFAULT_PRIOR_STRENGTH

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class WinLoss:
    """Weighted win/loss totals. Continuous, not integer."""
    wins:   float = 0.0
    losses: float = 0.0

    @property
    def games(self) -> float:
        return self.wins + self.losses

    def rate(self, default: float = 0.5) -> float:
        return self.wins / self.games if self.games > 0 else default


@dataclass(frozen=True)
class WeightedStats:
    mean:  float = 0.0
    std:   float = 0.0
    n_eff: float = 0.0


def clamp01(x: float) -> float:
    return float(min(1.0, max(0.0, x)))


def smoothed_rate(
    wins: float,
    losses: float,
    prior_rate: float,
    strength: float = DEFAULT_PRIOR_STRENGTH,
) -> float:
    """
    Beta-prior smoothed win rate.

    The prior contributes `strength` pseudo-games split by prior_rate. With no
    observations the result is exactly prior_rate; as wins+losses grows the
    result converges to the raw rate.
    """
    if wins == 0 and losses == 0:
        return prior_rate
    prior_wins = prior_rate * strength
    prior_losses = (1.0 - prior_rate) * strength
    w = wins + prior_wins
    l = losses + prior_losses
    return w / (w + l)


def weighted_win_loss(items: Iterable) -> WinLoss:
    """Sum wins and losses of weighted records, each scaled by its weight."""
    wins = 0.0
    losses = 0.0
    for item in items:
        wins += item.record.wins * item.weight
        losses += item.record.losses * item.weight
    return WinLoss(wins=wins, losses=losses)


def weighted_mean_std(values: Sequence[Tuple[float, float]]) -> WeightedStats:
    """
    Weighted mean, weighted population std and Kish effective sample size
    of (value, weight) pairs.

    Empty input or non-positive total weight returns all zeros; callers must
    floor n_eff before dividing by it.
    """
    if len(values) == 0:
        return WeightedStats()

    arr = np.asarray(values, dtype=float).reshape(-1, 2)
    v, w = arr[:, 0], arr[:, 1]
    sum_w = w.sum()
    if sum_w <= 0:
        return WeightedStats()

    mean = float(np.dot(v, w) / sum_w)
    variance = float(np.dot(w, (v - mean) ** 2) / sum_w)
    sum_w2 = float(np.dot(w, w))
    n_eff = float(sum_w * sum_w / sum_w2) if sum_w2 > 0 else 0.0
    return WeightedStats(mean=mean, std=float(np.sqrt(max(variance, 0.0))), n_eff=n_eff)
