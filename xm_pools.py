"""
X Match Forecaster — Record Weighting & Subset Pools

Every historical record is weighted by ownership: the player being predicted
gets TARGET_WEIGHT per record, everyone else OTHER_WEIGHT. The population keeps
a cold-start player's estimate sane; the player's own history dominates once
there is enough of it.

Pools are then carved out of the weighted set:
  mode pool    exact mode match, applied first (falls back to everything)
  weapon pool  exact weapon label match within the mode pool
  map pool     any overlap between the record's two maps and the condition's

Map matching is map-level, not pair-level: a record on (A, B) counts toward a
condition on (B, C).
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from xm_config import OTHER_WEIGHT, TARGET_WEIGHT
from xm_records import MatchRecord, PredictionCondition

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class WeightedRecord:
    record: MatchRecord
    weight: float


def build_weighted_records(
    records: Iterable[MatchRecord],
    target_user_id: Optional[int],
    target_weight: float = TARGET_WEIGHT,
    other_weight: float = OTHER_WEIGHT,
) -> List[WeightedRecord]:
    """
    Weight each record by whether target_user_id owns it. With no target user
    (anonymous query) every record gets other_weight.
    """
    out = []
    for r in records:
        own = target_user_id is not None and r.user_id == target_user_id
        out.append(WeightedRecord(record=r, weight=target_weight if own else other_weight))
    return out


# ── Predicates ────────────────────────────────────────────────────────────────

def mode_matches(record: MatchRecord, condition: PredictionCondition) -> bool:
    return record.mode == condition.mode


def weapon_matches(record: MatchRecord, condition: PredictionCondition) -> bool:
    return record.weapon == condition.weapon


def map_matches(record: MatchRecord, condition: PredictionCondition) -> bool:
    """True when either stored map equals either condition map."""
    return not record.map_pair.isdisjoint(condition.maps)


# ── Pools ─────────────────────────────────────────────────────────────────────

def filter_pool(items: Sequence[WeightedRecord], predicate, condition: PredictionCondition) -> List[WeightedRecord]:
    return [x for x in items if predicate(x.record, condition)]


def mode_pool(
    items: Sequence[WeightedRecord],
    condition: PredictionCondition,
) -> Tuple[List[WeightedRecord], List[WeightedRecord]]:
    """
    Returns (mode_matched, base_pool). base_pool is mode_matched unless that is
    empty, in which case it is the whole weighted set.
    """
    matched = filter_pool(items, mode_matches, condition)
    if matched:
        return matched, matched
    log.debug(f"No records for mode {condition.mode!r}; using all {len(items)} records")
    return matched, list(items)


def xp_values(items: Iterable[WeightedRecord]) -> List[Tuple[float, float]]:
    """(end_xp − start_xp, weight) for each record."""
    return [(float(x.record.xp_delta), x.weight) for x in items]
