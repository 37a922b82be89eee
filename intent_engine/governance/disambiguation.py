"""
Disambiguation Policy — auto-select or hand the ranked list back.

Pure function; no I/O, no state.
auto_select iff:
  - there is at least one candidate
  - top confidence >= min_confidence
  - margin over the runner-up >= min_margin (a lone candidate's margin is its confidence)
Anything else is ambiguous. Zero candidates is ambiguous with no_matches set.
"""

from typing import List

from pydantic import BaseModel

from intent_engine.models.entities import CandidateEntity


class DisambiguationThresholds(BaseModel):
    min_confidence: float = 0.80
    min_margin: float = 0.15
    fallback_penalty: float = 0.05


class Disambiguation(BaseModel):
    auto_select: bool
    ambiguous: bool
    no_matches: bool = False
    margin: float = 0.0
    candidates: List[CandidateEntity] = []

    @property
    def selected(self) -> CandidateEntity:
        return self.candidates[0]


def decide(
    candidates: List[CandidateEntity],
    min_confidence: float = 0.80,
    min_margin: float = 0.15,
) -> Disambiguation:
    if not candidates:
        return Disambiguation(auto_select=False, ambiguous=True, no_matches=True)

    ranked = sorted(candidates, key=lambda c: (-c.confidence, c.id))
    top = ranked[0].confidence
    runner_up = ranked[1].confidence if len(ranked) > 1 else 0.0
    margin = round(top - runner_up, 4)

    auto_select = top >= min_confidence and margin >= min_margin
    return Disambiguation(
        auto_select=auto_select,
        ambiguous=not auto_select,
        margin=margin,
        candidates=ranked,
    )


def decide_with_thresholds(
    candidates: List[CandidateEntity],
    thresholds: DisambiguationThresholds,
    from_fallback: bool = False,
) -> Disambiguation:
    """Heuristic parses get a stricter confidence bar."""
    min_confidence = thresholds.min_confidence
    if from_fallback:
        min_confidence = min(1.0, min_confidence + thresholds.fallback_penalty)
    return decide(candidates, min_confidence, thresholds.min_margin)
