"""Match decision engine.

Ranks catalog pills against a probe vector and turns the ranking into a
verdict. Side-effect free: the same probe, candidates and policy always give
the same verdict, so the whole decision table is unit-testable with literal
vectors.

Decision steps:

1. Narrow the candidates: expected pill id, else expected display name
   (case-insensitive), else the whole catalog (optionally one owner's pills).
2. An expectation that matches nothing is ``ExpectedNotRegistered``.
3. Score every candidate and rank by combined score (stable, so ties keep
   catalog order); the top three are kept for diagnostics.
4. Below the adaptive threshold is ``NoMatch``; otherwise ``Match`` with an
   ambiguity flag from the gap to the runner-up.
"""

from __future__ import annotations

import logging
from typing import Sequence

from mediguard.core.errors import ValidationError
from mediguard.core.storage.models import PillRecord
from mediguard.domains.medication.domain_logic.match_models import (
    INCOMPARABLE,
    ExpectedNotRegistered,
    Match,
    MatchPolicy,
    NoMatch,
    ScoredCandidate,
    SimilarityWeights,
    Verdict,
    VerificationContext,
)
from mediguard.domains.medication.domain_logic.similarity import DEFAULT_WEIGHTS, score

logger = logging.getLogger(__name__)

# Float noise guard for the exclusive ambiguity boundary
_GAP_EPSILON = 1e-9


def restrict_candidates(
    candidates: Sequence[PillRecord],
    context: VerificationContext,
) -> list[PillRecord]:
    """Apply the expectation (or owner pre-filter) to the catalog."""
    if context.expected_pill_id:
        return [p for p in candidates if p.pill_id == context.expected_pill_id]
    if context.expected_name:
        wanted = context.expected_name.strip().casefold()
        return [p for p in candidates if p.display_name.strip().casefold() == wanted]
    if context.owner_id:
        return [p for p in candidates if p.owner_id == context.owner_id]
    return list(candidates)


def rank_candidates(
    probe: Sequence[float],
    candidates: Sequence[PillRecord],
    weights: SimilarityWeights = DEFAULT_WEIGHTS,
) -> list[ScoredCandidate]:
    """Score and sort candidates, best first.

    Candidates whose vectors cannot be compared with the probe are dropped.
    If there were candidates and none is comparable, the probe itself is the
    problem and a ``ValidationError`` is raised.
    """
    scored: list[ScoredCandidate] = []
    skipped = 0
    for pill in candidates:
        bundle = score(probe, pill.feature_vector, weights)
        if bundle is INCOMPARABLE:
            skipped += 1
            logger.warning(
                "Pill %s is not comparable with probe (%d vs %d features)",
                pill.pill_id,
                len(pill.feature_vector),
                len(probe),
            )
            continue
        scored.append(ScoredCandidate(pill_id=pill.pill_id, name=pill.display_name, scores=bundle))

    if candidates and not scored:
        raise ValidationError(
            f"Probe vector ({len(probe)} features) is not comparable with any of "
            f"{skipped} candidate pill(s)"
        )

    # sorted() is stable: equal scores keep catalog order
    return sorted(scored, key=lambda c: c.combined, reverse=True)


def classify(ranked: Sequence[ScoredCandidate], policy: MatchPolicy) -> Match | NoMatch:
    """Turn a best-first ranking into a verdict."""
    top = list(ranked[: policy.diagnostics_size])
    if not top:
        return NoMatch(
            best_score=None,
            confidence_level=policy.confidence_level(None),
            threshold=None,
            suggestions=[],
        )

    best = top[0]
    threshold = policy.threshold_for(best.scores)
    confidence = policy.confidence_level(best.combined)

    if best.combined < threshold:
        return NoMatch(
            best_score=best.combined,
            confidence_level=confidence,
            threshold=threshold,
            suggestions=top,
        )

    # A lone candidate is measured against a runner-up score of zero
    second = top[1].combined if len(top) > 1 else 0.0
    gap = best.combined - second
    is_unambiguous = gap - policy.ambiguity_margin > _GAP_EPSILON

    return Match(
        pill_id=best.pill_id,
        name=best.name,
        score=best.combined,
        confidence_level=confidence,
        is_unambiguous=is_unambiguous,
        scores=best.scores,
        threshold=threshold,
        alternatives=[] if is_unambiguous else top[1:3],
    )


def decide(
    probe: Sequence[float],
    candidates: Sequence[PillRecord],
    context: VerificationContext | None = None,
    *,
    policy: MatchPolicy | None = None,
    weights: SimilarityWeights = DEFAULT_WEIGHTS,
) -> Verdict:
    """Compare a probe vector with the catalog and return a verdict."""
    if not probe:
        raise ValidationError("Probe feature vector is empty")
    context = context or VerificationContext()
    policy = policy or MatchPolicy()

    restricted = restrict_candidates(candidates, context)
    if not restricted and context.has_expectation:
        logger.warning(
            "Expected medication not registered (pill_id=%s, name=%s)",
            context.expected_pill_id,
            context.expected_name,
        )
        return ExpectedNotRegistered(
            expected_pill_id=context.expected_pill_id,
            expected_name=context.expected_name,
        )

    ranked = rank_candidates(probe, restricted, weights)
    verdict = classify(ranked, policy)

    for i, c in enumerate(ranked[: policy.diagnostics_size], start=1):
        logger.debug(
            "Rank %d: %s score=%.3f cosine=%.3f", i, c.name, c.combined, c.scores.cosine
        )
    logger.info(
        "Verdict %s over %d candidate(s) (best=%s)",
        verdict.kind,
        len(ranked),
        f"{ranked[0].combined:.3f}" if ranked else "n/a",
    )
    return verdict
