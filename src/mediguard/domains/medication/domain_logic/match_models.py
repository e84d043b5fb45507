"""Verification verdict models and tuned matching constants."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from mediguard.core.config.settings import Settings

ConfidenceLevel = Literal["HIGH", "MEDIUM", "LOW", "VERY_LOW"]
VerdictKind = Literal["match", "no_match", "expected_not_registered"]


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScoreBundle:
    """Similarity between two feature vectors."""

    cosine: float                   # [-1, 1]
    normalized_euclidean: float     # (0, 1], 1 / (1 + distance)
    combined: float                 # weighted blend used for ranking


class _Incomparable:
    """Sentinel for vectors that cannot be scored against each other."""

    _instance: _Incomparable | None = None

    def __new__(cls) -> _Incomparable:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "INCOMPARABLE"


INCOMPARABLE = _Incomparable()


@dataclass(frozen=True)
class SimilarityWeights:
    """Blend weights for the combined score.

    Cosine dominates because it ignores exposure differences between the
    registration and verification photos; the Euclidean term catches large
    absolute deviations that cosine alone can mask.
    """

    cosine: float = 0.7
    euclidean: float = 0.3


# ---------------------------------------------------------------------------
# Decision policy (named so the heuristics can be recalibrated)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MatchPolicy:
    base_threshold: float = 0.65
    high_confidence_threshold: float = 0.70
    high_confidence_cosine: float = 0.75
    ambiguity_margin: float = 0.10
    confidence_high: float = 0.75
    confidence_medium: float = 0.60
    confidence_low: float = 0.45
    diagnostics_size: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> MatchPolicy:
        return cls(
            base_threshold=settings.match_base_threshold,
            high_confidence_threshold=settings.match_high_confidence_threshold,
            high_confidence_cosine=settings.match_high_confidence_cosine,
            ambiguity_margin=settings.ambiguity_margin,
            confidence_high=settings.confidence_high,
            confidence_medium=settings.confidence_medium,
            confidence_low=settings.confidence_low,
        )

    def confidence_level(self, score: float | None) -> ConfidenceLevel:
        if score is None:
            return "VERY_LOW"
        if score >= self.confidence_high:
            return "HIGH"
        if score >= self.confidence_medium:
            return "MEDIUM"
        if score >= self.confidence_low:
            return "LOW"
        return "VERY_LOW"

    def threshold_for(self, best: ScoreBundle) -> float:
        """Stricter bar when the cosine signal itself is confident."""
        if abs(best.cosine) > self.high_confidence_cosine:
            return self.high_confidence_threshold
        return self.base_threshold


# ---------------------------------------------------------------------------
# Verdicts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VerificationContext:
    """What the caller expects to see in the photo, if anything."""

    expected_pill_id: str | None = None
    expected_name: str | None = None
    owner_id: str | None = None  # pre-filter for open verification

    @property
    def has_expectation(self) -> bool:
        return bool(self.expected_pill_id or self.expected_name)


@dataclass(frozen=True)
class ScoredCandidate:
    pill_id: str
    name: str
    scores: ScoreBundle

    @property
    def combined(self) -> float:
        return self.scores.combined

    def as_dict(self, policy: MatchPolicy | None = None) -> dict[str, Any]:
        out: dict[str, Any] = {
            "pill_id": self.pill_id,
            "name": self.name,
            "score": round(self.scores.combined, 4),
            "cosine": round(self.scores.cosine, 4),
            "euclidean": round(self.scores.normalized_euclidean, 4),
        }
        if policy is not None:
            out["confidence"] = policy.confidence_level(self.scores.combined)
        return out


@dataclass(frozen=True)
class Match:
    pill_id: str
    name: str
    score: float
    confidence_level: ConfidenceLevel
    is_unambiguous: bool
    scores: ScoreBundle
    threshold: float
    alternatives: list[ScoredCandidate] = field(default_factory=list)
    kind: VerdictKind = "match"

    def as_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.kind,
            "match": True,
            "pill_id": self.pill_id,
            "name": self.name,
            "score": round(self.score, 4),
            "confidence": self.confidence_level,
            "threshold": self.threshold,
            "metrics": {
                "cosine": round(self.scores.cosine, 4),
                "euclidean": round(self.scores.normalized_euclidean, 4),
                "combined": round(self.scores.combined, 4),
            },
            "is_unambiguous": self.is_unambiguous,
            "alternatives": [c.as_dict() for c in self.alternatives],
        }


@dataclass(frozen=True)
class NoMatch:
    best_score: float | None
    confidence_level: ConfidenceLevel
    threshold: float | None
    suggestions: list[ScoredCandidate] = field(default_factory=list)
    kind: VerdictKind = "no_match"

    def as_dict(self) -> dict[str, Any]:
        best = self.suggestions[0] if self.suggestions else None
        if best is not None:
            message = f"No confident match found (best: {best.name} at {best.combined:.3f})"
        else:
            message = "No registered pills to compare against"
        return {
            "verdict": self.kind,
            "match": False,
            "score": round(self.best_score, 4) if self.best_score is not None else None,
            "confidence": self.confidence_level,
            "threshold": self.threshold,
            "message": message,
            "suggestions": [c.as_dict() for c in self.suggestions],
        }


@dataclass(frozen=True)
class ExpectedNotRegistered:
    """The scheduled medication has no catalog entry. A configuration gap, not a wrong pill."""

    expected_pill_id: str | None
    expected_name: str | None
    kind: VerdictKind = "expected_not_registered"

    def as_dict(self) -> dict[str, Any]:
        label = self.expected_name or self.expected_pill_id or "unknown"
        return {
            "verdict": self.kind,
            "match": False,
            "expected_pill_id": self.expected_pill_id,
            "expected_name": self.expected_name,
            "message": f'The scheduled medication "{label}" is not registered in the system.',
        }


Verdict = Match | NoMatch | ExpectedNotRegistered
