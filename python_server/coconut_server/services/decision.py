"""Mapping of raw sigmoid scores to class decisions."""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

COCONUT_LABEL = "COCONUT TREE"
NOT_COCONUT_LABEL = "NOT COCONUT TREE"

DECISION_THRESHOLD = 0.5

_DISPLAY_NAMES = {
    COCONUT_LABEL: "Coconut Tree",
    NOT_COCONUT_LABEL: "Not a Coconut Tree",
}


class ScorePolarity(str, Enum):
    """Which class a score above the threshold stands for.

    This depends on how the model's output neuron was trained and must be
    declared alongside the model artifact.
    """
    HIGH_IS_COCONUT = "high_is_coconut"
    HIGH_IS_NOT_COCONUT = "high_is_not_coconut"

    @classmethod
    def parse(cls, value) -> "ScorePolarity":
        """Parse a polarity from its name or value (case-insensitive)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().lower()
            for polarity in cls:
                if key in (polarity.value, polarity.name.lower()):
                    return polarity
        raise ValueError(
            "Unknown score polarity %r (expected one of: %s)"
            % (value, ", ".join(p.value for p in cls)))

    @property
    def high_label(self) -> str:
        if self is ScorePolarity.HIGH_IS_COCONUT:
            return COCONUT_LABEL
        return NOT_COCONUT_LABEL

    @property
    def low_label(self) -> str:
        if self is ScorePolarity.HIGH_IS_COCONUT:
            return NOT_COCONUT_LABEL
        return COCONUT_LABEL


@dataclass(frozen=True)
class ClassDecision:
    """Classification result for one image."""
    label: str
    confidence_percent: float
    raw_score: float

    @property
    def is_coconut_tree(self) -> bool:
        return self.label == COCONUT_LABEL

    @property
    def classification(self) -> str:
        """Human readable class name."""
        return _DISPLAY_NAMES[self.label]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the API response shape."""
        return {
            "isCoconutTree": self.is_coconut_tree,
            "confidence": self.confidence_percent,
            "rawScore": self.raw_score,
            "classification": self.classification,
        }


def decide(score: float, polarity: ScorePolarity) -> ClassDecision:
    """Turn a sigmoid score into a class decision.

    Scores strictly above the threshold select the class the polarity
    assigns to high scores. Confidence is the model's certainty in the
    chosen class: the score itself for the high-side class, 1 - score for
    the low-side class.

    Args:
        score: Model output in [0, 1]
        polarity: Score polarity of the paired model

    Returns:
        ClassDecision with confidence in percent (2 decimals) and the raw
        score (4 decimals)

    Raises:
        ValueError: If the score is not a finite number in [0, 1]
    """
    score = float(score)
    if not math.isfinite(score) or score < 0.0 or score > 1.0:
        raise ValueError("Score %r is outside [0, 1]" % score)

    polarity = ScorePolarity.parse(polarity)
    if score > DECISION_THRESHOLD:
        label = polarity.high_label
        certainty = score
    else:
        label = polarity.low_label
        certainty = 1.0 - score

    return ClassDecision(
        label=label,
        confidence_percent=round(certainty * 100.0, 2),
        raw_score=round(score, 4),
    )
