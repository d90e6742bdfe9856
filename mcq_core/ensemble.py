"""
Weighted-vote ensemble over per-model answers.

1. Normalize every selected label of every successful model to a canonical
   option label (unresolvable labels are logged and dropped)
2. optionScore[label] += weight(model) for each normalized selection
3. totalModelWeight and weightedConfidenceSum accumulate once per
   successful model; parse/call failures are recorded but carry no weight
4. Winners = labels with optionScore >= threshold * totalModelWeight;
   if none qualify, the single top scorer (first seen on ties)
5. finalConfidence = weighted mean confidence of successful models

The quota rule lets several options win together (multi-answer questions)
without requiring a majority: one confident high-weight model can carry an
option alone if its weight share clears the threshold.
"""
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence

from mcq_core.labels import LabelNormalizer
from mcq_core.models import (
    CallFailure,
    EnsembleResult,
    ModelOutcome,
    ModelVote,
    ParseFailure,
    Question,
    Success,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL_WEIGHT = 0.15
DEFAULT_THRESHOLD = 0.25


@dataclass(frozen=True)
class WeightTable:
    """
    Immutable trust weights per model identity.

    Models missing from the table get `default`. Built once from
    configuration and passed into vote() explicitly.
    """
    weights: Mapping[str, float] = field(default_factory=dict)
    default: float = DEFAULT_MODEL_WEIGHT

    def __post_init__(self):
        for model, weight in self.weights.items():
            if weight <= 0:
                raise ValueError(f"Weight for {model!r} must be positive, got {weight}")
        if self.default <= 0:
            raise ValueError(f"Default weight must be positive, got {self.default}")
        object.__setattr__(self, 'weights', MappingProxyType(dict(self.weights)))

    def weight(self, model: str) -> float:
        return self.weights.get(model, self.default)


def vote(
    question: Question,
    outcomes: Sequence[ModelOutcome],
    weights: WeightTable,
    threshold: float = DEFAULT_THRESHOLD
) -> EnsembleResult:
    """
    Combine per-model outcomes into one decision for `question`.

    Args:
        question: Question the outcomes answer (defines canonical labels)
        outcomes: One outcome per dispatched model, any order
        weights: Trust weights per model identity
        threshold: Minimum share of total contributing weight for an option
            to win without being the top scorer

    Returns:
        EnsembleResult with winners in option order, weighted confidence,
        per-option probabilities and a per-model audit trail
    """
    normalizer = LabelNormalizer(question.options)
    option_scores: Dict[str, float] = {}
    per_model: List[ModelVote] = []
    total_model_weight = 0.0
    weighted_confidence_sum = 0.0

    for outcome in outcomes:
        if isinstance(outcome, CallFailure):
            per_model.append(ModelVote(model=outcome.model, status="call_failure", error=outcome.error_kind))
            continue
        if isinstance(outcome, ParseFailure):
            per_model.append(ModelVote(
                model=outcome.model,
                status="parse_failure",
                error="unparseable_response",
                raw_text=outcome.raw_text
            ))
            continue
        if not isinstance(outcome, Success):
            raise TypeError(f"Unexpected outcome type: {type(outcome).__name__}")

        w = weights.weight(outcome.model)
        answer = outcome.parsed_answer
        total_model_weight += w
        weighted_confidence_sum += w * answer.confidence

        normalized: List[str] = []
        for raw_label in answer.selected_option_labels:
            label = normalizer.resolve(raw_label)
            if label is None:
                logger.warning(f"Could not normalize option {raw_label!r} for model {outcome.model} (question {question.id})")
                continue
            if label in normalized:
                continue
            option_scores[label] = option_scores.get(label, 0.0) + w
            normalized.append(label)

        per_model.append(ModelVote(
            model=outcome.model,
            status="success",
            weight=w,
            selected_options=tuple(normalized),
            confidence=answer.confidence,
            reasoning=answer.reasoning,
            raw_text=outcome.raw_text
        ))

    winners = _select_winners(option_scores, total_model_weight, threshold)
    ordered_winners = tuple(label for label in normalizer.canonical_labels if label in winners)

    final_confidence = weighted_confidence_sum / total_model_weight if total_model_weight > 0 else 0.0

    score_sum = sum(option_scores.values())
    probabilities = {
        label: (option_scores.get(label, 0.0) / score_sum if score_sum > 0 else 0.0)
        for label in normalizer.canonical_labels
    }

    return EnsembleResult(
        question_id=question.id,
        question_text=question.text,
        canonical_options=tuple(question.options),
        selected_labels=ordered_winners,
        final_confidence=final_confidence,
        per_option_probability=probabilities,
        per_model=tuple(per_model),
        ambiguous=len(ordered_winners) > 1
    )


def _select_winners(option_scores: Dict[str, float], total_weight: float, threshold: float) -> List[str]:
    """Quota pass, then argmax fallback. option_scores is in first-seen order."""
    if total_weight > 0:
        quota = threshold * total_weight
        winners = [label for label, score in option_scores.items() if score >= quota]
        if winners:
            return winners

    best: Optional[str] = None
    for label, score in option_scores.items():
        # strict > keeps the first-seen label on ties
        if best is None or score > option_scores[best]:
            best = label
    return [best] if best is not None else []
