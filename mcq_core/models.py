# mcq_core/models.py
"""
Data models for the MCQ answering pipeline.

Design Decisions:
- Question/OrderedOption are pydantic models: they arrive from an LLM or a
  vision backend and must be validated before any model is asked about them
- Everything produced after extraction is a frozen dataclass, recomputed
  fresh per question and never mutated
- ModelOutcome is a small tagged union (Success | ParseFailure | CallFailure);
  exactly one case holds per dispatched model call
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderedOption(BaseModel):
    """A single answer option. label is the canonical identity."""
    model_config = ConfigDict(frozen=True)

    label: str = Field(..., min_length=1, description="Canonical option label (e.g., 'A', '1')")
    text: str = Field("", description="Option text as extracted")


class Question(BaseModel):
    """
    A multiple-choice question as extracted from the source image or text.

    Option order is meaningful: position i is also addressable as the
    (i+1)-th digit or letter by the label normalizer.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Question identifier")
    text: str = Field("", description="Question stem")
    options: List[OrderedOption] = Field(..., min_length=1, description="Ordered answer options")
    allows_multiple_answers: bool = Field(False, description="Question states more than one option may be correct")

    @field_validator('options')
    @classmethod
    def validate_unique_labels(cls, v):
        """Duplicate canonical labels make votes ambiguous; reject them."""
        seen = set()
        for option in v:
            if option.label in seen:
                raise ValueError(f"Duplicate option label: {option.label!r}")
            seen.add(option.label)
        return v


@dataclass(frozen=True)
class ParsedAnswer:
    """Structured answer recovered from one model reply."""
    selected_option_labels: Tuple[str, ...] = ()
    confidence: float = 0.5
    reasoning: str = ""


@dataclass(frozen=True)
class Success:
    model: str
    parsed_answer: ParsedAnswer
    raw_text: str
    latency: float = 0.0


@dataclass(frozen=True)
class ParseFailure:
    model: str
    raw_text: str
    latency: float = 0.0


@dataclass(frozen=True)
class CallFailure:
    model: str
    error_kind: str
    latency: float = 0.0


ModelOutcome = Union[Success, ParseFailure, CallFailure]


@dataclass(frozen=True)
class RawModelReply:
    """Unparsed backend output plus provider-specific diagnostics."""
    model: str
    text: str
    raw_metadata: Any = None


@dataclass(frozen=True)
class ModelVote:
    """Per-model audit record kept on the ensemble result."""
    model: str
    status: str  # "success" | "parse_failure" | "call_failure"
    weight: float = 0.0
    selected_options: Tuple[str, ...] = ()
    confidence: Optional[float] = None
    reasoning: str = ""
    error: Optional[str] = None
    raw_text: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'model': self.model,
            'status': self.status,
            'weight': self.weight,
            'selected_options': list(self.selected_options),
            'confidence': self.confidence,
            'reasoning': self.reasoning,
            'error': self.error,
            'raw_text': self.raw_text
        }


@dataclass(frozen=True)
class EnsembleResult:
    """Aggregate decision for one question."""
    question_id: str
    question_text: str
    canonical_options: Tuple[OrderedOption, ...]
    selected_labels: Tuple[str, ...]
    final_confidence: float
    per_option_probability: Dict[str, float] = field(default_factory=dict)
    per_model: Tuple[ModelVote, ...] = ()
    ambiguous: bool = False

    def answer_lines(self) -> List[str]:
        """Selected options rendered as "label) text"."""
        texts = {o.label: o.text for o in self.canonical_options}
        return [f"{label}) {texts.get(label) or label}" for label in self.selected_labels]

    def to_dict(self) -> dict:
        return {
            'question_id': self.question_id,
            'question': self.question_text,
            'options': [{'label': o.label, 'text': o.text} for o in self.canonical_options],
            'selected_options': list(self.selected_labels),
            'final_confidence': self.final_confidence,
            'probabilities': dict(self.per_option_probability),
            'per_model': [v.to_dict() for v in self.per_model],
            'ambiguous': self.ambiguous
        }
