"""
Lenient JSON recovery for model replies.

Models rarely return byte-perfect JSON: thinking models prepend a
<think>...</think> block, chat models wrap output in ```json fences or add
"Here is the answer:" prose. Recovery is a short ordered chain of pure
strategies; the first one that yields a value of the expected type wins.

The same chain serves two callers:
- parse_answer(): evaluation replies -> ParsedAnswer (JSON object)
- the LLM structuring and vision steps in extractor.py (a JSON array of
  questions, or a single question object)
"""
import json
import logging
import math
import re
from typing import Any, Callable, List, Optional, Tuple, Union

from mcq_core.models import ParsedAnswer

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.5

# Paired reasoning tags emitted by thinking models (qwen-3 thinking, deepseek-r1, ...)
_THINKING_BLOCK = re.compile(r"<(think|thinking|reasoning)>.*?</\1\s*>", re.DOTALL | re.IGNORECASE)
_CODE_FENCE = re.compile(r"```(?:json)?[ \t]*", re.IGNORECASE)

_decoder = json.JSONDecoder()


def strip_thinking(text: str) -> str:
    return _THINKING_BLOCK.sub("", text).strip()


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def _direct(text: str, opener: str) -> Any:
    return _loads(text.strip())


def _without_thinking(text: str, opener: str) -> Any:
    return _loads(strip_thinking(text))


def _find_opener(text: str, openers: str, start: int = 0) -> int:
    positions = [p for p in (text.find(c, start) for c in openers) if p != -1]
    return min(positions) if positions else -1


def _first_embedded(text: str, opener: str) -> Any:
    """Decode the first complete JSON value starting at any opener character.

    raw_decode stops at the matching close bracket, so trailing prose and
    braces inside string values are handled by the JSON grammar itself.
    """
    cleaned = strip_thinking(text)
    start = _find_opener(cleaned, opener)
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(cleaned, start)
            return value
        except ValueError:
            start = _find_opener(cleaned, opener, start + 1)
    return None


def _without_fences(text: str, opener: str) -> Any:
    return _loads(_CODE_FENCE.sub("", strip_thinking(text)).strip())


STRATEGIES: Tuple[Callable[[str, str], Any], ...] = (
    _direct,
    _without_thinking,
    _first_embedded,
    _without_fences,
)


def load_json_lenient(raw_text: Optional[str], expect: Union[type, Tuple[type, ...]] = dict) -> Any:
    """
    Recover a JSON value of type `expect` from model output.

    expect is dict, list, or (list, dict) to take whichever container the
    reply holds; the embedded-value search then starts at whichever bracket
    comes first. Returns None when no strategy produces a value of an
    expected type. Never raises.
    """
    if not isinstance(raw_text, str) or not raw_text.strip():
        return None

    types = expect if isinstance(expect, tuple) else (expect,)
    opener = "".join("[" if t is list else "{" for t in types)
    for strategy in STRATEGIES:
        value = strategy(raw_text, opener)
        if isinstance(value, expect):
            return value
    return None


def _coerce_labels(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        items: List[Any] = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        return ()

    labels: List[str] = []
    for item in items:
        if item is None or isinstance(item, (dict, list)):
            continue
        label = str(item).strip()
        if label and label not in labels:
            labels.append(label)
    return tuple(labels)


def _coerce_confidence(value: Any) -> float:
    # bool is an int subclass; "true" is not a confidence
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_CONFIDENCE
    if not math.isfinite(value):
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, float(value)))


def answer_from_payload(payload: dict) -> ParsedAnswer:
    """Build a ParsedAnswer from a decoded object, defaulting missing fields."""
    reasoning = payload.get("reasoning")
    return ParsedAnswer(
        selected_option_labels=_coerce_labels(payload.get("selected_options")),
        confidence=_coerce_confidence(payload.get("confidence")),
        reasoning=reasoning if isinstance(reasoning, str) else ("" if reasoning is None else str(reasoning))
    )


def parse_answer(raw_text: Optional[str]) -> Optional[ParsedAnswer]:
    """
    Turn a model's free-text reply into a ParsedAnswer.

    Args:
        raw_text: Reply text as returned by the backend

    Returns:
        ParsedAnswer, or None when no JSON object can be recovered

    Example:
        >>> parse_answer('<think>B looks right</think>```json\\n{"selected_options": ["B"]}\\n```')
        ParsedAnswer(selected_option_labels=('B',), confidence=0.5, reasoning='')
    """
    payload = load_json_lenient(raw_text, dict)
    if payload is None:
        logger.debug(f"No JSON object recovered from reply: {str(raw_text)[:120]!r}")
        return None
    return answer_from_payload(payload)
