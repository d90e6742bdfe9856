"""
Label normalization: map whatever label spelling a model used back to the
question's canonical option labels.

Models answer the same option as "B", "b", "2" or with the option text
itself, and extracted questions may be labeled "1".."4" while a model
answers in letters. The normalizer is built once per question from its
ordered options.
"""
import string
from typing import Dict, Optional, Sequence

from mcq_core.models import OrderedOption

MAX_POSITIONAL_OPTIONS = len(string.ascii_uppercase)


class LabelNormalizer:
    """
    Build-time mapping of label variants to canonical labels.

    For the option at position i with canonical label L and text T:
        L, lower(L), strip(lower(L)), str(i + 1), chr('A' + i), chr('a' + i), lower(strip(T))
    all map to L.

    Canonical labels are registered first and always map to themselves;
    positional and text keys never overwrite an earlier mapping.

    Usage:
        normalize = LabelNormalizer(question.options)
        normalize("b")            # -> "B"
        normalize.resolve("E")    # -> None (not a canonical label)
    """

    def __init__(self, options: Sequence[OrderedOption]):
        self.canonical_labels = tuple(o.label for o in options)
        self._map: Dict[str, str] = {}

        for option in options:
            label = option.label
            self._map[label] = label
        for option in options:
            label = option.label
            self._map.setdefault(label.lower(), label)
            self._map.setdefault(label.strip().lower(), label)

        for i, option in enumerate(options):
            label = option.label
            self._map.setdefault(str(i + 1), label)
            if i < MAX_POSITIONAL_OPTIONS:
                self._map.setdefault(string.ascii_uppercase[i], label)
                self._map.setdefault(string.ascii_lowercase[i], label)
            text = (option.text or "").strip().lower()
            if text:
                self._map.setdefault(text, label)

    def normalize(self, raw_label: Optional[str]) -> Optional[str]:
        """
        Map a raw label to its canonical label.

        Lookup order: exact, lowercase, trimmed. An unrecognized label is
        returned unchanged; callers decide whether to trust it. Returns None
        only for an empty label.
        """
        if not raw_label:
            return None
        return (
            self._map.get(raw_label)
            or self._map.get(raw_label.lower())
            or self._map.get(raw_label.strip())
            or self._map.get(raw_label.strip().lower())
            or raw_label
        )

    __call__ = normalize

    def resolve(self, raw_label: Optional[str]) -> Optional[str]:
        """Like normalize(), but None unless the result is a canonical label."""
        normalized = self.normalize(raw_label)
        if normalized in self.canonical_labels:
            return normalized
        return None
