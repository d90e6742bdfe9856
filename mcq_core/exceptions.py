"""
Custom exceptions for the MCQ answering pipeline.

Only ExtractionFailed and RequestTimeout ever reach the caller of the
pipeline (as error payloads). Per-model failures are absorbed by the
dispatcher and show up as audit data on the ensemble result.
"""


class MCQError(Exception):
    """Base exception for MCQ pipeline errors."""
    pass


class ExtractionFailed(MCQError):
    """No usable questions could be obtained from the input."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class TransientCapacityError(MCQError):
    """Vision backend is overloaded or out of quota.

    kind is "overloaded" or "rate_limited". This is the only primary
    extraction error that triggers the OCR fallback path.
    """

    def __init__(self, kind: str, message: str = ""):
        super().__init__(message or kind)
        self.kind = kind


class ModelCallFailed(MCQError):
    """A model backend call failed (transport or provider error)."""
    pass


class ParseFailed(MCQError):
    """A structuring reply could not be turned into questions, even after the strict retry."""
    pass


class RequestTimeout(MCQError):
    """The overall request deadline was exceeded."""
    pass


class APIKeyMissingError(MCQError):
    """Required API key is not configured."""
    pass
