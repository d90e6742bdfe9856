# MCQ Ensemble Solver Core Library
# Main entry point: from mcq_core.pipeline import MCQPipeline

from .config import (
    ModelSpec,
    PipelineSettings,
    TimeoutConfig,
    build_settings,
    get_api_keys,
    load_config,
    setup_logging,
)
from .dispatcher import ModelDispatcher
from .ensemble import WeightTable, vote
from .exceptions import (
    APIKeyMissingError,
    ExtractionFailed,
    MCQError,
    ModelCallFailed,
    ParseFailed,
    RequestTimeout,
    TransientCapacityError,
)
from .labels import LabelNormalizer
from .models import (
    CallFailure,
    EnsembleResult,
    ModelVote,
    OrderedOption,
    ParsedAnswer,
    ParseFailure,
    Question,
    Success,
)
from .parser import parse_answer
from .pipeline import MCQPipeline, process_image, process_text

__all__ = [
    # Main entry points
    "MCQPipeline",
    "process_image",
    "process_text",
    # Config
    "ModelSpec",
    "PipelineSettings",
    "TimeoutConfig",
    "build_settings",
    "get_api_keys",
    "load_config",
    "setup_logging",
    # Core components
    "LabelNormalizer",
    "ModelDispatcher",
    "WeightTable",
    "parse_answer",
    "vote",
    # Models
    "Question",
    "OrderedOption",
    "ParsedAnswer",
    "Success",
    "ParseFailure",
    "CallFailure",
    "ModelVote",
    "EnsembleResult",
    # Errors
    "MCQError",
    "ExtractionFailed",
    "TransientCapacityError",
    "ModelCallFailed",
    "ParseFailed",
    "RequestTimeout",
    "APIKeyMissingError",
]
