import logging
import os
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Tuple

import yaml
from rich.console import Console
from rich.logging import RichHandler

from mcq_core.ensemble import DEFAULT_MODEL_WEIGHT, DEFAULT_THRESHOLD, WeightTable

console = Console()

GEMINI_RESOURCE_PREFIX = "models/"

# Cerebras models carry most of the weight; Gemini validates
DEFAULT_CONFIG: dict[str, Any] = {
    "models": [
        {"id": "cerebras:qwen-3-235b-a22b-thinking-2507", "provider": "cerebras",
         "model": "qwen-3-235b-a22b-thinking-2507", "weight": 0.3},
        {"id": "cerebras:llama-3.3-70b", "provider": "cerebras", "model": "llama-3.3-70b", "weight": 0.35},
        {"id": "cerebras:qwen-3-32b", "provider": "cerebras", "model": "qwen-3-32b", "weight": 0.15},
        {"id": "models/gemini-2.5-flash", "provider": "gemini", "model": "gemini-2.5-flash", "weight": 0.2},
    ],
    "ensemble": {
        "threshold": DEFAULT_THRESHOLD,
        "default_weight": DEFAULT_MODEL_WEIGHT,
        "primary_provider": "cerebras",
    },
    "timeouts": {"request": 60.0, "extraction": 25.0, "model_call": 25.0},
    "dispatch": {
        "concurrent_models": True,
        "parallel_questions": False,
        "temperature": 0.1,
        "max_tokens": 4096,
    },
    "extraction": {
        "vision_model": "gemini-2.5-flash",
        "structuring_model": "cerebras:llama-3.3-70b",
        "ocr_language": "eng",
        "self_correction": True,
        "min_option_text_length": 2,
    },
}


@dataclass(frozen=True)
class ModelSpec:
    """
    A configured model backend.

    identity is the opaque name used in weight tables and audit records;
    provider_family selects the backend client and is always explicit.
    """
    identity: str
    provider_family: str
    model_name: str

    @classmethod
    def parse(cls, identity: str) -> "ModelSpec":
        """Parse the explicit "family:model" form used for ad-hoc models.

        Gemini's own "models/<name>" resource form is also accepted and maps
        to the gemini family. Any other identity without a family separator
        gets an empty family and will fail dispatch with an unknown-provider
        error.
        """
        if identity.startswith(GEMINI_RESOURCE_PREFIX) and len(identity) > len(GEMINI_RESOURCE_PREFIX):
            return cls(identity=identity, provider_family="gemini",
                       model_name=identity[len(GEMINI_RESOURCE_PREFIX):])
        family, sep, name = identity.partition(":")
        if sep and family and name:
            return cls(identity=identity, provider_family=family.lower(), model_name=name)
        return cls(identity=identity, provider_family="", model_name=identity)


@dataclass(frozen=True)
class TimeoutConfig:
    """Time budgets in seconds. Expected ordering: extraction <= model_call < request."""
    request: float = 60.0
    extraction: float = 25.0
    model_call: float = 25.0

    def __post_init__(self):
        for name in ("request", "extraction", "model_call"):
            if getattr(self, name) <= 0:
                raise ValueError(f"Timeout '{name}' must be positive")


@dataclass(frozen=True)
class PipelineSettings:
    """Process-wide, read-only settings built once from configuration."""
    models: Tuple[ModelSpec, ...]
    weights: WeightTable = field(default_factory=WeightTable)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    vote_threshold: float = DEFAULT_THRESHOLD
    primary_family: Optional[str] = "cerebras"
    concurrent_models: bool = True
    parallel_questions: bool = False
    temperature: float = 0.1
    max_tokens: int = 4096
    vision_model: str = "gemini-2.5-flash"
    structuring_model: ModelSpec = ModelSpec("cerebras:llama-3.3-70b", "cerebras", "llama-3.3-70b")
    ocr_language: str = "eng"
    self_correction: bool = True
    min_option_text_length: int = 2

    def resolve_models(self, requested: Optional[Iterable[str]]) -> Tuple[ModelSpec, ...]:
        """Map requested identities onto configured specs; default to all configured models."""
        if not requested:
            return self.models
        catalog = {m.identity: m for m in self.models}
        return tuple(catalog.get(identity) or ModelSpec.parse(identity) for identity in requested)


def load_config(config_path: str = "config.yaml") -> dict[str, Any]:
    """
    From config.yaml

    Args:
        config_path: Path to config file (default: config.yaml)

    Returns:
        Configuration dictionary
    """
    try:
        with open(config_path, "r") as f:
            return yaml.safe_load(f) or DEFAULT_CONFIG
    except FileNotFoundError:
        console.print(f"[yellow]Warning: {config_path} not found. Using default config.[/yellow]")
        return DEFAULT_CONFIG


def _model_spec(entry: Any) -> ModelSpec:
    if isinstance(entry, str):
        return ModelSpec.parse(entry)
    identity = entry["id"]
    return ModelSpec(
        identity=identity,
        provider_family=str(entry.get("provider", "")).lower(),
        model_name=entry.get("model", identity)
    )


def build_settings(config: dict[str, Any]) -> PipelineSettings:
    """Turn a configuration dictionary into immutable PipelineSettings."""
    ensemble = {**DEFAULT_CONFIG["ensemble"], **config.get("ensemble", {})}
    timeouts = {**DEFAULT_CONFIG["timeouts"], **config.get("timeouts", {})}
    dispatch = {**DEFAULT_CONFIG["dispatch"], **config.get("dispatch", {})}
    extraction = {**DEFAULT_CONFIG["extraction"], **config.get("extraction", {})}

    model_entries = config.get("models") or DEFAULT_CONFIG["models"]
    models = tuple(_model_spec(entry) for entry in model_entries)
    weights = {
        entry["id"]: float(entry["weight"])
        for entry in model_entries
        if isinstance(entry, dict) and entry.get("weight") is not None
    }
    catalog = {m.identity: m for m in models}
    structuring_id = extraction["structuring_model"]

    return PipelineSettings(
        models=models,
        weights=WeightTable(weights, default=float(ensemble["default_weight"])),
        timeouts=TimeoutConfig(
            request=float(timeouts["request"]),
            extraction=float(timeouts["extraction"]),
            model_call=float(timeouts["model_call"])
        ),
        vote_threshold=float(ensemble["threshold"]),
        primary_family=ensemble.get("primary_provider"),
        concurrent_models=bool(dispatch["concurrent_models"]),
        parallel_questions=bool(dispatch["parallel_questions"]),
        temperature=float(dispatch["temperature"]),
        max_tokens=int(dispatch["max_tokens"]),
        vision_model=extraction["vision_model"],
        structuring_model=catalog.get(structuring_id) or ModelSpec.parse(structuring_id),
        ocr_language=extraction["ocr_language"],
        self_correction=bool(extraction["self_correction"]),
        min_option_text_length=int(extraction["min_option_text_length"])
    )


def get_api_keys() -> dict[str, str]:
    return {
        "cerebras": os.getenv("CEREBRAS_API_KEY", ""),
        "gemini": os.getenv("GEMINI_API_KEY", "") or os.getenv("GOOGLE_API_KEY", ""),
        "openai": os.getenv("OPENAI_API_KEY", ""),
        "anthropic": os.getenv("ANTHROPIC_API_KEY", ""),
        "ocr": os.getenv("OCR_API_KEY", ""),
    }


def setup_logging(level: Optional[str] = None) -> None:
    """Route library logging through rich; level defaults to $LOG_LEVEL or INFO."""
    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)]
    )
