"""
Pytest fixtures and configuration.

- Fixtures provide realistic questions and model replies
- Model backends are replaced by a scripted in-process backend; no test
  touches the network
"""
import asyncio
import json
from typing import Any, Dict, Optional

import pytest

from mcq_core.config import ModelSpec, PipelineSettings, TimeoutConfig
from mcq_core.ensemble import WeightTable
from mcq_core.llm_clients import BackendRegistry, ModelBackend
from mcq_core.models import OrderedOption, ParsedAnswer, Question, RawModelReply, Success


class ScriptedBackend(ModelBackend):
    """
    Backend whose replies are scripted per model identity.

    A reply may be a string (returned as text), an exception (raised), or a
    list of those (consumed one per call). delays adds an asyncio.sleep per model.
    """

    family = "fake"

    def __init__(self, replies: Dict[str, Any], delays: Optional[Dict[str, float]] = None):
        self.replies = replies
        self.delays = delays or {}
        self.calls = []
        self.prompts = []

    async def invoke(self, spec, prompt, temperature, max_tokens):
        self.calls.append(spec.identity)
        self.prompts.append(prompt)
        delay = self.delays.get(spec.identity, 0)
        if delay:
            await asyncio.sleep(delay)
        reply = self.replies[spec.identity]
        if isinstance(reply, list):
            reply = reply.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return RawModelReply(model=spec.identity, text=reply, raw_metadata={"scripted": True})


def answer_json(options, confidence: float = 0.8, reasoning: str = "Scripted.") -> str:
    return json.dumps({
        "question_id": "1",
        "selected_options": list(options),
        "is_multiple_correct": len(options) > 1,
        "confidence": confidence,
        "reasoning": reasoning
    })


# =============================================================================
# QUESTION FIXTURES
# =============================================================================

@pytest.fixture
def abstract_class_question() -> Question:
    """Single-answer Java question; B is correct."""
    return Question(
        id="1",
        text="What happens if an abstract class does not have any abstract methods?",
        options=[
            OrderedOption(label="A", text="It will not compile."),
            OrderedOption(label="B", text="The class can still be abstract."),
            OrderedOption(label="C", text="Java will automatically provide an abstract method."),
            OrderedOption(label="D", text="It becomes a concrete class."),
        ],
        allows_multiple_answers=False
    )


@pytest.fixture
def numbered_question() -> Question:
    """Question whose canonical labels are digits."""
    return Question(
        id="7",
        text="Which of the following are prime numbers?",
        options=[
            OrderedOption(label="1", text="2"),
            OrderedOption(label="2", text="4"),
            OrderedOption(label="3", text="7"),
            OrderedOption(label="4", text="9"),
        ],
        allows_multiple_answers=True
    )


# =============================================================================
# MODEL / BACKEND FIXTURES
# =============================================================================

@pytest.fixture
def scripted_backend():
    """The ScriptedBackend class; tests instantiate it with their own script."""
    return ScriptedBackend


@pytest.fixture
def answer():
    """Helper that renders an evaluation reply as JSON text."""
    return answer_json


@pytest.fixture
def success():
    """Helper building a Success outcome."""
    def _success(model: str, options, confidence: float = 0.8, reasoning: str = "") -> Success:
        return Success(
            model=model,
            parsed_answer=ParsedAnswer(tuple(options), confidence, reasoning),
            raw_text=answer_json(options, confidence, reasoning)
        )
    return _success


@pytest.fixture
def fake_models():
    """Three models on the scripted 'fake' provider family."""
    return (
        ModelSpec("fake:m1", "fake", "m1"),
        ModelSpec("fake:m2", "fake", "m2"),
        ModelSpec("fake:m3", "fake", "m3"),
    )


@pytest.fixture
def make_registry():
    def _make(backend: ModelBackend, *families: str) -> BackendRegistry:
        registry = BackendRegistry()
        for family in families or ("fake",):
            registry.register(backend, family=family)
        return registry
    return _make


@pytest.fixture
def fake_settings(fake_models) -> PipelineSettings:
    """Settings with short timeouts and equal weights for the fake models."""
    return PipelineSettings(
        models=fake_models,
        weights=WeightTable({m.identity: 1.0 for m in fake_models}),
        timeouts=TimeoutConfig(request=5.0, extraction=2.0, model_call=1.0),
        primary_family=None,
        structuring_model=ModelSpec("fake:parser", "fake", "parser")
    )
