import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock, Mock, patch

import pytest

from mcq_core.config import TimeoutConfig
from mcq_core.dispatcher import ModelDispatcher
from mcq_core.exceptions import ExtractionFailed
from mcq_core.models import OrderedOption, Question
from mcq_core.pipeline import MCQPipeline

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


@pytest.fixture
def second_question():
    return Question(id="2", text="Which keyword prevents subclassing?", options=[
        OrderedOption(label="A", text="static"),
        OrderedOption(label="B", text="final"),
    ])


def _stub_extractor(questions=None, error=None, delay=0.0):
    async def extract(*args, **kwargs):
        if delay:
            await asyncio.sleep(delay)
        if error is not None:
            raise error
        return questions

    extractor = Mock()
    extractor.extract = AsyncMock(side_effect=extract)
    extractor.extract_from_text = AsyncMock(side_effect=extract)
    return extractor


def _pipeline(settings, questions, backend, make_registry, **extractor_kwargs):
    dispatcher = ModelDispatcher.from_settings(make_registry(backend), settings)
    return MCQPipeline(settings, _stub_extractor(questions, **extractor_kwargs), dispatcher)


@pytest.mark.asyncio
async def test_end_to_end_single_question(fake_settings, abstract_class_question, scripted_backend, make_registry, answer):
    backend = scripted_backend({
        "fake:m1": answer(["B"], 0.9),
        "fake:m2": answer(["B"], 0.7),
        "fake:m3": answer(["B"], 0.6),
    })
    pipeline = _pipeline(fake_settings, [abstract_class_question], backend, make_registry)

    result = await pipeline.process_image(PNG, req_id="42")

    assert result["questions"] == [{
        "question": abstract_class_question.text,
        "answer": ["B) The class can still be abstract."],
        "question_id": "1",
    }]
    assert result["metadata"]["models"] == ["fake:m1", "fake:m2", "fake:m3"]
    assert "timestamp" in result["metadata"]
    assert "debug" not in result


@pytest.mark.asyncio
async def test_debug_output(fake_settings, abstract_class_question, scripted_backend, make_registry, answer):
    backend = scripted_backend({
        "fake:m1": answer(["B"], 0.9),
        "fake:m2": answer(["B"], 0.7),
        "fake:m3": answer(["B"], 0.6),
    })
    pipeline = _pipeline(fake_settings, [abstract_class_question], backend, make_registry)

    result = await pipeline.process_image(PNG, debug=True)

    entry = result["debug"]["per_question"][0]
    assert entry["selected_options"] == ["B"]
    assert entry["final_confidence"] == pytest.approx(0.7333, abs=1e-3)
    assert entry["probabilities"]["B"] == 1.0
    assert [v["model"] for v in entry["per_model"]] == ["fake:m1", "fake:m2", "fake:m3"]
    assert entry["ambiguous"] is False


@pytest.mark.asyncio
async def test_requested_models_override_config(fake_settings, abstract_class_question, scripted_backend, make_registry, answer):
    backend = scripted_backend({"fake:m2": answer(["C"])})
    pipeline = _pipeline(fake_settings, [abstract_class_question], backend, make_registry)

    result = await pipeline.process_image(PNG, requested_models=["fake:m2"])

    assert backend.calls == ["fake:m2"]
    assert result["metadata"]["models"] == ["fake:m2"]
    assert result["questions"][0]["answer"] == ["C) Java will automatically provide an abstract method."]


@pytest.mark.asyncio
async def test_failing_question_does_not_affect_siblings(fake_settings, abstract_class_question, second_question, success):
    async def dispatch(question, models, on_outcome=None, req_id=None):
        if question.id == "1":
            raise RuntimeError("dispatch exploded")
        return [success(m.identity, ["B"], 0.8) for m in models]

    dispatcher = Mock()
    dispatcher.dispatch = AsyncMock(side_effect=dispatch)
    pipeline = MCQPipeline(fake_settings, _stub_extractor([abstract_class_question, second_question]), dispatcher)

    result = await pipeline.process_image(PNG, debug=True)

    assert [q["question_id"] for q in result["questions"]] == ["1", "2"]
    assert result["questions"][0]["answer"] == []
    assert result["questions"][1]["answer"] == ["B) final"]
    failed = result["debug"]["per_question"][0]["per_model"]
    assert {v["status"] for v in failed} == {"call_failure"}
    assert failed[0]["error"] == "dispatch exploded"


@pytest.mark.asyncio
async def test_all_models_failing_yields_empty_answer(fake_settings, abstract_class_question, scripted_backend, make_registry):
    backend = scripted_backend({
        "fake:m1": ConnectionError("refused"),
        "fake:m2": "no json at all",
        "fake:m3": ConnectionError("refused"),
    })
    pipeline = _pipeline(fake_settings, [abstract_class_question], backend, make_registry)

    result = await pipeline.process_image(PNG, debug=True)

    assert result["questions"][0]["answer"] == []
    assert result["debug"]["per_question"][0]["final_confidence"] == 0.0


@pytest.mark.asyncio
async def test_parallel_questions(fake_settings, abstract_class_question, second_question, scripted_backend, make_registry, answer):
    settings = replace(fake_settings, parallel_questions=True)
    backend = scripted_backend({m.identity: answer(["B"]) for m in settings.models})
    pipeline = _pipeline(settings, [abstract_class_question, second_question], backend, make_registry)

    result = await pipeline.process_image(PNG)

    assert [q["question_id"] for q in result["questions"]] == ["1", "2"]
    assert len(backend.calls) == 6


@pytest.mark.asyncio
async def test_request_deadline_discards_partial_results(fake_settings, abstract_class_question, second_question, scripted_backend, make_registry, answer):
    settings = replace(fake_settings, timeouts=TimeoutConfig(request=0.2, extraction=0.1, model_call=5.0))
    backend = scripted_backend(
        {m.identity: answer(["B"]) for m in settings.models},
        delays={"fake:m3": 0.15}
    )
    pipeline = _pipeline(settings, [abstract_class_question, second_question], backend, make_registry)

    result = await pipeline.process_image(PNG)

    assert result["error"] == "request_timeout"
    assert "questions" not in result


@pytest.mark.asyncio
async def test_extraction_failure_payload(fake_settings, scripted_backend, make_registry):
    pipeline = _pipeline(fake_settings, None, scripted_backend({}), make_registry,
                         error=ExtractionFailed("No complete questions detected in image"))

    result = await pipeline.process_image(PNG)

    assert result == {"error": "extraction_failed", "message": "No complete questions detected in image"}


@pytest.mark.asyncio
async def test_extraction_timeout(fake_settings, abstract_class_question, scripted_backend, make_registry):
    settings = replace(fake_settings, timeouts=TimeoutConfig(request=2.0, extraction=0.05, model_call=1.0))
    pipeline = _pipeline(settings, [abstract_class_question], scripted_backend({}), make_registry, delay=0.5)

    result = await pipeline.process_image(PNG)

    assert result["error"] == "extraction_failed"
    assert "timed out" in result["message"]


@pytest.mark.asyncio
async def test_process_text(fake_settings, abstract_class_question, scripted_backend, make_registry, answer):
    backend = scripted_backend({m.identity: answer(["B"]) for m in fake_settings.models})
    pipeline = _pipeline(fake_settings, [abstract_class_question], backend, make_registry)
    text = "1. What happens if an abstract class does not have any abstract methods?\nA) ...\nB) ..."

    result = await pipeline.process_text(text)

    assert result["original_text"] == text
    assert result["questions"][0]["answer"] == ["B) The class can still be abstract."]
    pipeline.extractor.extract_from_text.assert_awaited_once()


@pytest.mark.asyncio
async def test_process_text_empty(fake_settings, scripted_backend, make_registry):
    pipeline = _pipeline(fake_settings, [], scripted_backend({}), make_registry)

    assert await pipeline.process_text("   ") == {"error": "no_text", "message": "No text provided"}
    pipeline.extractor.extract_from_text.assert_not_called()


def test_from_settings_wires_components(fake_settings):
    with patch("mcq_core.extractor.genai.Client"):
        pipeline = MCQPipeline.from_settings(fake_settings, api_keys={"gemini": "k", "ocr": "ocr-key"})

    assert pipeline.dispatcher.model_call_timeout == 1.0
    assert pipeline.extractor.ocr.api_key == "ocr-key"
    assert pipeline.extractor.structurer.model.identity == "fake:parser"
    assert pipeline.extractor.vision.model == fake_settings.vision_model
    assert pipeline.extractor.min_option_text_length == fake_settings.min_option_text_length
