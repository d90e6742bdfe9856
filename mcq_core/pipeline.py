# mcq_core/pipeline.py
"""
Pipeline orchestrator: extraction -> per-question dispatch -> vote -> answers.

Design Decisions:
- One overall deadline per request. Exceeding it returns a single
  request_timeout error and discards any per-question results already
  computed, so a response is either complete or an error, never partial
- Extraction runs once per request under its own (shorter) budget
- Each question is dispatched and voted on independently; a failing model
  or question degrades that question's answer (empty or low confidence)
  without touching its siblings
- Questions run sequentially by default, which bounds outbound concurrency
  to one question's model fan-out; parallel_questions=True runs them
  concurrently with the same isolation and deadline guarantees

Usage:
    pipeline = MCQPipeline.from_config("config.yaml")
    result = await pipeline.process_image(image_bytes, debug=True)
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Sequence

from mcq_core.config import (
    ModelSpec,
    PipelineSettings,
    build_settings,
    get_api_keys,
    load_config,
)
from mcq_core.dispatcher import ModelDispatcher
from mcq_core.ensemble import vote
from mcq_core.exceptions import ExtractionFailed, RequestTimeout
from mcq_core.extractor import QuestionExtractor
from mcq_core.llm_clients import BackendRegistry
from mcq_core.models import CallFailure, EnsembleResult, Question

logger = logging.getLogger(__name__)


def _prefix(req_id: Optional[str]) -> str:
    return f"REQ#{req_id} | " if req_id else ""


class MCQPipeline:
    """Answers multiple-choice questions from an image or text with a model ensemble."""

    def __init__(
        self,
        settings: PipelineSettings,
        extractor: QuestionExtractor,
        dispatcher: ModelDispatcher
    ):
        self.settings = settings
        self.extractor = extractor
        self.dispatcher = dispatcher

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        api_keys: Optional[Dict[str, str]] = None,
        registry: Optional[BackendRegistry] = None
    ) -> "MCQPipeline":
        api_keys = api_keys if api_keys is not None else get_api_keys()
        registry = registry or BackendRegistry.from_api_keys(api_keys)
        return cls(
            settings=settings,
            extractor=QuestionExtractor.from_settings(registry, settings, api_keys),
            dispatcher=ModelDispatcher.from_settings(registry, settings)
        )

    @classmethod
    def from_config(cls, config_path: str = "config.yaml") -> "MCQPipeline":
        return cls.from_settings(build_settings(load_config(config_path)))

    async def process_image(
        self,
        image: bytes,
        debug: bool = False,
        requested_models: Optional[Sequence[str]] = None,
        req_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Extract questions from an image and answer each one.

        Returns:
            {"questions": [...], "metadata": {...}} or {"error": ..., "message": ...}
        """
        models = self.settings.resolve_models(requested_models)

        async def flow() -> Dict[str, Any]:
            try:
                questions = await asyncio.wait_for(
                    self.extractor.extract(image, req_id),
                    timeout=self.settings.timeouts.extraction
                )
            except asyncio.TimeoutError:
                raise ExtractionFailed(f"extraction timed out after {self.settings.timeouts.extraction}s") from None
            results = await self.answer_questions(questions, models, req_id)
            return self._assemble(results, models, debug)

        response = await self._run_with_deadline(flow(), req_id)
        if "questions" in response:
            logger.info(f"{_prefix(req_id)}Pipeline - image processing complete: "
                        f"{len(response['questions'])} questions, {len(models)} models used")
        return response

    async def process_text(
        self,
        text: str,
        debug: bool = False,
        requested_models: Optional[Sequence[str]] = None,
        req_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Same as process_image, but structures already-extracted text."""
        if not text or not text.strip():
            return {"error": "no_text", "message": "No text provided"}

        models = self.settings.resolve_models(requested_models)

        async def flow() -> Dict[str, Any]:
            try:
                questions = await asyncio.wait_for(
                    self.extractor.extract_from_text(text, req_id),
                    timeout=self.settings.timeouts.extraction
                )
            except asyncio.TimeoutError:
                raise ExtractionFailed(f"structuring timed out after {self.settings.timeouts.extraction}s") from None
            results = await self.answer_questions(questions, models, req_id)
            return {"original_text": text, **self._assemble(results, models, debug)}

        return await self._run_with_deadline(flow(), req_id)

    async def answer_questions(
        self,
        questions: Sequence[Question],
        models: Sequence[ModelSpec],
        req_id: Optional[str] = None
    ) -> List[EnsembleResult]:
        if self.settings.parallel_questions:
            return list(await asyncio.gather(*(self.answer_question(q, models, req_id) for q in questions)))
        results = []
        for question in questions:
            results.append(await self.answer_question(question, models, req_id))
        return results

    async def answer_question(
        self,
        question: Question,
        models: Sequence[ModelSpec],
        req_id: Optional[str] = None
    ) -> EnsembleResult:
        """Dispatch one question and vote; failures degrade to an empty answer."""
        try:
            outcomes = await self.dispatcher.dispatch(question, models, req_id=req_id)
        except Exception as e:
            logger.error(f"{_prefix(req_id)}Model - question {question.id}: model calls failed: {e}")
            outcomes = [CallFailure(m.identity, str(e) or type(e).__name__) for m in models]

        result = vote(question, outcomes, self.settings.weights, self.settings.vote_threshold)
        logger.info(
            f"{_prefix(req_id)}Ensemble - Q{question.id} answered: {','.join(result.selected_labels) or '-'} "
            f"(confidence: {round(result.final_confidence * 100)}%)"
        )
        return result

    async def _run_with_deadline(self, flow: Awaitable[Dict[str, Any]], req_id: Optional[str]) -> Dict[str, Any]:
        try:
            try:
                return await asyncio.wait_for(flow, timeout=self.settings.timeouts.request)
            except asyncio.TimeoutError:
                raise RequestTimeout(f"request exceeded {self.settings.timeouts.request}s deadline") from None
        except RequestTimeout as e:
            logger.error(f"{_prefix(req_id)}Pipeline - {e}")
            return {"error": "request_timeout", "message": str(e)}
        except ExtractionFailed as e:
            logger.error(f"{_prefix(req_id)}OCR - Failed: {e.reason}")
            return {"error": "extraction_failed", "message": e.reason}

    def _assemble(self, results: List[EnsembleResult], models: Sequence[ModelSpec], debug: bool) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "questions": [
                {
                    "question": r.question_text,
                    "answer": r.answer_lines(),
                    "question_id": r.question_id
                }
                for r in results
            ],
            "metadata": {
                "models": [m.identity for m in models],
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        }
        if debug:
            response["debug"] = {"per_question": [r.to_dict() for r in results]}
        return response


async def process_image(
    image: bytes,
    debug: bool = False,
    requested_models: Optional[Sequence[str]] = None,
    req_id: Optional[str] = None,
    config_path: str = "config.yaml"
) -> Dict[str, Any]:
    """One-shot entry point: build a pipeline from config and process one image."""
    pipeline = MCQPipeline.from_config(config_path)
    return await pipeline.process_image(image, debug=debug, requested_models=requested_models, req_id=req_id)


async def process_text(
    text: str,
    debug: bool = False,
    requested_models: Optional[Sequence[str]] = None,
    req_id: Optional[str] = None,
    config_path: str = "config.yaml"
) -> Dict[str, Any]:
    """One-shot entry point: build a pipeline from config and process raw text."""
    pipeline = MCQPipeline.from_config(config_path)
    return await pipeline.process_text(text, debug=debug, requested_models=requested_models, req_id=req_id)
