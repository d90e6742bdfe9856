"""
Model dispatch for one question.

Design:
- Every requested model yields exactly one outcome (Success, ParseFailure
  or CallFailure); one model's timeout or error never affects the others
- Each call races its own timeout; a call that loses the race is cancelled
  and its late result is never observed
- Models of the primary provider family are started first: that family is
  usually fastest, so its answer is available first to streaming consumers.
  The vote itself does not depend on order.
"""
import asyncio
import logging
import time
from typing import Callable, List, Optional, Sequence

from mcq_core.config import ModelSpec, PipelineSettings
from mcq_core.llm_clients import BackendRegistry
from mcq_core.models import CallFailure, ModelOutcome, ParseFailure, Question, Success
from mcq_core.parser import parse_answer
from mcq_core.prompts import format_evaluation_prompt

logger = logging.getLogger(__name__)

OutcomeCallback = Callable[[ModelOutcome], None]


class ModelDispatcher:
    """
    Queries an ordered list of model backends about one question.

    Usage:
        dispatcher = ModelDispatcher(registry, model_call_timeout=25.0, primary_family="cerebras")
        outcomes = await dispatcher.dispatch(question, settings.models)
    """

    def __init__(
        self,
        registry: BackendRegistry,
        model_call_timeout: float = 25.0,
        primary_family: Optional[str] = None,
        concurrent: bool = True,
        temperature: float = 0.1,
        max_tokens: int = 4096
    ):
        self.registry = registry
        self.model_call_timeout = model_call_timeout
        self.primary_family = primary_family
        self.concurrent = concurrent
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls, registry: BackendRegistry, settings: PipelineSettings) -> "ModelDispatcher":
        return cls(
            registry,
            model_call_timeout=settings.timeouts.model_call,
            primary_family=settings.primary_family,
            concurrent=settings.concurrent_models,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens
        )

    def dispatch_order(self, models: Sequence[ModelSpec]) -> List[int]:
        """Indices into `models` in start order: primary family first, request order within each group."""
        primary = [i for i, m in enumerate(models) if self.primary_family and m.provider_family == self.primary_family]
        return primary + [i for i in range(len(models)) if i not in primary]

    async def dispatch(
        self,
        question: Question,
        models: Sequence[ModelSpec],
        on_outcome: Optional[OutcomeCallback] = None,
        req_id: Optional[str] = None
    ) -> List[ModelOutcome]:
        """
        Ask every model about `question`.

        Args:
            question: Validated question
            models: Models to query (must not be empty)
            on_outcome: Called with each outcome as soon as it settles
            req_id: Request id for log correlation

        Returns:
            One outcome per model, in the same order as `models`

        Raises:
            ValueError: If `models` is empty
        """
        if not models:
            raise ValueError("dispatch requires at least one model")

        order = self.dispatch_order(models)
        prompt = format_evaluation_prompt(question)

        if self.concurrent:
            # tasks are created in dispatch order, so primary-family calls start first
            settled = await asyncio.gather(
                *(self._query_model(models[i], prompt, question.id, on_outcome, req_id) for i in order)
            )
        else:
            settled = []
            for i in order:
                settled.append(await self._query_model(models[i], prompt, question.id, on_outcome, req_id))

        outcomes: List[Optional[ModelOutcome]] = [None] * len(models)
        for i, outcome in zip(order, settled):
            outcomes[i] = outcome
        return outcomes

    async def _query_model(
        self,
        spec: ModelSpec,
        prompt: str,
        question_id: str,
        on_outcome: Optional[OutcomeCallback],
        req_id: Optional[str]
    ) -> ModelOutcome:
        prefix = f"REQ#{req_id} | " if req_id else ""
        start_time = time.monotonic()
        try:
            reply = await asyncio.wait_for(
                self.registry.invoke(spec, prompt, self.temperature, self.max_tokens),
                timeout=self.model_call_timeout
            )
        except asyncio.TimeoutError:
            outcome: ModelOutcome = CallFailure(spec.identity, "timeout", time.monotonic() - start_time)
            logger.warning(f"{prefix}Model - {spec.identity} timed out after {self.model_call_timeout}s (question {question_id})")
        except Exception as e:
            outcome = CallFailure(spec.identity, str(e) or type(e).__name__, time.monotonic() - start_time)
            logger.warning(f"{prefix}Model - {spec.identity} failed: {outcome.error_kind} (question {question_id})")
        else:
            latency = time.monotonic() - start_time
            parsed = parse_answer(reply.text) if reply.text and reply.text.strip() else None
            if parsed is None:
                outcome = ParseFailure(spec.identity, reply.text or "", latency)
                logger.warning(f"{prefix}Model - {spec.identity} returned no parseable answer (question {question_id})")
            else:
                outcome = Success(spec.identity, parsed, reply.text, latency)
                logger.info(
                    f"{prefix}Model - {spec.identity} completed in {round(latency * 1000)} ms: "
                    f"{list(parsed.selected_option_labels)} @ {parsed.confidence:.2f}"
                )

        if on_outcome is not None:
            try:
                on_outcome(outcome)
            except Exception:
                logger.exception(f"{prefix}Model - outcome callback failed for {spec.identity}")
        return outcome
