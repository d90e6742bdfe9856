"""
Question extraction from images and raw text.

Fallback chain:
    PrimaryVision --(overloaded / rate limited)--> SecondaryTextOCR -> LLMStructuring

- Primary: Gemini vision reads the image and returns questions as JSON
- Only transient capacity errors (HTTP 429/503, RESOURCE_EXHAUSTED,
  UNAVAILABLE) fall back; any other primary error means the image itself
  could not be read and is reported as ExtractionFailed
- Secondary: OCR.space returns plain text, an LLM structures it into the
  same question schema (one stricter retry if the first reply won't parse)
- Self-correction: when an option's text is shorter than
  min_option_text_length (2 by default, so a lone stray character counts)
  or just repeats its label, the vision model is asked once more with the
  suspicious options listed; a failed correction keeps the original result
"""
import logging
from typing import Any, Iterable, List, Optional

import httpx
from google import genai
from google.genai import types
from pydantic import ValidationError

from mcq_core.config import ModelSpec, PipelineSettings
from mcq_core.exceptions import (
    APIKeyMissingError,
    ExtractionFailed,
    ParseFailed,
    TransientCapacityError,
)
from mcq_core.llm_clients import BackendRegistry, extract_gemini_text
from mcq_core.models import OrderedOption, Question
from mcq_core.parser import load_json_lenient
from mcq_core.prompts import (
    format_correction_prompt,
    format_structuring_prompt,
    format_vision_prompt,
)

logger = logging.getLogger(__name__)

OCR_SPACE_URL = "https://api.ocr.space/parse/image"
OPTION_LETTERS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"

_RATE_LIMIT_CODES = {429}
_OVERLOAD_CODES = {503, 529}


def detect_mime_type(image: bytes) -> str:
    if image.startswith(b"\x89PNG"):
        return "image/png"
    if image.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if image[:4] == b"RIFF" and image[8:12] == b"WEBP":
        return "image/webp"
    if image.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    return "image/png"


def classify_capacity_error(exc: BaseException) -> Optional[str]:
    """Return "rate_limited" / "overloaded" for transient capacity errors, else None."""
    code = getattr(exc, "code", None) or getattr(exc, "status_code", None)
    status = str(getattr(exc, "status", "") or "").upper()
    message = str(exc).lower()

    if code in _RATE_LIMIT_CODES or status == "RESOURCE_EXHAUSTED" or "quota" in message or "rate limit" in message:
        return "rate_limited"
    if code in _OVERLOAD_CODES or status == "UNAVAILABLE" or "overloaded" in message:
        return "overloaded"
    return None


def _clean_label(raw: Any, index: int) -> str:
    label = str(raw).strip().strip("().:").strip() if raw is not None else ""
    if not label:
        label = OPTION_LETTERS[index] if index < len(OPTION_LETTERS) else str(index + 1)
    return label.upper()


def normalize_raw_questions(payload: Any) -> List[Question]:
    """
    Convert a decoded extraction payload into validated Questions.

    Accepts a list of question objects or a single object. String options get
    positional letter labels; missing ids become the 1-based position.
    Malformed questions (no options, duplicate labels) are dropped with a warning.
    """
    items = payload if isinstance(payload, list) else [payload]
    questions: List[Question] = []

    for i, item in enumerate(items):
        if not isinstance(item, dict):
            logger.warning(f"Skipping non-object question entry at position {i + 1}")
            continue
        raw_options = item.get("options") if isinstance(item.get("options"), list) else []
        options = []
        for idx, opt in enumerate(raw_options):
            if isinstance(opt, dict):
                options.append(OrderedOption(label=_clean_label(opt.get("label"), idx), text=str(opt.get("text") or "").strip()))
            elif opt is not None:
                options.append(OrderedOption(label=_clean_label(None, idx), text=str(opt).strip()))

        question_id = item.get("id") if item.get("id") is not None else item.get("question_id")
        try:
            questions.append(Question(
                id=str(question_id) if question_id is not None else str(i + 1),
                text=str(item.get("question") or item.get("text") or "").strip(),
                options=options,
                allows_multiple_answers=bool(item.get("multiChoice", item.get("allows_multiple_answers", False)))
            ))
        except ValidationError as e:
            logger.warning(f"Dropping malformed question at position {i + 1}: {e.errors()[0]['msg']}")

    return questions


def find_suspicious_options(questions: Iterable[Question], min_text_length: int = 1) -> List[str]:
    """Options whose text is missing, too short, or identical to the label ("Q1:A")."""
    problems = []
    for q in questions:
        for o in q.options:
            text = o.text.strip()
            if len(text) < min_text_length or text.lower() == o.label.strip().lower():
                problems.append(f"Q{q.id}:{o.label}")
    return problems


class GeminiVisionExtractor:
    """Primary extractor: Gemini reads questions straight from the image."""

    def __init__(self, api_key: Optional[str] = None, model: str = "gemini-2.5-flash"):
        self.client = genai.Client(api_key=api_key) if api_key else None
        self.model = model

    async def extract(self, image: bytes) -> List[Question]:
        return await self._ask(image, format_vision_prompt())

    async def correct(self, image: bytes, questions: List[Question], problems: List[str]) -> List[Question]:
        return await self._ask(image, format_correction_prompt(questions, problems))

    async def _ask(self, image: bytes, prompt: str) -> List[Question]:
        if not self.client:
            raise APIKeyMissingError("GeminiVisionExtractor requires GEMINI_API_KEY")
        try:
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents=[
                    types.Part.from_bytes(data=image, mime_type=detect_mime_type(image)),
                    prompt
                ],
                config={
                    "temperature": 0.0,
                    "response_mime_type": "application/json"
                }
            )
        except Exception as e:
            kind = classify_capacity_error(e)
            if kind:
                raise TransientCapacityError(kind, str(e)) from e
            raise

        payload = load_json_lenient(extract_gemini_text(response), (list, dict))
        if payload is None:
            raise ExtractionFailed("vision extractor returned no parseable JSON")
        return normalize_raw_questions(payload)


class OCRSpaceExtractor:
    """Secondary extractor: plain text via the OCR.space API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        language: str = "eng",
        timeout: float = 25.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key
        self.language = language
        self.timeout = timeout
        self.transport = transport

    async def extract_text(self, image: bytes) -> str:
        if not self.api_key:
            raise APIKeyMissingError("OCR_API_KEY environment variable is required for OCR.space")

        extension = detect_mime_type(image).split("/")[1]
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as http:
            response = await http.post(
                OCR_SPACE_URL,
                data={"apikey": self.api_key, "language": self.language, "isOverlayRequired": "false"},
                files={"file": (f"image.{extension}", image, detect_mime_type(image))}
            )
            response.raise_for_status()
            data = response.json()

        if data.get("IsErroredOnProcessing"):
            errors = data.get("ErrorMessage") or ["Unknown error"]
            if isinstance(errors, str):
                errors = [errors]
            raise ExtractionFailed(f"OCR.space error: {', '.join(errors)}")

        results = data.get("ParsedResults") or []
        return "\n".join(r.get("ParsedText", "") or "" for r in results)


class LLMStructurer:
    """Turns unstructured question text into Questions with one LLM call (plus one strict retry)."""

    def __init__(self, registry: BackendRegistry, model: ModelSpec, max_tokens: int = 4096):
        self.registry = registry
        self.model = model
        self.max_tokens = max_tokens

    async def structure(self, text: str, req_id: Optional[str] = None) -> List[Question]:
        if not text or not text.strip():
            raise ParseFailed("empty input")

        prefix = f"REQ#{req_id} | " if req_id else ""
        for strict in (False, True):
            reply = await self.registry.invoke(
                self.model,
                format_structuring_prompt(text, strict=strict),
                temperature=0.0,
                max_tokens=self.max_tokens
            )
            payload = load_json_lenient(reply.text, (list, dict))
            if payload is not None:
                questions = normalize_raw_questions(payload)
                logger.info(f"{prefix}Parser - structuring complete: {len(questions)} question(s) extracted")
                return questions
            if not strict:
                logger.warning(f"{prefix}Parser - first structuring attempt did not return JSON; retrying with stricter prompt")

        raise ParseFailed("parser did not return valid JSON")


class QuestionExtractor:
    """
    Primary vision extraction with OCR + structuring fallback.

    Usage:
        extractor = QuestionExtractor.from_settings(registry, settings, api_keys)
        questions = await extractor.extract(image_bytes)
    """

    def __init__(
        self,
        vision: GeminiVisionExtractor,
        ocr: OCRSpaceExtractor,
        structurer: LLMStructurer,
        self_correction: bool = True,
        min_option_text_length: int = 2
    ):
        self.vision = vision
        self.ocr = ocr
        self.structurer = structurer
        self.self_correction = self_correction
        self.min_option_text_length = min_option_text_length

    @classmethod
    def from_settings(cls, registry: BackendRegistry, settings: PipelineSettings, api_keys: dict) -> "QuestionExtractor":
        return cls(
            vision=GeminiVisionExtractor(api_keys.get("gemini") or None, model=settings.vision_model),
            ocr=OCRSpaceExtractor(api_keys.get("ocr") or None, language=settings.ocr_language,
                                  timeout=settings.timeouts.extraction),
            structurer=LLMStructurer(registry, settings.structuring_model),
            self_correction=settings.self_correction,
            min_option_text_length=settings.min_option_text_length
        )

    async def extract(self, image: bytes, req_id: Optional[str] = None) -> List[Question]:
        """
        Extract questions from an image.

        Raises:
            ExtractionFailed: No usable questions (including non-transient vision errors)
        """
        if not image:
            raise ExtractionFailed("empty image")

        prefix = f"REQ#{req_id} | " if req_id else ""
        try:
            questions = await self.vision.extract(image)
        except TransientCapacityError as e:
            logger.warning(f"{prefix}OCR - vision extractor unavailable ({e.kind}); falling back to OCR + structuring")
            questions = await self._extract_via_ocr(image, req_id)
        except ExtractionFailed:
            raise
        except Exception as e:
            raise ExtractionFailed(f"vision extraction failed: {e}") from e
        else:
            if self.self_correction:
                questions = await self._self_correct(image, questions, prefix)

        if not questions:
            raise ExtractionFailed("No complete questions detected in image")
        return questions

    async def extract_from_text(self, text: str, req_id: Optional[str] = None) -> List[Question]:
        try:
            questions = await self.structurer.structure(text, req_id)
        except ParseFailed as e:
            raise ExtractionFailed(f"parse_failed: {e}") from e
        except ExtractionFailed:
            raise
        except Exception as e:
            raise ExtractionFailed(f"structuring failed: {e}") from e
        if not questions:
            raise ExtractionFailed("No complete questions detected in text")
        return questions

    async def _extract_via_ocr(self, image: bytes, req_id: Optional[str]) -> List[Question]:
        try:
            text = await self.ocr.extract_text(image)
        except ExtractionFailed:
            raise
        except Exception as e:
            raise ExtractionFailed(f"OCR failed: {e}") from e
        if not text.strip():
            raise ExtractionFailed("OCR returned no text")
        return await self.extract_from_text(text, req_id)

    async def _self_correct(self, image: bytes, questions: List[Question], prefix: str) -> List[Question]:
        problems = find_suspicious_options(questions, self.min_option_text_length)
        if not problems:
            return questions

        logger.info(f"{prefix}OCR - re-querying vision model for suspicious options: {', '.join(problems)}")
        try:
            corrected = await self.vision.correct(image, questions, problems)
        except Exception as e:
            logger.warning(f"{prefix}OCR - self-correction failed, keeping original extraction: {e}")
            return questions
        if not corrected:
            logger.warning(f"{prefix}OCR - self-correction returned no questions, keeping original extraction")
            return questions
        return corrected
