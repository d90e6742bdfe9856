"""
Prompt templates for question evaluation and question extraction.

Prompt design philosophy:
- Every prompt asks for JSON only; the lenient parser (parser.py) repairs
  the usual deviations (fences, thinking blocks, prose) instead of
  rejecting them
- The evaluation prompt states explicitly that several options may be
  correct, so multi-answer questions are not forced into a single pick
- Extraction prompts share one question schema so the vision path and the
  OCR + structuring path produce identical shapes
"""
import json
from typing import Iterable

from mcq_core.models import OrderedOption, Question

QUESTION_SCHEMA_EXAMPLE = '[{"id":"1","question":"...","options":[{"label":"A","text":"..."}],"multiChoice":true}]'


EVALUATION_PROMPT = """You are an objective grader. For the given multiple choice question, evaluate which option or options are correct.

IMPORTANT: Multiple options can be correct. Carefully analyze if more than one option is valid and include ALL correct options in your answer.

Return ONLY valid JSON with this schema: {{"question_id":"{question_id}","selected_options":["A","B"],"is_multiple_correct":true,"confidence":0.85,"reasoning":"Short chain-of-thought reasoning."}}

Instructions:
- Set "is_multiple_correct" to true if multiple options are correct, false otherwise
- Include ALL correct options in "selected_options" array, using the option labels shown below
- "confidence" is a number between 0.0 and 1.0
- DO NOT add any surrounding commentary or markdown
{multi_hint}
Question: {question}
Options:
{options}
Evaluate and return the JSON only."""


STRUCTURING_PROMPT = """You are a strict parser. Parse the following raw text into a JSON array of multiple choice questions using this schema: {schema}.

Rules:
- Output ONLY valid JSON (no commentary).
- If options are unlabeled, assign labels A,B,C... in order.
- Set "multiChoice" to true if the question indicates multiple correct answers are possible (e.g., "select all that apply", "which are correct", etc.), otherwise false.
- Analyze the question text carefully to detect multi-answer questions.
- Do not add extra fields.

Text:

{text}"""


STRICT_STRUCTURING_PROMPT = """STRICT JSON ONLY. Return ONLY a valid JSON array matching the schema: {schema}. Set multiChoice=true if multiple answers are correct, false otherwise. No commentary.

Text:

{text}"""


VISION_EXTRACTION_PROMPT = """Extract every COMPLETE multiple choice question visible in this image.

Return ONLY a JSON array using this schema: {schema}

Rules:
- Copy question and option text exactly as printed.
- Use the option labels printed in the image; if options are unlabeled, assign A,B,C... in order.
- The option "text" is the option content, never just its label.
- Set "multiChoice" to true if the question indicates multiple correct answers are possible.
- Skip questions whose options are cut off or not visible.
- Return [] if no complete question is visible."""


CORRECTION_PROMPT = """You previously extracted these questions from the image:

{previous}

Some options look wrong: their text is empty or just repeats the label ({problems}).

Look at the image again and return the corrected questions as ONLY a JSON array using this schema: {schema}

Each option "text" must contain the full option content as printed."""


def format_options(options: Iterable[OrderedOption]) -> str:
    return "".join(f"{o.label}) {o.text}\n" for o in options)


def format_evaluation_prompt(question: Question) -> str:
    """Evaluation prompt sent to every backend for one question."""
    multi_hint = ""
    if question.allows_multiple_answers:
        multi_hint = "- This question indicates that more than one option may be correct\n"
    return EVALUATION_PROMPT.format(
        question_id=question.id,
        question=question.text,
        options=format_options(question.options),
        multi_hint=multi_hint
    )


def format_structuring_prompt(text: str, strict: bool = False) -> str:
    template = STRICT_STRUCTURING_PROMPT if strict else STRUCTURING_PROMPT
    return template.format(schema=QUESTION_SCHEMA_EXAMPLE, text=text)


def format_vision_prompt() -> str:
    return VISION_EXTRACTION_PROMPT.format(schema=QUESTION_SCHEMA_EXAMPLE)


def format_correction_prompt(questions: Iterable[Question], problems: Iterable[str]) -> str:
    previous = json.dumps(
        [
            {
                "id": q.id,
                "question": q.text,
                "options": [{"label": o.label, "text": o.text} for o in q.options],
                "multiChoice": q.allows_multiple_answers
            }
            for q in questions
        ],
        indent=2
    )
    return CORRECTION_PROMPT.format(
        previous=previous,
        problems=", ".join(problems),
        schema=QUESTION_SCHEMA_EXAMPLE
    )
