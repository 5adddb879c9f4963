"""
Compression Service: extracted text → short faithful description
═══════════════════════════════════════════════════════════════════

Two LLM passes over one LCEL chain shape (prompt | llm | StrOutputParser):

  1. draft   : describe the file in as few words as possible while keeping
               everything that could not be inferred back from fewer words
               (numbers, dates, entities, decisions, exact terminology).
  2. refine  : review the draft against the source and tighten it.
               Skipped when COMPRESSION_REFINE_PASS=false.

Both passes must answer with a JSON object {filename, file_type, description}.
Models that wrap output in <think> tags or markdown fences are tolerated.

Files with no extracted text (images, binary spreadsheets, unknown types)
are described from the filename and type alone.

Failure modes all raise CompressionFailed:
  - provider errors after ChatOpenAI's own retries
  - unparseable / incomplete JSON
  - empty description
"""

from __future__ import annotations

import logging
import re
import time

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate
from pydantic import BaseModel, Field, ValidationError

from fileflow.core.config import settings
from fileflow.schemas.files import FileType

logger = logging.getLogger(__name__)


class CompressionFailed(Exception):
    def __init__(self, message: str, reason: str = "API_ERROR", details: dict | None = None) -> None:
        super().__init__(message)
        self.reason  = reason      # API_ERROR | PARSE_ERROR | EMPTY_OUTPUT
        self.details = details or {}


class CompressedFile(BaseModel):
    filename:    str
    file_type:   FileType
    description: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

DRAFT_SYSTEM_PROMPT = """You compress uploaded files into the shortest faithful description.

Keep everything a reader could NOT reconstruct from fewer words:
- numbers, percentages, amounts, dates, deadlines, metrics
- people, companies, products, technologies
- decisions taken or rejected and the reason given
- exact terminology, defined terms, important quotes
- behavioural directives and tone (HOW to act, not only WHAT something is)

Condense anything easily inferable (background, generic prose, step-by-step
explanations) into telegraphic labels. Drop filler, qualifiers and
meta-commentary such as "This document contains". Use punctuation (. , ; : -)
heavily.

Type guidance:
- pdf: document type, structure, thesis, critical data, decisions, risks, action items
- text: purpose, key concepts, values, procedures, warnings, structure
- code: language, purpose, main components, key logic, dependencies, entry points
- spreadsheet: dimensions, headers, column types, notable values, what it tracks
- image / other: what can be inferred from the filename and type only

Answer ONLY with this JSON object and nothing else:
{{"filename": "<exact filename>", "file_type": "<pdf|image|text|code|spreadsheet|other>", "description": "<compressed description>"}}"""

DRAFT_USER_PROMPT = """Filename: {filename}
File type: {file_type}

Content:
{content}"""

REFINE_SYSTEM_PROMPT = """Review a compressed file description against its source.
- filename must match exactly; file_type must be one of pdf|image|text|code|spreadsheet|other
- every non-inferable fact from the source must survive (numbers, dates, entities, decisions)
- remove remaining noise, qualifiers and verbose prose; do not over-compress

Answer ONLY with the improved JSON object:
{{"filename": "<exact filename>", "file_type": "<type>", "description": "<refined description>"}}"""

REFINE_USER_PROMPT = """Filename: {filename}
File type: {file_type}

Source content:
{content}

Draft:
{draft}"""

_NO_TEXT_PLACEHOLDER = "(no extractable text; describe from the filename and type only)"

_THINK_RE       = re.compile(r"<think>.*?</think>", re.DOTALL)
_CODE_FENCE_RE  = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def parse_compression_output(raw: str) -> CompressedFile:
    """Pull the JSON object out of a model reply and validate it."""
    text = _THINK_RE.sub("", raw).strip()
    fenced = _CODE_FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    obj = _JSON_OBJECT_RE.search(text)
    if obj:
        text = obj.group(0)
    try:
        return CompressedFile.model_validate_json(text)
    except ValidationError as exc:
        raise CompressionFailed(
            "Model reply is not a valid compression result",
            reason="PARSE_ERROR",
            details={"raw": raw[:500], "errors": exc.errors(include_url=False)},
        ) from exc


def get_compression_llm() -> BaseChatModel:
    from langchain_openai import ChatOpenAI
    return ChatOpenAI(
        model=settings.compression_model,
        api_key=settings.openai_api_key,
        temperature=settings.compression_temperature,
        max_tokens=settings.compression_max_tokens,
        max_retries=settings.compression_max_retries,
    )


class CompressionService:
    """
    Stateless; one instance is shared by all pipeline runs.
    Pass `llm` to inject a fake chat model in tests.
    """

    def __init__(self, llm: BaseChatModel | None = None, refine: bool | None = None) -> None:
        self._llm    = llm
        self._refine = settings.compression_refine_pass if refine is None else refine

    @property
    def llm(self) -> BaseChatModel:
        if self._llm is None:
            self._llm = get_compression_llm()
        return self._llm

    async def compress(self, text: str, filename: str, file_type: FileType) -> str:
        t0 = time.monotonic()
        content = text.strip()[: settings.compression_max_input_chars] or _NO_TEXT_PLACEHOLDER
        if len(text) > settings.compression_max_input_chars:
            logger.warning(
                "Compression input truncated | file=%s chars=%d limit=%d",
                filename, len(text), settings.compression_max_input_chars,
            )

        variables = {"filename": filename, "file_type": file_type.value, "content": content}
        draft = await self._run(DRAFT_SYSTEM_PROMPT, DRAFT_USER_PROMPT, variables)
        result = draft

        if self._refine:
            result = await self._run(
                REFINE_SYSTEM_PROMPT,
                REFINE_USER_PROMPT,
                {**variables, "draft": draft.model_dump_json()},
            )

        description = result.description.strip()
        if not description:
            raise CompressionFailed("Model returned an empty description", reason="EMPTY_OUTPUT")

        logger.info(
            "Compression | file=%s type=%s in_chars=%d out_chars=%d refine=%s elapsed_ms=%.0f",
            filename, file_type.value, len(text), len(description),
            self._refine, (time.monotonic() - t0) * 1000,
        )
        return description

    async def _run(self, system_prompt: str, user_prompt: str, variables: dict) -> CompressedFile:
        prompt = ChatPromptTemplate.from_messages([("system", system_prompt), ("human", user_prompt)])
        chain = prompt | self.llm | StrOutputParser()
        try:
            raw = await chain.ainvoke(variables)
        except Exception as exc:
            logger.error("Compression provider error: %s %s", type(exc).__name__, exc)
            raise CompressionFailed(
                f"Compression provider error: {exc}",
                reason="API_ERROR",
                details={"error_type": type(exc).__name__},
            ) from exc
        if not raw or not raw.strip():
            raise CompressionFailed("Model returned an empty response", reason="EMPTY_OUTPUT")
        return parse_compression_output(raw)
