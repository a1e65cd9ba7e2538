"""LangChain-backed reasoning client (Google Gemini by default).

The prompt exposes the requester's accumulated context and the session
history, and asks for a JSON object so findings, confidence and hypothesis
verdicts come back structured.  Unparseable output is not an error: the
raw text becomes the response content with no verdict.

Failure mapping:
    - asyncio timeout                         → DispatchTimeout
    - HTTP 429 / RESOURCE_EXHAUSTED / "rate"  → RateLimited (with retry hint)
    - anything else raised by the model       → TransportError
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from typing import Any, Callable

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from deep_reason.config import settings
from deep_reason.domain.enums import AnalysisType, TurnRole, Verdict
from deep_reason.domain.errors import DispatchError, DispatchTimeout, RateLimited, TransportError
from deep_reason.reasoning.client import ReasoningRequest, ReasoningResponse, RequestPurpose

logger = logging.getLogger(__name__)

LLMFactory = Callable[[], Any]  # Returns a langchain BaseChatModel

CHECKPOINT_PREFIX = "[Summary of earlier conversation]\n"


def _default_llm_factory():
    """Create a Gemini chat model from environment config."""
    from langchain_google_genai import ChatGoogleGenerativeAI

    api_key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("DEEP_REASON_GEMINI_API_KEY")
    if not api_key:
        raise RuntimeError(
            "Gemini API key not found. Set GOOGLE_API_KEY or DEEP_REASON_GEMINI_API_KEY "
            "in your environment variables."
        )

    return ChatGoogleGenerativeAI(
        model=settings.gemini_model,
        google_api_key=api_key,
        temperature=settings.gemini_temperature,
        max_output_tokens=settings.gemini_max_output_tokens,
    )


# ── Prompts ─────────────────────────────────────────────────────────────────

_SYSTEM_PROMPT = """You are a deep code reasoning engine working with another engineer who got stuck on a defect.
Analysis type: {analysis_type}

What they already tried:
{approaches}

What they found so far:
{findings}

Where they got stuck:
{stuck_points}

Code scope:
{focus_area}"""

_TURN_INSTRUCTIONS = """Respond with ONLY a JSON object:
{"response": "<your analysis>", "findings": ["<new finding>", ...], "confidence": <0.0-1.0>}"""

_HYPOTHESIS_TEST_INSTRUCTIONS = """Respond with ONLY a JSON object:
{"response": "<your analysis>", "findings": ["<evidence>", ...], "confidence": <0.0-1.0>, "verdict": "supported" | "refuted" | "inconclusive"}"""

_FINALIZE_INSTRUCTIONS = {
    "detailed": "Write a detailed synthesis of the whole conversation: root causes, evidence, and open questions.",
    "concise": "Write a short synthesis (at most five sentences) of the conclusions reached.",
    "actionable": "Write the synthesis as a list of concrete next actions and code changes.",
}

_GENERATE_INSTRUCTIONS = """Propose exactly {count} distinct, testable hypotheses explaining the issue below.
Each must be a short factual statement (10-200 chars).

Issue: {issue}

Respond with ONLY a JSON object: {{"hypotheses": ["<statement>", ...]}}"""


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items) if items else "- (none)"


def build_messages(request: ReasoningRequest) -> list[BaseMessage]:
    """Translate a ReasoningRequest into chat messages."""
    ctx = request.context
    focus = ctx.focus_area
    scope = [f"file {f}" for f in focus.files]
    scope += [f"entry point {ep}" for ep in focus.entry_points]
    scope += [f"service {s}" for s in focus.service_names]

    system = _SYSTEM_PROMPT.format(
        analysis_type=request.analysis_type.value,
        approaches=_bullets(ctx.attempted_approaches),
        findings=_bullets([f"[{f.category}] {f.description}" for f in ctx.partial_findings]),
        stuck_points=_bullets(ctx.stuck_points),
        focus_area=_bullets(scope),
    )
    messages: list[BaseMessage] = [SystemMessage(content=system)]

    for turn in request.history:
        if turn.is_checkpoint:
            messages.append(HumanMessage(content=CHECKPOINT_PREFIX + turn.text))
        elif turn.role == TurnRole.REQUESTER:
            messages.append(HumanMessage(content=turn.text))
        else:
            messages.append(AIMessage(content=turn.text))

    messages.append(HumanMessage(content=_final_message(request)))
    return messages


def _final_message(request: ReasoningRequest) -> str:
    if request.purpose == RequestPurpose.GENERATE_HYPOTHESES:
        return _GENERATE_INSTRUCTIONS.format(
            count=request.hypothesis_count or 1, issue=request.message,
        )

    if request.purpose == RequestPurpose.FINALIZE:
        fmt = request.summary_format.value if request.summary_format else "detailed"
        return f"{request.message}\n\n{_FINALIZE_INSTRUCTIONS[fmt]}\n\n{_TURN_INSTRUCTIONS}"

    parts = [request.message]
    for ref in request.code_references:
        location = f"{ref.file}:{ref.line}" if ref.line is not None else ref.file
        parts.append(f"\n{location}\n{ref.snippet}" if ref.snippet else f"\n{location}")
    instructions = (
        _HYPOTHESIS_TEST_INSTRUCTIONS
        if request.analysis_type == AnalysisType.HYPOTHESIS_TEST
        else _TURN_INSTRUCTIONS
    )
    parts.append(f"\n{instructions}")
    return "\n".join(parts)


# ── Parsing ─────────────────────────────────────────────────────────────────


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = [line for line in text.split("\n") if not line.strip().startswith("```")]
        text = "\n".join(lines).strip()
    return text


def parse_response(text: str, purpose: RequestPurpose) -> ReasoningResponse:
    """Parse model output into a ReasoningResponse, with plain-text fallback."""
    cleaned = _strip_fences(text)
    try:
        raw = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.debug("Model output is not JSON; using raw text (%d chars)", len(cleaned))
        return ReasoningResponse(content=cleaned)

    if purpose == RequestPurpose.GENERATE_HYPOTHESES:
        items = raw.get("hypotheses", []) if isinstance(raw, dict) else raw
        if not isinstance(items, list):
            items = []
        statements = [str(item).strip()[:500] for item in items if str(item).strip()]
        return ReasoningResponse(content=cleaned, hypotheses=statements)

    if not isinstance(raw, dict):
        return ReasoningResponse(content=cleaned)

    confidence = raw.get("confidence")
    try:
        confidence = max(0.0, min(float(confidence), 1.0)) if confidence is not None else None
    except (TypeError, ValueError):
        confidence = None

    verdict = None
    if raw.get("verdict") is not None:
        try:
            verdict = Verdict(str(raw["verdict"]).strip().lower())
        except ValueError:
            logger.warning("Ignoring unknown verdict %r", raw["verdict"])

    findings = raw.get("findings") or []
    if not isinstance(findings, list):
        findings = [findings]

    return ReasoningResponse(
        content=str(raw.get("response", cleaned)),
        findings=[str(f) for f in findings],
        confidence=confidence,
        verdict=verdict,
    )


# ── Failure classification ──────────────────────────────────────────────────

_RETRY_PATTERNS = (
    re.compile(r"retry[_ ]?(?:after|in|delay)[^0-9]*([0-9]+(?:\.[0-9]+)?)", re.IGNORECASE),
    re.compile(r"seconds:\s*([0-9]+)"),
)


def _retry_hint(exc: BaseException) -> float | None:
    hint = getattr(exc, "retry_after", None)
    if isinstance(hint, (int, float)):
        return float(hint)
    for pattern in _RETRY_PATTERNS:
        match = pattern.search(str(exc))
        if match:
            return float(match.group(1))
    return None


def classify_failure(exc: BaseException, session_id: str | None = None) -> DispatchError:
    """Map an arbitrary model/transport exception onto the dispatch taxonomy."""
    status = getattr(exc, "status_code", None) or getattr(exc, "code", None)
    text = str(exc).lower()
    if (
        status == 429
        or type(exc).__name__ in ("ResourceExhausted", "RateLimitError")
        or "429" in text
        or "resource_exhausted" in text
        or "rate limit" in text
    ):
        return RateLimited(
            f"Reasoning backend rate limited: {exc}",
            entity_id=session_id,
            retry_after=_retry_hint(exc),
        )
    return TransportError(f"Reasoning backend failed: {exc}", entity_id=session_id)


# ── Client ──────────────────────────────────────────────────────────────────


class LangChainReasoningClient:
    """ReasoningClient implementation over any LangChain chat model.

    Args:
        llm_factory: Callable returning a langchain BaseChatModel.  Defaults
                     to Gemini via langchain-google-genai.  The model is
                     built lazily on first dispatch and reused.
    """

    def __init__(self, llm_factory: LLMFactory | None = None) -> None:
        self._llm_factory = llm_factory or _default_llm_factory
        self._llm: Any = None

    def _model(self) -> Any:
        if self._llm is None:
            self._llm = self._llm_factory()
        return self._llm

    async def dispatch(
        self,
        request: ReasoningRequest,
        time_budget: float,
    ) -> ReasoningResponse:
        messages = build_messages(request)
        try:
            llm = self._model()
            response = await asyncio.wait_for(llm.ainvoke(messages), timeout=time_budget)
        except asyncio.TimeoutError as exc:
            raise DispatchTimeout(
                f"No answer from reasoning backend within {time_budget:.1f}s",
                entity_id=request.session_id,
            ) from exc
        except DispatchError:
            raise
        except Exception as exc:
            failure = classify_failure(exc, request.session_id)
            logger.warning("Dispatch failed (%s): %s", failure.kind.value, exc)
            raise failure from exc

        text = response.content if hasattr(response, "content") else str(response)
        if not isinstance(text, str):
            text = json.dumps(text)
        logger.info(
            "Reasoning response for %s (%s): %d chars",
            request.session_id or "-", request.purpose.value, len(text),
        )
        return parse_response(text, request.purpose)
