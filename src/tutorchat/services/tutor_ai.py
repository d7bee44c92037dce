from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple

from langchain_openai import ChatOpenAI

from ..core.config import ChatGatewayConfig
from ..domain.errors import GenerationFailure
from .model_router import ModelRouter, ProviderSelection


logger = logging.getLogger("tutorchat.tutor")
LOG = logging.getLogger("tutorchat.llm")


_BREAKER_STATE = {"fails": 0, "opened_at": 0.0}
_BREAKER_THRESHOLD = int(os.getenv("TUTORCHAT_LLM_BREAKER_THRESHOLD", "3"))
_BREAKER_COOLDOWN = float(os.getenv("TUTORCHAT_LLM_BREAKER_COOLDOWN", "60.0"))


def _breaker_open() -> bool:
    opened = _BREAKER_STATE["opened_at"]
    if opened == 0.0:
        return False
    if time.time() - opened < _BREAKER_COOLDOWN:
        return True
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0
    return False


def _record_fail() -> None:
    _BREAKER_STATE["fails"] += 1
    if _BREAKER_STATE["fails"] >= _BREAKER_THRESHOLD and _BREAKER_STATE["opened_at"] == 0.0:
        _BREAKER_STATE["opened_at"] = time.time()
        LOG.warning(
            "llm_breaker_opened",
            extra={"fails": _BREAKER_STATE["fails"], "cooldown_s": _BREAKER_COOLDOWN},
        )


def _record_success() -> None:
    if _BREAKER_STATE["fails"] or _BREAKER_STATE["opened_at"]:
        LOG.info("llm_breaker_closed")
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0


@dataclass(frozen=True)
class GeneratedReply:
    text: str
    provider: Optional[str] = None
    model: Optional[str] = None


class ResponseGenerator(Protocol):
    async def generate(
        self,
        message: str,
        history: List[Dict[str, str]],
        goal_context: Optional[str],
        milestone_context: Optional[str],
    ) -> GeneratedReply: ...


def tutor_system_prompt(goal_context: Optional[str], milestone_context: Optional[str]) -> str:
    goal = goal_context or "General learning"
    lines = [f'You are an AI tutor helping a student achieve their learning goal: "{goal}".']
    if milestone_context:
        lines.append(f"The student is currently working on the milestone: {milestone_context}.")
    lines.extend(
        [
            "",
            "How to help:",
            "- Be encouraging and supportive, but realistic.",
            "- Ask clarifying questions when the request is ambiguous.",
            "- Give specific, actionable advice and concrete examples.",
            "- Break complex concepts into manageable steps.",
            "- Suggest a practical exercise or next step.",
            "- Keep answers focused: two or three short paragraphs at most.",
        ]
    )
    return "\n".join(lines)


def build_tutor_messages(
    message: str,
    history: List[Dict[str, str]],
    goal_context: Optional[str],
    milestone_context: Optional[str],
    window: int = 10,
) -> List[Dict[str, str]]:
    msgs = [{"role": "system", "content": tutor_system_prompt(goal_context, milestone_context)}]
    recent = history[-window:] if window > 0 else []
    for turn in recent:
        role = turn.get("role") or "user"
        if role not in ("user", "assistant"):
            role = "user"
        content = turn.get("content") or ""
        if content:
            msgs.append({"role": role, "content": content})
    msgs.append({"role": "user", "content": message})
    return msgs


def _content_text(result: object) -> str:
    content = getattr(result, "content", result)
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                parts.append(str(part.get("text", "")))
            else:
                parts.append(str(part))
        return "".join(parts)
    return str(content or "")


class LLMTutorGenerator:
    """Tutor replies from an OpenAI-compatible chat model via langchain-openai."""

    def __init__(self, router: Optional[ModelRouter] = None, temperature: float = 0.4, window: int = 10) -> None:
        self._router = router or ModelRouter()
        self._temperature = temperature
        self._window = window
        self._clients: Dict[Tuple[str, str], ChatOpenAI] = {}

    def _get_llm(self) -> Tuple[ChatOpenAI, ProviderSelection]:
        try:
            selection = self._router.select_provider("tutoring")
        except RuntimeError as exc:
            raise GenerationFailure("The tutor model is not configured") from exc
        key = (selection.name, selection.model)
        client = self._clients.get(key)
        if client is None:
            api_key = os.getenv(selection.api_key_env)
            logger.info(
                "Using remote LLM provider name=%s model=%s base_url=%s",
                selection.name,
                selection.model,
                selection.base_url,
            )
            client = ChatOpenAI(
                api_key=api_key,
                base_url=selection.base_url,
                model=selection.model,
                temperature=self._temperature,
                max_retries=0,
            )
            self._clients[key] = client
        return client, selection

    async def generate(
        self,
        message: str,
        history: List[Dict[str, str]],
        goal_context: Optional[str],
        milestone_context: Optional[str],
    ) -> GeneratedReply:
        if _breaker_open():
            raise GenerationFailure("The tutor is temporarily unavailable, please try again shortly")
        llm, selection = self._get_llm()
        msgs = build_tutor_messages(message, history, goal_context, milestone_context, self._window)
        LOG.debug("llm_request", extra={"provider": selection.name, "model": selection.model, "turns": len(msgs)})
        try:
            result = await llm.ainvoke(msgs)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            _record_fail()
            LOG.warning("llm_request_failed", extra={"provider": selection.name, "err": str(exc)})
            raise GenerationFailure("Failed to generate tutor response") from exc
        text = _content_text(result)
        if not text.strip():
            _record_fail()
            raise GenerationFailure("No response from the tutor model")
        _record_success()
        return GeneratedReply(text=text, provider=selection.name, model=selection.model)


class OfflineTutorGenerator:
    """Deterministic replies for local development without an API key."""

    async def generate(
        self,
        message: str,
        history: List[Dict[str, str]],
        goal_context: Optional[str],
        milestone_context: Optional[str],
    ) -> GeneratedReply:
        topic = message.strip().splitlines()[0] if message.strip() else "your question"
        if len(topic) > 160:
            topic = topic[:157] + "…"
        lines = [f'Good question about "{topic}".']
        if goal_context:
            focus = f" while you work on {milestone_context}" if milestone_context else ""
            lines.append(f"Let's connect it to your goal, {goal_context}{focus}.")
        lines.append("Start by restating the idea in your own words, then try one small example by hand.")
        lines.append("Tell me where it stops making sense and we'll dig into that step together.")
        return GeneratedReply(text=" ".join(lines), provider="offline", model="offline-tutor")


class TimeoutRetryGenerator:
    """Bound each attempt with a timeout and retry a fixed number of times."""

    def __init__(self, inner: ResponseGenerator, timeout_seconds: float = 60.0, retries: int = 1) -> None:
        self._inner = inner
        self._timeout = timeout_seconds
        self._retries = max(0, retries)

    async def generate(
        self,
        message: str,
        history: List[Dict[str, str]],
        goal_context: Optional[str],
        milestone_context: Optional[str],
    ) -> GeneratedReply:
        last_error: Optional[BaseException] = None
        for attempt in range(self._retries + 1):
            try:
                return await asyncio.wait_for(
                    self._inner.generate(message, history, goal_context, milestone_context),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError as exc:
                last_error = exc
                LOG.warning("llm_timeout", extra={"attempt": attempt + 1, "timeout_s": self._timeout})
            except GenerationFailure as exc:
                last_error = exc
                LOG.warning("llm_attempt_failed", extra={"attempt": attempt + 1, "err": exc.message})
        if isinstance(last_error, GenerationFailure):
            raise last_error
        raise GenerationFailure("The tutor took too long to respond, please try again") from last_error


def build_response_generator(config: Optional[ChatGatewayConfig] = None) -> ResponseGenerator:
    config = config or ChatGatewayConfig.from_env()
    offline = (os.getenv("TUTORCHAT_OFFLINE_TUTOR") or "").strip().lower() in ("1", "true", "yes")
    inner: ResponseGenerator
    if offline:
        inner = OfflineTutorGenerator()
    else:
        inner = LLMTutorGenerator(window=config.history_window)
    return TimeoutRetryGenerator(inner, config.generation_timeout_seconds, config.generation_retries)
