from __future__ import annotations

"""Server-side proxy to the Gemini ``generateContent`` API.

Context data is attached to the prompt in the cheapest available encoding
(TOON when the compact codec is loaded, JSON otherwise), the call is retried
with exponential backoff, and a TOON answer can be decoded back to structured
data. A token report describing encoding sizes travels with every response,
including upstream failures.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
from pydantic import BaseModel, Field, StrictStr

from ..domain.errors import ConfigurationError, EncodingError, UpstreamExhaustedError, UpstreamTransientError
from ..observability.metrics import UPSTREAM_ATTEMPTS
from .compact_codec import CompactCodec, load_compact_codec
from .retry import AttemptResult, RetryPolicy, run_with_retry
from .token_report import context_savings, estimate_tokens, new_token_report, response_savings

LOG = logging.getLogger("chatline.llm")

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
TOON_SYSTEM_PROMPT = "You MUST return the response strictly in TOON format (no additional commentary)."
DEFAULT_RETRY_POLICY = RetryPolicy(max_attempts=3, initial_delay=1.0, backoff_multiplier=2.0)


@dataclass
class GeminiConfig:
    api_key: Optional[str]
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.5-flash-preview-09-2025"
    attempt_timeout: float = 30.0

    @staticmethod
    def from_env() -> "GeminiConfig":
        return GeminiConfig(
            api_key=os.getenv("GEMINI_API_KEY") or None,
            base_url=os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"),
            model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash-preview-09-2025"),
            attempt_timeout=float(os.getenv("GEMINI_ATTEMPT_TIMEOUT_SECONDS", "30")),
        )

    @property
    def endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/models/{self.model}:generateContent"


class GenerateRequest(BaseModel):
    prompt: StrictStr = Field(min_length=1)
    contextData: Any = None
    config: Any = None
    systemPrompt: Any = None

    @property
    def wants_compact_output(self) -> bool:
        # Malformed config is ignored, never rejected
        return isinstance(self.config, dict) and self.config.get("responseFormat") == "toon"

    @property
    def carries_context(self) -> bool:
        return has_context(self.contextData)


def has_context(value: Any) -> bool:
    """False for null and for falsy scalars (0, "", false, NaN); empty containers still count."""
    if value is None or isinstance(value, bool):
        return bool(value)
    if isinstance(value, (int, float)):
        return value == value and value != 0
    if isinstance(value, str):
        return value != ""
    return True


@dataclass
class PreparedPrompt:
    text: str
    system_instruction: str
    context_format: Optional[str] = None


def encode_json(data: Any) -> str:
    try:
        return json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        return str(data)


def select_system_instruction(system_prompt: Any, wants_compact_output: bool) -> str:
    if isinstance(system_prompt, str) and system_prompt.strip():
        return system_prompt
    if wants_compact_output:
        return TOON_SYSTEM_PROMPT
    return DEFAULT_SYSTEM_PROMPT


def extract_text(result: Any) -> Optional[str]:
    try:
        text = result["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return None
    return text if isinstance(text, str) and text else None


def empty_content_reason(result: Any) -> str:
    message = "No content generated."
    if not isinstance(result, dict):
        return message
    candidates = result.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        candidate = candidates[0]
    else:
        candidate = {}
    if candidate.get("finishReason"):
        message = f"Generation failed: {candidate['finishReason']}"
    feedback = result.get("promptFeedback") or {}
    if isinstance(feedback, dict) and feedback.get("blockReason"):
        message = f"Prompt blocked: {feedback['blockReason']}"
    return message


class GenerativeProxy:
    def __init__(
        self,
        config: Optional[GeminiConfig] = None,
        codec: Optional[CompactCodec] = None,
        *,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or GeminiConfig.from_env()
        self.codec = codec
        self.policy = policy
        self._transport = transport
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Prompt assembly
    # ------------------------------------------------------------------
    def prepare(self, req: GenerateRequest) -> Tuple[PreparedPrompt, Dict[str, Any]]:
        report = new_token_report()
        text = req.prompt
        context_format: Optional[str] = None

        if req.carries_context:
            json_context = encode_json(req.contextData)
            report["context"]["json"] = estimate_tokens(json_context)
            chosen = json_context
            context_format = "JSON"
            if self.codec is not None:
                try:
                    compact = self.codec.encode(req.contextData)
                except EncodingError as exc:
                    LOG.warning("compact_encode_failed", extra={"err": str(exc)})
                else:
                    report["context"]["toon"] = estimate_tokens(compact)
                    report["context"]["savings"] = context_savings(report["context"]["json"], report["context"]["toon"])
                    chosen = compact
                    context_format = "TOON"
            text = f"{req.prompt}\n\n### Context Data (Format: {context_format})\n{chosen}"

        stats = estimate_tokens(text)
        report["prompt"]["finalPromptBytes"] = stats["bytes"]
        report["prompt"]["finalPromptEstimatedTokens"] = stats["estimatedTokens"]

        prepared = PreparedPrompt(
            text=text,
            system_instruction=select_system_instruction(req.systemPrompt, req.wants_compact_output),
            context_format=context_format,
        )
        return prepared, report

    @staticmethod
    def build_payload(prepared: PreparedPrompt) -> Dict[str, Any]:
        return {
            "system_instruction": {"parts": [{"text": prepared.system_instruction}]},
            "contents": [{"role": "user", "parts": [{"text": prepared.text}]}],
        }

    # ------------------------------------------------------------------
    # Upstream call
    # ------------------------------------------------------------------
    async def _attempt(self, client: httpx.AsyncClient, payload: Dict[str, Any]) -> str:
        cfg = self.config
        try:
            response = await asyncio.wait_for(
                client.post(cfg.endpoint, params={"key": cfg.api_key}, json=payload),
                timeout=cfg.attempt_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamTransientError(f"Attempt timed out after {cfg.attempt_timeout}s") from exc
        except httpx.HTTPError as exc:
            raise UpstreamTransientError(f"Transport error: {exc}") from exc

        if not response.is_success:
            raise UpstreamTransientError(
                f"API Error: {response.status_code} {response.reason_phrase} - {response.text}",
                status_code=response.status_code,
            )
        try:
            result = response.json()
        except ValueError as exc:
            raise UpstreamTransientError("API returned a non-JSON body") from exc

        text = extract_text(result)
        if text is None:
            raise UpstreamTransientError(empty_content_reason(result))
        return text

    @staticmethod
    def _log_failure(result: AttemptResult[str]) -> None:
        UPSTREAM_ATTEMPTS.labels(outcome="failure").inc()
        LOG.warning("gemini_attempt_failed", extra={"attempt": result.attempt, "err": str(result.error)})

    async def generate(self, req: GenerateRequest) -> Dict[str, Any]:
        if not self.config.api_key:
            raise ConfigurationError("Server API key not configured")

        prepared, report = self.prepare(req)
        payload = self.build_payload(prepared)

        async with httpx.AsyncClient(transport=self._transport, timeout=self.config.attempt_timeout) as client:
            outcome = await run_with_retry(
                lambda _attempt: self._attempt(client, payload),
                self.policy,
                retry_on=(UpstreamTransientError,),
                sleep=self._sleep,
                on_failure=self._log_failure,
            )

        if not outcome.succeeded:
            error = outcome.last_error
            raise UpstreamExhaustedError(
                str(error) if error else "Failed to generate content",
                attempts=len(outcome.attempts),
                token_report=report,
            )

        UPSTREAM_ATTEMPTS.labels(outcome="success").inc()
        text = outcome.value or ""
        if req.wants_compact_output and self.codec is not None and self.codec.can_decode:
            return self._decode_response(text, report)

        report["response"] = {"text": estimate_tokens(text)}
        return {"text": text, "tokenReport": report}

    def _decode_response(self, text: str, report: Dict[str, Any]) -> Dict[str, Any]:
        try:
            data = self.codec.decode(text)  # type: ignore[union-attr]
        except EncodingError as exc:
            LOG.warning("compact_decode_failed", extra={"err": str(exc)})
            report["response"] = {"toon": estimate_tokens(text)}
            return {"text": text, "tokenReport": report}

        response: Dict[str, Any] = {"toon": estimate_tokens(text)}
        try:
            response["decodedJson"] = estimate_tokens(json.dumps(data, ensure_ascii=False, separators=(",", ":")))
        except (TypeError, ValueError):
            response["decodedJson"] = None
        if response["decodedJson"]:
            response["savings"] = response_savings(response["toon"], response["decodedJson"])
        report["response"] = response
        return {"text": text, "data": data, "tokenReport": report}


_proxy: GenerativeProxy | None = None


def get_generative_proxy() -> GenerativeProxy:
    global _proxy
    if _proxy is None:
        _proxy = GenerativeProxy(GeminiConfig.from_env(), load_compact_codec())
    return _proxy


def reset_generative_proxy(proxy: Optional[GenerativeProxy] = None) -> None:
    global _proxy
    _proxy = proxy
