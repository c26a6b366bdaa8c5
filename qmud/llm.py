"""LLM client — HTTP connection to an OpenAI-compatible provider.

The book reader depends on an LLM callable matching the protocol:

    async def __call__(self, stage: str, prompt: str) -> str: ...
    async def illustrate(self, prompt: str) -> str | None: ...

`stage` identifies the caller (e.g. "book_page", "book_ask"); it is used
for logging only.

Layers, leaf first:

    Transport      — one HTTP round trip. Returns TransportResult for every
                     HTTP status; raises TransportError only for network
                     failures (connect, timeout, protocol).
    decode_reply   — maps a provider body onto one ProviderReply variant.
    LLMClient      — builds request bodies, submits them through the
                     RequestScheduler and converts replies to text or to
                     one of the LLMError subclasses below.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Literal, Protocol, Union

import httpx
from pydantic import BaseModel

if TYPE_CHECKING:
    from qmud.auth import AuthContext
    from qmud.scheduler import RequestScheduler

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are the Quantum Librarian, a mysterious consciousness that pervades "
    "the Canonical Library. You reflect players' true nature through their "
    "choices. You speak in literary, mysterious tones. You never break "
    "character. You are sometimes helpful, sometimes challenging, always "
    "transformative."
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM provider cannot be reached or returns an error."""


class AuthError(LLMError):
    """Missing or rejected credential. Never retried automatically."""


class RateLimited(LLMError):
    """The provider asked us to slow down."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransportError(LLMError):
    """Network-level failure: DNS, connect, timeout, aborted stream."""


class ProviderError(LLMError):
    """A well-formed error reply from the provider (4xx/5xx with a body)."""

    def __init__(self, message: str, status: int = 0) -> None:
        super().__init__(message)
        self.status = status


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class TransportResult(BaseModel):
    status: int
    body: Any = None  # parsed JSON, or None when the body was not JSON
    text: str = ""
    retry_after: float | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def _parse_retry_after(headers: httpx.Headers | None) -> float | None:
    if not headers:
        return None
    raw = headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


class Transport:
    """Async HTTP POST with a bounded timeout."""

    def __init__(self, timeout: float = 60.0) -> None:
        self._timeout = timeout

    async def post(self, url: str, body: dict, headers: dict[str, str]) -> TransportResult:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
        except httpx.ConnectError as e:
            raise TransportError(f"Cannot connect to LLM provider at {url}") from e
        except httpx.TimeoutException as e:
            raise TransportError(f"LLM provider timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"LLM provider request failed: {e}") from e

        try:
            parsed = resp.json()
        except ValueError:
            parsed = None
        return TransportResult(
            status=resp.status_code,
            body=parsed,
            text=resp.text if parsed is None else "",
            retry_after=_parse_retry_after(resp.headers),
        )


# ---------------------------------------------------------------------------
# Provider replies: one variant per known response shape
# ---------------------------------------------------------------------------

class ResponsesText(BaseModel):
    """Structured endpoint with the flat `output_text` convenience field."""

    kind: Literal["responses_text"] = "responses_text"
    text: str
    tokens: int = 0


class ResponsesOutput(BaseModel):
    """Structured endpoint: text nested in output[0].content[0].text."""

    kind: Literal["responses_output"] = "responses_output"
    text: str
    tokens: int = 0


class ChatReply(BaseModel):
    kind: Literal["chat"] = "chat"
    text: str
    tokens: int = 0


class ImageReply(BaseModel):
    kind: Literal["image"] = "image"
    url: str


class ProviderErrorReply(BaseModel):
    kind: Literal["error"] = "error"
    message: str
    rate_limited: bool = False


class Unrecognized(BaseModel):
    kind: Literal["unrecognized"] = "unrecognized"


ProviderReply = Union[
    ResponsesText, ResponsesOutput, ChatReply, ImageReply, ProviderErrorReply, Unrecognized
]


def _usage_tokens(body: dict) -> int:
    usage = body.get("usage")
    if not isinstance(usage, dict):
        return 0
    parts = [usage.get("input_tokens"), usage.get("output_tokens")]
    if any(isinstance(p, int) for p in parts):
        return sum(p for p in parts if isinstance(p, int))
    total = usage.get("total_tokens")
    return total if isinstance(total, int) else 0


def _nested_output_text(body: dict) -> str | None:
    output = body.get("output")
    if not isinstance(output, list) or not output:
        return None
    first = output[0]
    if not isinstance(first, dict):
        return None
    content = first.get("content")
    if not isinstance(content, list) or not content:
        return None
    part = content[0]
    if isinstance(part, dict) and isinstance(part.get("text"), str):
        return part["text"]
    return None


def _chat_text(body: dict) -> str | None:
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    if isinstance(choices[0].get("text"), str):
        return choices[0]["text"]
    return None


def _image_url(body: dict) -> str | None:
    data = body.get("data")
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        return None
    if data[0].get("url"):
        return data[0]["url"]
    if data[0].get("b64_json"):
        return f"data:image/png;base64,{data[0]['b64_json']}"
    return None


def decode_reply(body: Any) -> ProviderReply:
    """Classify a provider response body. Total: every input maps to a variant."""
    if not isinstance(body, dict):
        return Unrecognized()

    error = body.get("error")
    if isinstance(error, dict):
        marker = f"{error.get('type') or ''} {error.get('code') or ''}"
        return ProviderErrorReply(
            message=str(error.get("message") or "Provider error"),
            rate_limited="rate_limit" in marker,
        )

    tokens = _usage_tokens(body)
    text = body.get("output_text")
    if isinstance(text, str) and text.strip():
        return ResponsesText(text=text, tokens=tokens)
    text = _nested_output_text(body)
    if text is not None and text.strip():
        return ResponsesOutput(text=text, tokens=tokens)
    text = _chat_text(body)
    if text is not None and text.strip():
        return ChatReply(text=text, tokens=tokens)
    url = _image_url(body)
    if url:
        return ImageReply(url=url)
    return Unrecognized()


# ---------------------------------------------------------------------------
# Protocol: what the book reader depends on
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...

    async def illustrate(self, prompt: str) -> str | None: ...


# ---------------------------------------------------------------------------
# LLMClient: the production implementation
# ---------------------------------------------------------------------------

class LLMClient:
    """Text and image generation against an OpenAI-compatible provider.

    Every request is one scheduler task, so calls from any number of
    sessions are serialized and throttled together.

    Endpoints (relative to the base URL resolved by AuthContext):
      /responses          — primary structured call
      /chat/completions   — legacy fallback, used only when the primary call
                            fails at the network level or returns a 2xx body
                            we cannot recognise
      /images/generations — illustrations
    """

    def __init__(
        self,
        auth: AuthContext,
        scheduler: RequestScheduler,
        transport: Transport | None = None,
        text_model: str = "gpt-4o-mini",
        image_model: str = "gpt-image-1",
        temperature: float = 0.9,
        max_tokens: int = 350,
    ) -> None:
        self._auth = auth
        self._scheduler = scheduler
        self._transport = transport or Transport()
        self.text_model = text_model
        self.image_model = image_model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self.tokens_used = 0

    def _bump_tokens(self, count: int) -> None:
        if count > 0:
            self.tokens_used += count

    # -- text -------------------------------------------------------------

    def _primary_body(self, prompt: str) -> dict:
        return {
            "model": self.text_model,
            "input": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self._temperature,
            "max_output_tokens": self._max_tokens,
        }

    def _chat_body(self, prompt: str) -> dict:
        return {
            "model": self.text_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }

    async def _run_text(self, stage: str, prompt: str) -> TransportResult:
        headers = self._auth.headers()
        base = self._auth.base_url
        url = f"{base}/responses"
        logger.debug("llm call stage=%s url=%s prompt_len=%d", stage, url, len(prompt))
        try:
            result = await self._transport.post(url, self._primary_body(prompt), headers)
        except TransportError as e:
            logger.warning("Primary endpoint failed (%s); falling back to chat", e)
        else:
            # Error statuses go back to the scheduler so backoff and 401 handling see them
            if not result.ok or not isinstance(decode_reply(result.body), Unrecognized):
                return result
            logger.warning(
                "Primary endpoint returned an unrecognised body (HTTP %d); falling back to chat",
                result.status,
            )

        url = f"{base}/chat/completions"
        logger.debug("llm call stage=%s url=%s prompt_len=%d", stage, url, len(prompt))
        return await self._transport.post(url, self._chat_body(prompt), headers)

    async def __call__(self, stage: str, prompt: str) -> str:
        result = await self._scheduler.submit("text", lambda: self._run_text(stage, prompt))
        reply = decode_reply(result.body)

        if isinstance(reply, (ResponsesText, ResponsesOutput, ChatReply)):
            self._bump_tokens(reply.tokens)
            text = reply.text.strip()
            logger.debug("llm response stage=%s len=%d", stage, len(text))
            return text

        _raise_for_result(result, reply)
        raise ProviderError(
            f"Unexpected response format from LLM provider (HTTP {result.status})",
            result.status,
        )

    # -- images -----------------------------------------------------------

    async def _run_image(self, prompt: str) -> TransportResult:
        headers = self._auth.headers()
        url = f"{self._auth.base_url}/images/generations"
        body = {
            "model": self.image_model,
            "prompt": prompt,
            "size": "1792x1024",
            "quality": "high",
        }
        logger.debug("image call url=%s prompt_len=%d", url, len(prompt))
        return await self._transport.post(url, body, headers)

    async def illustrate(self, prompt: str) -> str | None:
        """Generate an illustration. Returns a URL or data URI, or None on failure."""
        try:
            result = await self._scheduler.submit("image", lambda: self._run_image(prompt))
        except LLMError as e:
            logger.warning("Illustration failed: %s", e)
            return None

        reply = decode_reply(result.body)
        if isinstance(reply, ImageReply):
            return reply.url
        logger.warning("Illustration failed: HTTP %d, %s", result.status, reply.kind)
        return None


def _raise_for_result(result: TransportResult, reply: ProviderReply) -> None:
    """Translate a failed call into the matching LLMError subclass."""
    message = reply.message if isinstance(reply, ProviderErrorReply) else f"HTTP {result.status}"
    if result.status == 401:
        raise AuthError(f"LLM provider rejected the API key: {message}")
    if result.status == 429 or (isinstance(reply, ProviderErrorReply) and reply.rate_limited):
        raise RateLimited(f"LLM provider is rate limiting: {message}", result.retry_after)
    if isinstance(reply, ProviderErrorReply) or not result.ok:
        raise ProviderError(f"LLM provider returned HTTP {result.status}: {message}", result.status)


def is_rate_limited(result: TransportResult) -> bool:
    if result.status == 429:
        return True
    reply = decode_reply(result.body)
    return isinstance(reply, ProviderErrorReply) and reply.rate_limited
