"""
Async Generation Module

Provides the responder generation layer:
- Azure OpenAI chat completions over aiohttp (streaming and one-shot)
- GenerationStream: a single-consumption stream of speakable fragments with
  the structured result available once the stream is exhausted
- Incremental decoding of the ``audioText`` field from partial JSON so speech
  can start before the model has finished answering

Usage:
    provider = AzureGenerationProvider()
    stream = provider.stream(responder, GenerationRequest(user_text="Hi"))
    async for fragment in stream:
        ...
    result = stream.result
"""

import asyncio
import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tutor.config import settings
from tutor.core.registry import Responder
from tutor.logger import get_logger
from tutor.pipeline.signals import Continue, TurnSignal, parse_signal

logger = get_logger(__name__)


class GenerationError(Exception):
    """Raised when a responder cannot produce an answer."""


@dataclass
class Message:
    """Chat message for the generation provider."""
    role: str  # system, user, assistant
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class GenerationRequest:
    """
    Everything a responder needs to answer one turn.

    Attributes:
        user_text: The learner's utterance
        history: Recent conversation as chat messages
        context: Learner and lesson facts (grade, lesson title, ...)
        corrections: Required fixes from a rejected earlier attempt
        attempt: 1 for the first generation, 2 for the regeneration
    """
    user_text: str
    history: List[Message] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    corrections: List[str] = field(default_factory=list)
    attempt: int = 1


@dataclass
class GenerationResult:
    """Structured answer available at the end of a GenerationStream."""
    display_text: str
    audio_text: str
    visual_payload: Optional[str] = None
    signal: TurnSignal = field(default_factory=Continue)
    responder_id: str = ""


class GenerationStream:
    """
    Ordered, append-only fragments of one answer, consumed exactly once.

    The producer is an async generator function receiving the stream, so it
    can attach the structured result with ``set_result`` before finishing.
    Producers that never set a result get one built from the fragments.
    """

    def __init__(
        self,
        producer: Callable[["GenerationStream"], AsyncIterator[str]],
        responder_id: str = "",
    ):
        self.responder_id = responder_id
        self._source = producer(self)
        self._parts: List[str] = []
        self._result: Optional[GenerationResult] = None
        self._consumed = False
        self._finished = False

    def set_result(self, result: GenerationResult) -> None:
        self._result = result

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("GenerationStream can only be consumed once")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        async for fragment in self._source:
            if fragment:
                self._parts.append(fragment)
                yield fragment

        if self._result is None:
            text = "".join(self._parts)
            if not text.strip():
                raise GenerationError("Generation stream ended without any content")
            self._result = GenerationResult(
                display_text=text, audio_text=text, responder_id=self.responder_id
            )
        elif not self._result.responder_id:
            self._result.responder_id = self.responder_id
        self._finished = True

    @property
    def text(self) -> str:
        """Text streamed so far."""
        return "".join(self._parts)

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def result(self) -> GenerationResult:
        if not self._finished or self._result is None:
            raise RuntimeError("GenerationStream has not been fully consumed")
        return self._result


class GenerationProvider(ABC):
    """Produces a responder's answer for one turn."""

    @abstractmethod
    def stream(self, responder: Responder, request: GenerationRequest) -> GenerationStream:
        ...


# ============================================================================
# Structured response parsing
# ============================================================================

class TeachingPayload(BaseModel):
    """JSON shape responders are asked to answer in."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    audio_text: str = Field(default="", alias="audioText")
    display_text: str = Field(default="", alias="displayText")
    svg: Optional[str] = None
    lesson_complete: bool = Field(default=False, alias="lessonComplete")
    handoff_request: Optional[Union[str, Dict[str, Any]]] = Field(default=None, alias="handoffRequest")


_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def strip_code_fences(raw: str) -> str:
    return _CODE_FENCE.sub("", raw.strip()).strip()


def load_json_object(raw: str) -> Dict[str, Any]:
    """
    Parse a model's JSON answer.

    Tolerates markdown code fences and stray control characters. Raises
    ValueError when nothing usable is found.
    """
    cleaned = strip_code_fences(raw)
    for candidate in (cleaned, _escape_controls_in_strings(_CONTROL_CHARS.sub(" ", cleaned))):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise ValueError("Response is not a JSON object")


def _escape_controls_in_strings(text: str) -> str:
    """Escape raw newlines and tabs that appear inside JSON string literals."""
    out: List[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch in "\n\r\t":
                out.append({"\n": "\\n", "\r": "\\r", "\t": "\\t"}[ch])
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)


def parse_teaching_response(raw: str, responder_id: str = "") -> GenerationResult:
    """Parse a full teaching JSON answer into a GenerationResult."""
    try:
        payload = TeachingPayload.model_validate(load_json_object(raw))
    except (ValueError, ValidationError) as e:
        raise GenerationError(f"Unparseable teaching response: {e}") from e

    audio_text = payload.audio_text or payload.display_text
    display_text = payload.display_text or payload.audio_text
    if not display_text.strip():
        raise GenerationError("Teaching response has no text")

    return GenerationResult(
        display_text=display_text,
        audio_text=audio_text,
        visual_payload=payload.svg or None,
        signal=parse_signal(payload.lesson_complete, payload.handoff_request),
        responder_id=responder_id,
    )


_JSON_ESCAPES = {'"': '"', "\\": "\\", "/": "/", "b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t"}


class JsonStringFieldReader:
    """
    Incrementally decode one string field from a JSON document that is still
    being streamed.

    ``feed`` returns the newly decoded characters of the field value, holding
    back incomplete escape sequences until the rest arrives.
    """

    def __init__(self, field_name: str = "audioText"):
        self._pattern = re.compile(r'"%s"\s*:\s*"' % re.escape(field_name))
        self._buffer = ""
        self._cursor: Optional[int] = None
        self.done = False

    def feed(self, chunk: str) -> str:
        self._buffer += chunk
        if self.done:
            return ""

        if self._cursor is None:
            match = self._pattern.search(self._buffer)
            if not match:
                return ""
            self._cursor = match.end()

        buf = self._buffer
        i = self._cursor
        out: List[str] = []
        while i < len(buf):
            ch = buf[i]
            if ch == '"':
                self.done = True
                i += 1
                break
            if ch != "\\":
                out.append(ch)
                i += 1
                continue

            if i + 1 >= len(buf):
                break
            esc = buf[i + 1]
            if esc != "u":
                out.append(_JSON_ESCAPES.get(esc, esc))
                i += 2
                continue

            if i + 6 > len(buf):
                break
            code = _hex_or_replacement(buf[i + 2:i + 6])
            if 0xD800 <= code < 0xDC00:
                # surrogate pair needs the low half too
                if i + 12 > len(buf):
                    break
                low = _hex_or_replacement(buf[i + 8:i + 12])
                if buf[i + 6:i + 8] == "\\u" and 0xDC00 <= low < 0xE000:
                    out.append(chr(0x10000 + ((code - 0xD800) << 10) + (low - 0xDC00)))
                    i += 12
                    continue
                code = 0xFFFD
            out.append(chr(code))
            i += 6

        self._cursor = i
        return "".join(out)

    @property
    def raw(self) -> str:
        return self._buffer


def _hex_or_replacement(digits: str) -> int:
    try:
        return int(digits, 16)
    except ValueError:
        return 0xFFFD


# ============================================================================
# Azure OpenAI
# ============================================================================

RESPONSE_FORMAT_INSTRUCTION = (
    "Answer with a single JSON object and nothing else. Put the keys in this order: "
    '"audioText" (what you say aloud, plain sentences), '
    '"displayText" (what is shown on screen, may use markdown), '
    '"svg" (an optional SVG diagram or null), '
    '"lessonComplete" (true only when the learner has mastered the lesson), '
    '"handoffRequest" (null, or {"agent": "<responder id>", "reason": "..."} '
    "to pass the learner to another tutor)."
)


def build_messages(responder: Responder, request: GenerationRequest) -> List[Message]:
    """Assemble the chat messages for one responder turn."""
    system_parts = [responder.system_instruction, RESPONSE_FORMAT_INSTRUCTION]
    if request.context:
        facts = "\n".join(f"- {k}: {v}" for k, v in request.context.items() if v not in (None, ""))
        if facts:
            system_parts.append(f"Learner and lesson:\n{facts}")

    messages = [Message("system", "\n\n".join(p for p in system_parts if p))]
    messages.extend(request.history)
    if request.corrections:
        fixes = "\n".join(f"- {fix}" for fix in request.corrections)
        messages.append(Message(
            "system",
            f"Your previous answer to this message was rejected. Fix these problems:\n{fixes}",
        ))
    messages.append(Message("user", request.user_text))
    return messages


class AzureChatClient:
    """
    Minimal Azure OpenAI chat completions client.

    Features:
    - Streaming content deltas (SSE ``data:`` lines)
    - One-shot JSON completions for routing and validation
    - Single retry, only before any content has been delivered
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        api_version: Optional[str] = None,
        connect_timeout_s: float = 10.0,
        read_timeout_s: Optional[float] = None,
    ):
        self._api_key = api_key or settings.azure.api_key
        self._endpoint = endpoint or settings.azure.endpoint
        self._api_version = api_version or settings.azure.api_version
        self._connect_timeout = connect_timeout_s
        self._read_timeout = read_timeout_s or settings.azure.request_timeout

        self._request_count = 0
        self._total_time_ms = 0.0

    def _url(self, deployment: str) -> str:
        base = self._endpoint.rstrip("/")
        return (
            f"{base}/openai/deployments/{deployment}"
            f"/chat/completions?api-version={self._api_version}"
        )

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "api-key": self._api_key,
            "Content-Type": "application/json",
        }

    def _body(
        self,
        messages: List[Message],
        json_mode: bool,
        temperature: Optional[float],
        max_tokens: Optional[int],
        stream: bool,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "messages": [m.to_dict() for m in messages],
            "temperature": settings.azure.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or settings.azure.max_tokens,
            "stream": stream,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        return body

    @property
    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self._read_timeout, connect=self._connect_timeout)

    async def stream_chat(
        self,
        messages: List[Message],
        deployment: str,
        json_mode: bool = False,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """
        Stream content deltas from a chat completion.

        Yields:
            Content fragments in arrival order
        """
        for attempt in range(2):
            delivered = False
            try:
                async for content in self._stream_impl(
                    messages, deployment, json_mode, temperature, max_tokens
                ):
                    delivered = True
                    yield content
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt == 0 and not delivered:
                    logger.warning(f"LLM error (attempt 1/2): {e}, retrying...")
                    await asyncio.sleep(0.3)
                    continue
                logger.error(f"LLM stream failed: {e}")
                raise GenerationError(str(e)) from e

    async def _stream_impl(
        self,
        messages: List[Message],
        deployment: str,
        json_mode: bool,
        temperature: Optional[float],
        max_tokens: Optional[int],
    ) -> AsyncIterator[str]:
        body = self._body(messages, json_mode, temperature, max_tokens, stream=True)
        start_time = time.time()
        fragments = 0

        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(
                    self._url(deployment),
                    headers=self._headers,
                    json=body,
                ) as response:
                    response.raise_for_status()

                    async for line in response.content:
                        line = line.decode("utf-8").strip()
                        if not line or not line.startswith("data: "):
                            continue

                        data_str = line[6:]
                        if data_str == "[DONE]":
                            break

                        try:
                            data = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue

                        choices = data.get("choices", [])
                        if not choices:
                            continue
                        content = choices[0].get("delta", {}).get("content", "")
                        if content:
                            fragments += 1
                            yield content
        finally:
            elapsed = (time.time() - start_time) * 1000
            self._request_count += 1
            self._total_time_ms += elapsed
            logger.debug(f"Streamed {fragments} fragments from {deployment} in {elapsed:.0f}ms")

    async def complete(
        self,
        messages: List[Message],
        deployment: str,
        json_mode: bool = True,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Return the full content of a non-streaming chat completion."""
        body = self._body(messages, json_mode, temperature, max_tokens, stream=False)

        last_error: Optional[Exception] = None
        for attempt in range(2):
            start_time = time.time()
            try:
                async with aiohttp.ClientSession(timeout=self._timeout) as session:
                    async with session.post(
                        self._url(deployment),
                        headers=self._headers,
                        json=body,
                    ) as response:
                        response.raise_for_status()
                        data = await response.json()
                return data["choices"][0]["message"]["content"] or ""
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                if attempt == 0:
                    logger.warning(f"LLM completion error (attempt 1/2): {e}, retrying...")
                    await asyncio.sleep(0.3)
            finally:
                self._request_count += 1
                self._total_time_ms += (time.time() - start_time) * 1000

        raise GenerationError(f"Completion failed: {last_error}") from last_error

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "requests": self._request_count,
            "avg_time_ms": (
                self._total_time_ms / self._request_count
                if self._request_count > 0 else 0
            ),
        }


class AzureGenerationProvider(GenerationProvider):
    """
    Streams responder answers from Azure OpenAI in JSON mode.

    Fragments are the decoded ``audioText`` characters as they arrive; the
    complete JSON is parsed into a GenerationResult at the end of the stream.
    """

    def __init__(self, client: Optional[AzureChatClient] = None):
        self._client = client or AzureChatClient()

    def stream(self, responder: Responder, request: GenerationRequest) -> GenerationStream:
        messages = build_messages(responder, request)
        deployment = settings.azure.deployment_for(responder.tier)

        async def produce(stream: GenerationStream) -> AsyncIterator[str]:
            reader = JsonStringFieldReader("audioText")
            async for delta in self._client.stream_chat(messages, deployment, json_mode=True):
                fragment = reader.feed(delta)
                if fragment:
                    yield fragment

            try:
                stream.set_result(parse_teaching_response(reader.raw, responder.id))
            except GenerationError as e:
                if not stream.text.strip():
                    raise
                logger.warning(f"{responder.id}: {e}; delivering streamed speech text only")

        return GenerationStream(produce, responder_id=responder.id)

    @property
    def client(self) -> AzureChatClient:
        return self._client
