from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterator, Protocol

from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from loguru import logger
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    BadRequestError,
    OpenAI,
    RateLimitError,
)

from .config import Settings
from .interrupts import CancelToken
from .prompts import response_schema, safety_settings

THINK_OPEN = "<thinking>"
THINK_CLOSE = "</thinking>"


class ModelCallError(RuntimeError):
    """A model call failed; subclasses tell the orchestrator how to recover."""


class QuotaExceededError(ModelCallError):
    pass


class ModelTransportError(ModelCallError):
    pass


class FatalModelError(ModelCallError):
    pass


@dataclass(frozen=True)
class Fragment:
    text: str
    thought: bool = False


@dataclass(frozen=True)
class ModelConfig:
    model_name: str
    system_instruction: str
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    thinking_budget: int | None = None
    include_thoughts: bool = False
    thinking_compatible: bool = False
    thinking_budget_compatible: bool = False
    timeout_s: float = 240.0


@dataclass
class ModelReply:
    text: str
    thoughts: str = ""


ChunkCallback = Callable[[int, bool], None]


class ChatBackend(Protocol):
    def generate(self, api_key: str, config: ModelConfig, messages: list[dict[str, str]]) -> list[Fragment]: ...

    def stream(self, api_key: str, config: ModelConfig, messages: list[dict[str, str]]) -> Iterator[Fragment]: ...

    def list_models(self, api_key: str) -> list[str]: ...

    def token_limit(self, api_key: str, model_name: str) -> int | None: ...

    def classify_error(self, exc: Exception) -> ModelCallError: ...


def _looks_like_quota(message: str) -> bool:
    lowered = message.lower()
    return "429" in lowered or "resource_exhausted" in lowered or "quota" in lowered


# --------------------------------------------------------------------------- #
# Gemini
# --------------------------------------------------------------------------- #


class GeminiBackend:
    def __init__(self) -> None:
        self._clients: dict[tuple[str, float], genai.Client] = {}

    def _client(self, api_key: str, timeout_s: float = 240.0) -> genai.Client:
        key = (api_key, timeout_s)
        client = self._clients.get(key)
        if client is None:
            client = genai.Client(api_key=api_key, http_options=types.HttpOptions(timeout=int(timeout_s * 1000)))
            self._clients[key] = client
        return client

    @staticmethod
    def _contents(messages: list[dict[str, str]]) -> list[types.Content]:
        return [
            types.Content(role=m["role"], parts=[types.Part(text=m["content"])])
            for m in messages
        ]

    @staticmethod
    def _config(config: ModelConfig) -> types.GenerateContentConfig:
        kwargs: dict[str, Any] = {
            "system_instruction": config.system_instruction,
            "response_mime_type": "application/json",
            "response_schema": response_schema(),
            "safety_settings": safety_settings(),
        }
        if config.temperature is not None:
            kwargs["temperature"] = config.temperature
        if config.top_p is not None:
            kwargs["top_p"] = config.top_p
        if config.top_k is not None:
            kwargs["top_k"] = config.top_k
        if config.thinking_compatible:
            budget = config.thinking_budget if config.thinking_budget_compatible else None
            kwargs["thinking_config"] = types.ThinkingConfig(
                include_thoughts=config.include_thoughts,
                thinking_budget=budget,
            )
        return types.GenerateContentConfig(**kwargs)

    @staticmethod
    def _fragments(response: types.GenerateContentResponse) -> list[Fragment]:
        feedback = getattr(response, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            raise ModelTransportError(f"Gemini 拒绝了请求: {feedback.block_reason}")
        out: list[Fragment] = []
        for candidate in response.candidates or []:
            content = candidate.content
            if content is None:
                continue
            for part in content.parts or []:
                if part.text:
                    out.append(Fragment(text=part.text, thought=bool(part.thought)))
        return out

    def generate(self, api_key: str, config: ModelConfig, messages: list[dict[str, str]]) -> list[Fragment]:
        response = self._client(api_key, config.timeout_s).models.generate_content(
            model=config.model_name,
            contents=self._contents(messages),
            config=self._config(config),
        )
        return self._fragments(response)

    def stream(self, api_key: str, config: ModelConfig, messages: list[dict[str, str]]) -> Iterator[Fragment]:
        chunks = self._client(api_key, config.timeout_s).models.generate_content_stream(
            model=config.model_name,
            contents=self._contents(messages),
            config=self._config(config),
        )
        for chunk in chunks:
            yield from self._fragments(chunk)

    def list_models(self, api_key: str) -> list[str]:
        names: list[str] = []
        for model in self._client(api_key).models.list():
            actions = model.supported_actions or []
            if "generateContent" in actions and model.name:
                names.append(model.name.removeprefix("models/"))
        return names

    def token_limit(self, api_key: str, model_name: str) -> int | None:
        try:
            info = self._client(api_key).models.get(model=model_name)
        except Exception as exc:  # not worth failing the run over
            logger.warning(f"无法获取模型 token 上限: {exc}")
            return None
        return info.input_token_limit

    def classify_error(self, exc: Exception) -> ModelCallError:
        message = str(exc)
        if isinstance(exc, genai_errors.APIError):
            code = getattr(exc, "code", None)
            if code == 429 or _looks_like_quota(message):
                return QuotaExceededError(message)
            if isinstance(exc, genai_errors.ServerError) or code in {408, 500, 502, 503, 504}:
                return ModelTransportError(message)
            return FatalModelError(f"Gemini 请求失败 ({code}): {message}")
        if _looks_like_quota(message):
            return QuotaExceededError(message)
        return ModelTransportError(message)


# --------------------------------------------------------------------------- #
# OpenAI compatible
# --------------------------------------------------------------------------- #


class OpenAIBackend:
    def __init__(self, base_url: str | None = None) -> None:
        self.base_url = base_url or "https://api.openai.com/v1"
        self._clients: dict[str, OpenAI] = {}

    def _client(self, api_key: str) -> OpenAI:
        client = self._clients.get(api_key)
        if client is None:
            client = OpenAI(base_url=self.base_url, api_key=api_key)
            self._clients[api_key] = client
        return client

    @staticmethod
    def _messages(config: ModelConfig, messages: list[dict[str, str]]) -> list[dict[str, str]]:
        out = [{"role": "system", "content": config.system_instruction}]
        for m in messages:
            out.append({"role": "assistant" if m["role"] == "model" else "user", "content": m["content"]})
        return out

    @staticmethod
    def _kwargs(config: ModelConfig) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"model": config.model_name, "timeout": config.timeout_s}
        if config.temperature is not None:
            kwargs["temperature"] = config.temperature
        if config.top_p is not None:
            kwargs["top_p"] = config.top_p
        if config.top_k is not None:
            # Not part of the OpenAI API; compatible servers (vLLM, Ollama, ...) accept it.
            kwargs["extra_body"] = {"top_k": config.top_k}
        return kwargs

    def generate(self, api_key: str, config: ModelConfig, messages: list[dict[str, str]]) -> list[Fragment]:
        response = self._client(api_key).chat.completions.create(
            messages=self._messages(config, messages),
            **self._kwargs(config),
        )
        if not response.choices:
            return []
        message = response.choices[0].message
        out: list[Fragment] = []
        reasoning = getattr(message, "reasoning_content", None)
        if reasoning:
            out.append(Fragment(text=str(reasoning), thought=True))
        if message.content:
            out.append(Fragment(text=message.content))
        return out

    def stream(self, api_key: str, config: ModelConfig, messages: list[dict[str, str]]) -> Iterator[Fragment]:
        chunks = self._client(api_key).chat.completions.create(
            messages=self._messages(config, messages),
            stream=True,
            **self._kwargs(config),
        )
        for chunk in chunks:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            reasoning = getattr(delta, "reasoning_content", None)
            if reasoning:
                yield Fragment(text=str(reasoning), thought=True)
            if delta.content:
                yield Fragment(text=delta.content)

    def list_models(self, api_key: str) -> list[str]:
        return sorted(m.id for m in self._client(api_key).models.list())

    def token_limit(self, api_key: str, model_name: str) -> int | None:
        return None

    def classify_error(self, exc: Exception) -> ModelCallError:
        if isinstance(exc, RateLimitError):
            return QuotaExceededError(str(exc))
        if isinstance(exc, (AuthenticationError, BadRequestError)):
            return FatalModelError(f"LLM请求失败: {exc}")
        if isinstance(exc, (APITimeoutError, APIConnectionError)):
            return ModelTransportError(str(exc))
        if isinstance(exc, APIStatusError):
            status = getattr(exc, "status_code", None)
            if status == 429:
                return QuotaExceededError(str(exc))
            if status in {408, 500, 502, 503, 504}:
                return ModelTransportError(str(exc))
            return FatalModelError(f"LLM请求失败 ({status}): {exc}")
        return ModelTransportError(str(exc))


def build_backend(settings: Settings) -> ChatBackend:
    if settings.provider == "openai":
        return OpenAIBackend(settings.openai_api_base)
    return GeminiBackend()


# --------------------------------------------------------------------------- #
# Thinking extraction
# --------------------------------------------------------------------------- #


def _partial_marker_suffix(text: str, marker: str) -> int:
    """Length of the longest suffix of `text` that is a proper prefix of `marker`."""
    for k in range(min(len(marker) - 1, len(text)), 0, -1):
        if text.endswith(marker[:k]):
            return k
    return 0


class ThinkingSplitter:
    """Route streamed text inside <thinking>...</thinking> spans to thoughts.

    Markers may be split across chunk boundaries; a trailing partial marker is held back
    until the next chunk decides it.
    """

    def __init__(self) -> None:
        self.in_thinking = False
        self._pending = ""

    def feed(self, text: str) -> tuple[str, str]:
        buf = self._pending + text
        self._pending = ""
        answer: list[str] = []
        thoughts: list[str] = []
        while buf:
            marker = THINK_CLOSE if self.in_thinking else THINK_OPEN
            target = thoughts if self.in_thinking else answer
            pos = buf.find(marker)
            if pos >= 0:
                target.append(buf[:pos])
                buf = buf[pos + len(marker):]
                self.in_thinking = not self.in_thinking
                continue
            keep = _partial_marker_suffix(buf, marker)
            target.append(buf[: len(buf) - keep])
            self._pending = buf[len(buf) - keep:]
            break
        return "".join(answer), "".join(thoughts)

    def flush(self) -> tuple[str, str]:
        rest, self._pending = self._pending, ""
        return ("", rest) if self.in_thinking else (rest, "")


def split_thinking(text: str) -> tuple[str, str]:
    """Split a complete reply at the first closing marker; returns (answer, thoughts)."""
    if THINK_CLOSE not in text:
        return text, ""
    head, tail = text.split(THINK_CLOSE, 1)
    return tail.strip(), head.replace(THINK_OPEN, "").strip()


# --------------------------------------------------------------------------- #
# Client
# --------------------------------------------------------------------------- #


class TranslationClient:
    """Run one model call and separate the answer from reasoning output."""

    def __init__(self, backend: ChatBackend, cancel_token: CancelToken | None = None):
        self.backend = backend
        self.cancel_token = cancel_token

    def call(
        self,
        credential: str,
        config: ModelConfig,
        messages: list[dict[str, str]],
        streaming: bool,
        on_chunk: ChunkCallback | None = None,
    ) -> ModelReply:
        try:
            if streaming:
                reply = self._call_streaming(credential, config, messages, on_chunk)
            else:
                reply = self._call_once(credential, config, messages)
        except ModelCallError:
            raise
        except Exception as exc:  # SDK/network errors are classified per backend
            raise self.backend.classify_error(exc) from exc
        if not reply.text.strip():
            raise ModelTransportError("模型返回了空响应")
        return reply

    def _call_once(self, credential: str, config: ModelConfig, messages: list[dict[str, str]]) -> ModelReply:
        fragments = self.backend.generate(credential, config, messages)
        text = "".join(f.text for f in fragments if not f.thought)
        thoughts = "".join(f.text for f in fragments if f.thought)
        answer, marked = split_thinking(text)
        return ModelReply(text=answer, thoughts=thoughts + marked)

    def _call_streaming(
        self,
        credential: str,
        config: ModelConfig,
        messages: list[dict[str, str]],
        on_chunk: ChunkCallback | None,
    ) -> ModelReply:
        splitter = ThinkingSplitter()
        answer: list[str] = []
        thoughts: list[str] = []
        answer_len = 0
        for fragment in self.backend.stream(credential, config, messages):
            if self.cancel_token is not None:
                self.cancel_token.check()
            if fragment.thought:
                thoughts.append(fragment.text)
            else:
                a, t = splitter.feed(fragment.text)
                answer.append(a)
                thoughts.append(t)
                answer_len += len(a)
            if on_chunk is not None:
                on_chunk(answer_len, fragment.thought or splitter.in_thinking)
        a, t = splitter.flush()
        answer.append(a)
        thoughts.append(t)
        return ModelReply(text="".join(answer).strip(), thoughts="".join(thoughts).strip())
