"""模型调用 / 思考标记测试."""

from __future__ import annotations

import pytest

from gemsub.client import Fragment, ModelConfig, ModelTransportError


def _config(**kwargs) -> ModelConfig:
    params = {"model_name": "gemini-2.5-flash", "system_instruction": "sys"}
    params.update(kwargs)
    return ModelConfig(**params)


class _StreamBackend:
    def __init__(self, fragments=None, error: Exception | None = None):
        self.fragments = fragments or []
        self.error = error

    def generate(self, api_key, config, messages):
        if self.error is not None:
            raise self.error
        return list(self.fragments)

    def stream(self, api_key, config, messages):
        for fragment in self.fragments:
            yield fragment
        if self.error is not None:
            raise self.error

    def list_models(self, api_key):
        return []

    def token_limit(self, api_key, model_name):
        return None

    def classify_error(self, exc):
        return ModelTransportError(f"wrapped: {exc}")


# --------------------------------------------------------------------------- #
# Thinking markers
# --------------------------------------------------------------------------- #


def test_splitter_handles_markers_split_across_chunks():
    from gemsub.client import ThinkingSplitter

    splitter = ThinkingSplitter()
    answer = []
    thoughts = []
    for chunk in ["<thin", "king>step one", " and two</th", "inking>[{\"index\"", ": \"1\"}]"]:
        a, t = splitter.feed(chunk)
        answer.append(a)
        thoughts.append(t)
    a, t = splitter.flush()
    answer.append(a)
    thoughts.append(t)

    assert "".join(thoughts) == "step one and two"
    assert "".join(answer) == '[{"index": "1"}]'


def test_splitter_releases_lookalike_prefix():
    from gemsub.client import ThinkingSplitter

    splitter = ThinkingSplitter()
    assert splitter.feed("a <thi") == ("a ", "")
    assert splitter.feed("s is text") == ("<this is text", "")


def test_split_thinking_on_complete_reply():
    from gemsub.client import split_thinking

    assert split_thinking("<thinking>hmm</thinking>\n[]") == ("[]", "hmm")
    assert split_thinking("[]") == ("[]", "")


# --------------------------------------------------------------------------- #
# TranslationClient
# --------------------------------------------------------------------------- #


def test_streaming_call_separates_thoughts_and_reports_chunks():
    from gemsub.client import TranslationClient

    backend = _StreamBackend(
        [
            Fragment("planning", thought=True),
            Fragment('[{"index": "1", '),
            Fragment('"content": "x"}]'),
        ]
    )
    chunks: list[tuple[int, bool]] = []
    reply = TranslationClient(backend).call("k", _config(), [], True, on_chunk=lambda n, t: chunks.append((n, t)))

    assert reply.text == '[{"index": "1", "content": "x"}]'
    assert reply.thoughts == "planning"
    assert chunks[0] == (0, True)
    assert chunks[-1] == (len(reply.text), False)


def test_non_streaming_call_extracts_marked_thoughts():
    from gemsub.client import TranslationClient

    backend = _StreamBackend([Fragment("<thinking>why</thinking>[]")])
    reply = TranslationClient(backend).call("k", _config(), [], False)

    assert reply.text == "[]"
    assert reply.thoughts == "why"


def test_error_mid_stream_is_classified():
    from gemsub.client import TranslationClient

    backend = _StreamBackend([Fragment("[")], error=RuntimeError("connection reset"))
    with pytest.raises(ModelTransportError, match="wrapped: connection reset"):
        TranslationClient(backend).call("k", _config(), [], True)


def test_empty_reply_is_a_transport_error():
    from gemsub.client import TranslationClient

    with pytest.raises(ModelTransportError):
        TranslationClient(_StreamBackend([Fragment("   ")])).call("k", _config(), [], False)


def test_cancel_during_stream_stops_the_call():
    from gemsub.client import TranslationClient
    from gemsub.interrupts import CancelledByUser, CancelToken

    token = CancelToken()
    token.request_cancel("SIGINT")
    with pytest.raises(CancelledByUser):
        TranslationClient(_StreamBackend([Fragment("[]")]), cancel_token=token).call("k", _config(), [], True)


# --------------------------------------------------------------------------- #
# Backends
# --------------------------------------------------------------------------- #


def test_gemini_config_omits_unset_sampling_parameters():
    from gemsub.client import GeminiBackend

    cfg = GeminiBackend._config(_config())
    assert cfg.temperature is None
    assert cfg.top_p is None
    assert cfg.top_k is None
    assert cfg.thinking_config is None
    assert cfg.response_mime_type == "application/json"

    cfg = GeminiBackend._config(
        _config(
            temperature=0.3,
            top_k=40,
            thinking_budget=1024,
            include_thoughts=True,
            thinking_compatible=True,
            thinking_budget_compatible=True,
        )
    )
    assert cfg.temperature == 0.3
    assert cfg.top_k == 40
    assert cfg.thinking_config.include_thoughts is True
    assert cfg.thinking_config.thinking_budget == 1024


def test_gemini_error_classification():
    from google.genai import errors as genai_errors

    from gemsub.client import FatalModelError, GeminiBackend, QuotaExceededError

    backend = GeminiBackend()
    quota = genai_errors.ClientError(429, {"error": {"code": 429, "message": "quota", "status": "RESOURCE_EXHAUSTED"}})
    server = genai_errors.ServerError(503, {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}})
    denied = genai_errors.ClientError(403, {"error": {"code": 403, "message": "denied", "status": "PERMISSION_DENIED"}})

    assert isinstance(backend.classify_error(quota), QuotaExceededError)
    assert isinstance(backend.classify_error(server), ModelTransportError)
    assert isinstance(backend.classify_error(denied), FatalModelError)
    assert isinstance(backend.classify_error(TimeoutError("read timeout")), ModelTransportError)


def test_openai_error_classification():
    import httpx
    import openai

    from gemsub.client import FatalModelError, OpenAIBackend, QuotaExceededError

    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    backend = OpenAIBackend()

    rate = openai.RateLimitError("slow down", response=httpx.Response(429, request=request), body=None)
    auth = openai.AuthenticationError("bad key", response=httpx.Response(401, request=request), body=None)
    conn = openai.APIConnectionError(request=request)

    assert isinstance(backend.classify_error(rate), QuotaExceededError)
    assert isinstance(backend.classify_error(auth), FatalModelError)
    assert isinstance(backend.classify_error(conn), ModelTransportError)


def test_openai_messages_map_roles_and_prepend_system():
    from gemsub.client import OpenAIBackend

    out = OpenAIBackend._messages(_config(), [{"role": "user", "content": "a"}, {"role": "model", "content": "b"}])
    assert [m["role"] for m in out] == ["system", "user", "assistant"]
    assert out[0]["content"] == "sys"


def test_build_backend_follows_provider():
    from gemsub.client import GeminiBackend, OpenAIBackend, build_backend
    from gemsub.config import Settings

    assert isinstance(build_backend(Settings(provider="gemini")), GeminiBackend)
    backend = build_backend(Settings(provider="openai", openai_api_base="http://localhost:8000/v1"))
    assert isinstance(backend, OpenAIBackend)
    assert backend.base_url == "http://localhost:8000/v1"
