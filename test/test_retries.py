"""
补全与嵌入调用的重试退避测试
"""

import httpx
import pytest
from openai import APIConnectionError, APITimeoutError, BadRequestError, InternalServerError, RateLimitError

from lorekeeper.exceptions import EmbeddingServiceError, LLMServiceError
from lorekeeper.services.embedding_service import SIMULATED_MODEL_NAME, EmbeddingService
from lorekeeper.services.llm_service import LLMService
from lorekeeper.services.queue import RateLimitedScheduler

from conftest import FakeCompletionClient, unit_vector

_REQUEST = httpx.Request("POST", "http://llm.test/v1/chat/completions")


def _connection_error():
    return APIConnectionError(request=_REQUEST)


def _timeout_error():
    return APITimeoutError(request=_REQUEST)


def _rate_limit_error():
    return RateLimitError("rate limited", response=httpx.Response(429, request=_REQUEST), body=None)


def _server_error():
    return InternalServerError("boom", response=httpx.Response(500, request=_REQUEST), body=None)


def _bad_request_error():
    return BadRequestError("bad input", response=httpx.Response(400, request=_REQUEST), body=None)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class ScriptedResponder:
    """按顺序返回预设结果，耗尽后重复最后一项"""

    def __init__(self, *replies):
        self.replies = list(replies)

    def __call__(self, prompt):
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


class ScriptedEmbeddingProvider:
    model_name = "scripted-embedding"

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = 0

    async def embed(self, text):
        self.calls += 1
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


def _llm_service(client, sleep, max_retries=2):
    return LLMService(client, RateLimitedScheduler("completion", 0), max_retries=max_retries, sleep=sleep)


def _embedding_service(provider, sleep, max_retries=3):
    return EmbeddingService(
        provider, RateLimitedScheduler("embedding", 0), dimension=8, max_retries=max_retries, sleep=sleep,
    )


class TestCompletionRetries:
    """补全调用重试测试"""

    @pytest.mark.parametrize("make_error", [_connection_error, _timeout_error, httpx.ReadTimeout])
    async def test_transient_errors_back_off_exponentially(self, make_error):
        error = make_error("timed out") if make_error is httpx.ReadTimeout else make_error()
        sleep = RecordingSleep()
        client = FakeCompletionClient(ScriptedResponder(error, error, "ok"))

        assert await _llm_service(client, sleep).generate("prompt", temperature=0.1) == "ok"
        assert client.calls == 3
        assert sleep.delays == [2, 4]

    async def test_rate_limit_backs_off_linearly(self):
        sleep = RecordingSleep()
        client = FakeCompletionClient(ScriptedResponder(_rate_limit_error(), _rate_limit_error(), "ok"))

        assert await _llm_service(client, sleep).generate("prompt", temperature=0.1) == "ok"
        assert sleep.delays == [10, 20]

    async def test_exhausted_retries_raise_service_error(self):
        sleep = RecordingSleep()
        client = FakeCompletionClient(ScriptedResponder(_connection_error()))

        with pytest.raises(LLMServiceError) as exc_info:
            await _llm_service(client, sleep).generate("prompt", temperature=0.1)
        assert client.calls == 3
        assert sleep.delays == [2, 4]
        assert "已尝试 3 次" in exc_info.value.reason

    async def test_exhausted_rate_limit_raises_service_error(self):
        sleep = RecordingSleep()
        client = FakeCompletionClient(ScriptedResponder(_rate_limit_error()))

        with pytest.raises(LLMServiceError):
            await _llm_service(client, sleep, max_retries=1).generate("prompt", temperature=0.1)
        assert client.calls == 2
        assert sleep.delays == [10]

    async def test_server_error_is_not_retried(self):
        sleep = RecordingSleep()
        client = FakeCompletionClient(ScriptedResponder(_server_error()))

        with pytest.raises(LLMServiceError):
            await _llm_service(client, sleep).generate("prompt", temperature=0.1)
        assert client.calls == 1
        assert sleep.delays == []

    async def test_blank_reply_raises_service_error(self):
        client = FakeCompletionClient(ScriptedResponder("   "))
        with pytest.raises(LLMServiceError):
            await _llm_service(client, RecordingSleep()).generate("prompt", temperature=0.1)


class TestEmbeddingRetries:
    """嵌入调用重试与降级测试"""

    async def test_retryable_errors_back_off_then_succeed(self):
        sleep = RecordingSleep()
        provider = ScriptedEmbeddingProvider(_connection_error(), _rate_limit_error(), unit_vector(1, 8))

        result = await _embedding_service(provider, sleep).embed("Aria")
        assert result.simulated is False
        assert result.model == "scripted-embedding"
        assert result.vector == unit_vector(1, 8)
        assert provider.calls == 3
        assert sleep.delays == [1, 2]

    async def test_persistent_failure_falls_back_to_simulated(self):
        """配置了嵌入服务但持续失败时退回模拟向量"""
        sleep = RecordingSleep()
        provider = ScriptedEmbeddingProvider(TimeoutError("slow"))

        result = await _embedding_service(provider, sleep).embed("Aria")
        assert result.simulated is True
        assert result.model == SIMULATED_MODEL_NAME
        assert len(result.vector) == 8
        assert provider.calls == 4
        assert sleep.delays == [1, 2, 4]

    async def test_non_retryable_error_is_not_retried(self):
        sleep = RecordingSleep()
        provider = ScriptedEmbeddingProvider(_bad_request_error())
        service = _embedding_service(provider, sleep)

        with pytest.raises(EmbeddingServiceError):
            await service._embed_with_retries("Aria")
        assert provider.calls == 1
        assert sleep.delays == []

        assert (await service.embed("Aria")).simulated is True
