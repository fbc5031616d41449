"""
嵌入向量服务

负责文本向量化。外部嵌入调用经过限速调度器并带重试；
调用失败时退回到由文本哈希生成的确定性模拟向量，并明确标记 simulated。
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol

import httpx
import numpy as np
from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    RateLimitError,
)

from ..exceptions import EmbeddingServiceError, InvalidParameterError, LLMConfigurationError, LorekeeperError
from .queue import RateLimitedScheduler

logger = logging.getLogger(__name__)

SIMULATED_MODEL_NAME = "simulated-hash-embedding"


class EmbeddingProvider(Protocol):
    """外部嵌入能力：输入文本，返回定长向量。"""

    model_name: str

    async def embed(self, text: str) -> List[float]:
        ...


class OpenAIEmbeddingProvider:
    """基于 OpenAI 兼容接口的嵌入客户端"""

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        *,
        base_url: Optional[str] = None,
        dimensions: Optional[int] = None,
    ):
        if not api_key:
            raise LLMConfigurationError("嵌入模型配置缺少 API Key，请设置 EMBEDDING_API_KEY")
        self.model_name = model
        self._dimensions = dimensions
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    @classmethod
    def from_settings(cls, settings) -> "OpenAIEmbeddingProvider":
        base_url = settings.embedding_base_url or settings.llm_base_url
        return cls(
            api_key=settings.embedding_api_key or settings.llm_api_key,
            model=settings.embedding_model,
            base_url=str(base_url) if base_url else None,
            dimensions=settings.embedding_dimension,
        )

    async def embed(self, text: str) -> List[float]:
        kwargs = {"input": text, "model": self.model_name}
        if self._dimensions:
            kwargs["dimensions"] = self._dimensions

        try:
            response = await self._client.embeddings.create(**kwargs)
        except AuthenticationError as exc:
            logger.error("嵌入服务认证失败: model=%s", self.model_name, exc_info=True)
            raise LLMConfigurationError("AI服务认证失败，请检查API密钥配置") from exc
        except BadRequestError as exc:
            logger.error("嵌入请求无效: model=%s error=%s", self.model_name, exc)
            raise InvalidParameterError(f"嵌入请求无效: {exc}") from exc

        if not response.data:
            raise EmbeddingServiceError(f"嵌入请求返回空数据: model={self.model_name}")
        return list(response.data[0].embedding)


@dataclass
class EmbeddingResult:
    """一次向量化的结果"""

    vector: List[float]
    model: str
    simulated: bool = False


def pseudo_embedding(text: str, dimension: int = 768) -> List[float]:
    """
    由文本哈希生成确定性的模拟向量

    以 SHA-256 摘要为种子抽取标准正态分布向量并做 L2 归一化。
    同一文本总是得到同一向量，不同文本的向量近似正交，不携带任何语义信息，
    仅用于外部服务不可用时保持流程可用。
    """
    digest = hashlib.sha256((text or "").encode("utf-8")).digest()
    rng = np.random.default_rng(int.from_bytes(digest, "big"))
    vector = rng.standard_normal(dimension)
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector.tolist()
    return (vector / norm).tolist()


class EmbeddingService:
    """嵌入向量服务，负责文本向量化"""

    def __init__(
        self,
        provider: Optional[EmbeddingProvider],
        scheduler: RateLimitedScheduler,
        *,
        dimension: int = 768,
        max_retries: int = 3,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.provider = provider
        self.scheduler = scheduler
        self.dimension = dimension
        self.max_retries = max_retries
        self._sleep = sleep or asyncio.sleep

    async def embed(self, text: str) -> EmbeddingResult:
        """
        生成文本向量

        外部调用失败（重试耗尽、配置错误等）时返回模拟向量，不向上抛出。
        """
        if self.provider is None:
            return self._simulated(text)

        try:
            async with self.scheduler.request_slot():
                vector = await self._embed_with_retries(text)
        except LorekeeperError as exc:
            logger.warning(
                "嵌入服务不可用，使用模拟向量: model=%s error=%s",
                self.provider.model_name, exc.detail,
            )
            return self._simulated(text)

        return EmbeddingResult(vector=vector, model=self.provider.model_name, simulated=False)

    def _simulated(self, text: str) -> EmbeddingResult:
        return EmbeddingResult(
            vector=pseudo_embedding(text, self.dimension),
            model=SIMULATED_MODEL_NAME,
            simulated=True,
        )

    async def _embed_with_retries(self, text: str) -> List[float]:
        """
        调用嵌入服务，对可重试错误（网络/超时/限流）进行最多 max_retries 次重试

        Raises:
            EmbeddingServiceError: 重试耗尽或遇到不可重试的错误
        """
        model = self.provider.model_name
        for attempt in range(self.max_retries + 1):
            try:
                vector = await self.provider.embed(text)
                if not vector:
                    raise EmbeddingServiceError(f"嵌入服务返回空向量: model={model}")
                return [float(value) for value in vector]
            except LorekeeperError:
                raise
            except Exception as exc:
                if not self._is_retryable_error(exc):
                    logger.error("嵌入请求失败（不可重试）: model=%s error=%s", model, exc, exc_info=True)
                    raise EmbeddingServiceError(f"{type(exc).__name__}: {exc}") from exc

                if attempt < self.max_retries:
                    delay = 2 ** attempt
                    logger.warning(
                        "嵌入请求失败，将在 %d 秒后重试 (%d/%d): model=%s error=%s",
                        delay, attempt + 1, self.max_retries, model, exc,
                    )
                    await self._sleep(delay)
                    continue

                logger.error(
                    "嵌入请求失败，已达到最大重试次数 (%d): model=%s error=%s",
                    self.max_retries, model, exc,
                )
                raise EmbeddingServiceError(f"重试 {self.max_retries} 次后仍失败: {exc}") from exc

        raise EmbeddingServiceError("嵌入调用未能完成")

    @staticmethod
    def _is_retryable_error(exc: Exception) -> bool:
        """判断异常是否可重试"""
        retryable_types = (
            httpx.ReadTimeout,
            httpx.RemoteProtocolError,
            APIConnectionError,
            APITimeoutError,
            RateLimitError,
            ConnectionError,
            TimeoutError,
        )
        return isinstance(exc, retryable_types)
