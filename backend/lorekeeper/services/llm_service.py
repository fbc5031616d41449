"""
文本补全服务

CompletionClient 是对外部补全能力的最小约定；LLMService 在其外层统一处理
限速调度、重试与异常转换，抽取、合并裁决、知识合成都通过它调用模型。
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

import httpx
from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    InternalServerError,
    RateLimitError,
)

from ..core.constants import LLMConstants
from ..exceptions import LLMConfigurationError, LLMServiceError, LorekeeperError
from .queue import RateLimitedScheduler

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    """外部补全能力：输入提示词，返回模型文本。"""

    model_name: str

    async def complete(
        self,
        prompt: str,
        *,
        temperature: float,
        max_tokens: Optional[int] = None,
    ) -> str:
        ...


class OpenAICompletionClient:
    """基于 OpenAI 兼容接口的补全客户端"""

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        *,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
    ):
        if not api_key:
            raise LLMConfigurationError("未配置补全服务 API Key，请设置 LLM_API_KEY 或 OPENAI_API_KEY")
        self.model_name = model
        # 重试由 LLMService 统一处理，客户端自身不重试
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    @classmethod
    def from_settings(cls, settings) -> "OpenAICompletionClient":
        return cls(
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            base_url=str(settings.llm_base_url) if settings.llm_base_url else None,
            timeout=settings.llm_timeout,
        )

    async def complete(
        self,
        prompt: str,
        *,
        temperature: float,
        max_tokens: Optional[int] = None,
    ) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.model_name,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except AuthenticationError as exc:
            logger.error("补全服务认证失败: model=%s", self.model_name, exc_info=True)
            raise LLMConfigurationError("AI服务认证失败，请检查API密钥配置") from exc

        if not response.choices:
            return ""
        choice = response.choices[0]
        if choice.finish_reason == "length":
            # 截断的 JSON 交给解析层修复
            logger.warning("补全响应被截断: model=%s max_tokens=%s", self.model_name, max_tokens)
        return choice.message.content or ""


class LLMService:
    """封装补全调用：限速、重试、异常转换。"""

    def __init__(
        self,
        client: CompletionClient,
        scheduler: RateLimitedScheduler,
        *,
        max_retries: int = 2,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.client = client
        self.scheduler = scheduler
        self.max_retries = max_retries
        self._sleep = sleep or asyncio.sleep

    @property
    def model_name(self) -> str:
        return getattr(self.client, "model_name", "unknown")

    async def generate(
        self,
        prompt: str,
        *,
        temperature: float,
        max_tokens: Optional[int] = None,
        purpose: str = "completion",
    ) -> str:
        """
        调用补全服务并返回文本

        Raises:
            LLMServiceError: 重试耗尽、服务内部错误或返回空内容
            LLMConfigurationError: 认证或配置错误
        """
        async with self.scheduler.request_slot():
            return await self._complete_with_retries(
                prompt,
                temperature=temperature,
                max_tokens=max_tokens,
                purpose=purpose,
            )

    async def _complete_with_retries(
        self,
        prompt: str,
        *,
        temperature: float,
        max_tokens: Optional[int],
        purpose: str,
    ) -> str:
        """实际执行补全的内部方法（在调度器槽位内执行）"""
        model = self.model_name

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                logger.warning(
                    "重试补全请求: purpose=%s attempt=%d/%d model=%s",
                    purpose, attempt + 1, self.max_retries + 1, model,
                )
            else:
                logger.info(
                    "发起补全请求: purpose=%s model=%s prompt_chars=%d max_tokens=%s",
                    purpose, model, len(prompt), max_tokens,
                )

            try:
                content = await self.client.complete(
                    prompt,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )

            except InternalServerError as exc:
                logger.error(
                    "补全服务内部错误: purpose=%s model=%s attempt=%d/%d",
                    purpose, model, attempt + 1, self.max_retries + 1,
                    exc_info=exc,
                )
                raise LLMServiceError(str(exc) or "AI 服务内部错误", model) from exc

            except (httpx.RemoteProtocolError, httpx.ReadTimeout, APIConnectionError, APITimeoutError) as exc:
                if isinstance(exc, httpx.RemoteProtocolError):
                    detail = "AI 服务连接被意外中断"
                elif isinstance(exc, (httpx.ReadTimeout, APITimeoutError)):
                    detail = "AI 服务响应超时"
                else:
                    detail = "无法连接到 AI 服务"

                logger.error(
                    "补全请求失败: purpose=%s model=%s attempt=%d/%d detail=%s",
                    purpose, model, attempt + 1, self.max_retries + 1, detail,
                )

                if attempt < self.max_retries:
                    wait_time = LLMConstants.TRANSIENT_BACKOFF_BASE ** (attempt + 1)
                    logger.info("等待 %d 秒后重试...", wait_time)
                    await self._sleep(wait_time)
                    continue

                raise LLMServiceError(
                    f"{detail}（已尝试 {self.max_retries + 1} 次）",
                    model,
                ) from exc

            except RateLimitError as exc:
                logger.warning(
                    "补全请求被限流: purpose=%s model=%s attempt=%d/%d",
                    purpose, model, attempt + 1, self.max_retries + 1,
                )

                if attempt < self.max_retries:
                    wait_time = LLMConstants.RATE_LIMIT_BACKOFF_STEP * (attempt + 1)
                    logger.info("限流，等待 %d 秒后重试...", wait_time)
                    await self._sleep(wait_time)
                    continue

                raise LLMServiceError(
                    f"AI 服务请求过于频繁（已尝试 {self.max_retries + 1} 次）",
                    model,
                ) from exc

            except LorekeeperError:
                raise

            except Exception as exc:
                logger.critical(
                    "补全请求发生意外错误: purpose=%s model=%s error_type=%s error=%s",
                    purpose, model, type(exc).__name__, exc,
                    exc_info=True,
                )
                raise LLMServiceError(f"AI 服务发生意外错误: {type(exc).__name__}: {exc}", model) from exc

            if not content or not content.strip():
                logger.error("补全服务返回空内容: purpose=%s model=%s", purpose, model)
                raise LLMServiceError("AI 未返回有效内容", model)

            logger.info(
                "补全请求成功: purpose=%s model=%s chars=%d attempts=%d",
                purpose, model, len(content), attempt + 1,
            )
            return content

        raise LLMServiceError("补全调用未能完成", model)
