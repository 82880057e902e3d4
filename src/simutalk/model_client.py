"""AI模型客户端

ModelClient 是会话引擎唯一依赖的模型能力：
- call: 缓冲调用，一次返回完整结果
- stream: 流式调用，返回有限、不可重启的文本块异步序列

取消通过任务取消（asyncio.CancelledError）传入底层 HTTP 调用。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI, APIError

from .config import Config
from .errors import ProviderError
from .protocol import ImageInput, TokenUsage
from .utils.logger import logger


@dataclass
class ChatResponse:
    """缓冲调用的响应"""
    content: str
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str = "stop"


class ModelClient(ABC):
    """模型客户端接口"""

    model: str = "unknown"

    @abstractmethod
    async def call(self, prompt: str, image: Optional[ImageInput] = None) -> ChatResponse:
        """失败时抛出 ProviderError"""

    @abstractmethod
    def stream(self, prompt: str, image: Optional[ImageInput] = None) -> AsyncIterator[str]:
        """返回文本块的异步迭代器；失败时在迭代中抛出 ProviderError"""


class OpenAIModelClient(ModelClient):
    """基于 OpenAI 兼容 Chat Completions 接口的客户端"""

    def __init__(
        self,
        config: Config,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.config = config
        self.model = model or config.model
        self.temperature = config.temperature if temperature is None else temperature
        self.client = client or AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.api_base,
        )

    @classmethod
    def for_summary(cls, config: Config) -> "OpenAIModelClient":
        """摘要专用客户端：可使用更便宜的模型，温度较低"""
        return cls(config, model=config.effective_summary_model, temperature=0.3)

    @classmethod
    def for_translation(cls, config: Config) -> "OpenAIModelClient":
        return cls(config, model=config.effective_translation_model, temperature=0.2)

    def _build_messages(self, prompt: str, image: Optional[ImageInput]) -> List[Dict[str, Any]]:
        if image is None:
            return [{"role": "user", "content": prompt}]
        return [{
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": image.to_data_url()}},
            ],
        }]

    async def call(self, prompt: str, image: Optional[ImageInput] = None) -> ChatResponse:
        """非流式完成"""
        logger.debug(f"发送提示词到模型 {self.model}: {len(prompt)} 字符")
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=self._build_messages(prompt, image),
                max_tokens=self.config.max_tokens,
                temperature=self.temperature,
            )
        except APIError as e:
            raise ProviderError(f"模型请求失败: {e}") from e

        if not response.choices:
            raise ProviderError("模型响应格式错误: 缺少 choices")

        choice = response.choices[0]
        usage = response.usage
        token_usage = TokenUsage()
        if usage is not None:
            token_usage = TokenUsage(
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
            )

        logger.debug(f"Token使用情况: {token_usage}, 完成原因: {choice.finish_reason}")

        return ChatResponse(
            content=choice.message.content or "",
            token_usage=token_usage,
            finish_reason=choice.finish_reason or "stop",
        )

    async def stream(self, prompt: str, image: Optional[ImageInput] = None) -> AsyncIterator[str]:
        """流式完成事件生成器"""
        logger.debug(f"发送流式请求到模型 {self.model}: {len(prompt)} 字符")
        try:
            stream = await self.client.chat.completions.create(
                model=self.model,
                messages=self._build_messages(prompt, image),
                max_tokens=self.config.max_tokens,
                temperature=self.temperature,
                stream=True,
            )
            async for chunk in stream:
                if chunk.choices:
                    delta = chunk.choices[0].delta
                    if delta.content:
                        yield delta.content
        except APIError as e:
            raise ProviderError(f"模型流式请求失败: {e}") from e
