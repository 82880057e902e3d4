"""压缩策略基础接口"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Dict, Any

from ..memory.models import Chat, MemorySummary
from .utils import estimate_tokens


class CompactionAction(str, Enum):
    """一次压缩的动作"""
    NONE = "none"
    MERGED = "merged"          # 合并两条最早的记忆
    EVICTED = "evicted"        # 直接删除最早的记忆（有损）
    SUMMARIZED = "summarized"  # 最早一段消息被摘要为新记忆
    FAILED = "failed"


@dataclass
class CompactionContext:
    """压缩上下文"""
    chat: Chat
    summarizer: Any  # ModelClient，用于生成摘要
    character_name: str = "Character"
    user_name: str = "User"
    estimator: Callable[[str], int] = estimate_tokens
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CompactResult:
    """压缩结果"""
    success: bool
    action: CompactionAction
    tokens_before: int
    tokens_after: int
    strategy_name: str
    removed_message_ids: List[str] = field(default_factory=list)
    removed_memory_ids: List[str] = field(default_factory=list)
    added_memory: Optional[MemorySummary] = None
    error: Optional[str] = None

    @property
    def tokens_saved(self) -> int:
        return self.tokens_before - self.tokens_after

    @property
    def acted(self) -> bool:
        return self.action in (CompactionAction.MERGED, CompactionAction.EVICTED, CompactionAction.SUMMARIZED)


@dataclass
class StrategyMetadata:
    """策略元数据"""
    name: str
    version: str
    description: str


class CompactionStrategy(ABC):
    """压缩策略接口"""

    @abstractmethod
    def should_compact(self, context: CompactionContext) -> bool:
        pass

    @abstractmethod
    async def compact(self, context: CompactionContext) -> CompactResult:
        pass

    @abstractmethod
    def get_metadata(self) -> StrategyMetadata:
        pass
