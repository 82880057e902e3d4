"""记忆压缩模块"""

from .base import (
    CompactionAction,
    CompactionStrategy,
    CompactionContext,
    CompactResult,
    StrategyMetadata,
)
from .manager import CompactionManager, CompactionMetrics
from .strategies.rolling_summary import RollingSummaryStrategy
from .utils import estimate_tokens, estimate_chat_tokens

__all__ = [
    "CompactionAction",
    "CompactionStrategy",
    "CompactionContext",
    "CompactResult",
    "StrategyMetadata",
    "CompactionManager",
    "CompactionMetrics",
    "RollingSummaryStrategy",
    "estimate_tokens",
    "estimate_chat_tokens",
]
