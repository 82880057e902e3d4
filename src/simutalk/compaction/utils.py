"""压缩工具函数"""

import math
from functools import lru_cache
from typing import Callable, Iterable

from ..memory.models import Chat, Message, MemorySummary


@lru_cache(maxsize=1000)
def estimate_tokens(text: str) -> int:
    """估算文本token数（约4字符/token，向上取整）"""
    return math.ceil(len(text or "") / 4)


def estimate_messages_tokens(messages: Iterable[Message], estimator: Callable[[str], int] = estimate_tokens) -> int:
    """按当前选中分支的内容计算，与实际发送到提示词的文本一致"""
    return sum(estimator(m.active_content) for m in messages)


def estimate_memories_tokens(memories: Iterable[MemorySummary], estimator: Callable[[str], int] = estimate_tokens) -> int:
    return sum(estimator(s.content) for s in memories)


def estimate_chat_tokens(chat: Chat, estimator: Callable[[str], int] = estimate_tokens) -> int:
    return (
        estimate_messages_tokens(chat.messages, estimator)
        + estimate_memories_tokens(chat.memory_summaries, estimator)
    )
