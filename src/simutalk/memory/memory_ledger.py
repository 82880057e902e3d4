"""记忆账本：MemorySummary 的有序集合"""

from typing import Callable, Iterable, List, Optional

from .models import Chat, MemorySummary


class MemoryLedger:
    """Chat.memory_summaries 之上的视图，不包含任何策略"""

    def __init__(self, chat: Chat):
        self.chat = chat

    @property
    def summaries(self) -> List[MemorySummary]:
        return self.chat.memory_summaries

    def __len__(self) -> int:
        return len(self.chat.memory_summaries)

    def add(self, summary: MemorySummary) -> None:
        self.chat.memory_summaries.append(summary)
        self.chat.touch()

    def remove_by_ids(self, ids: Iterable[str]) -> List[MemorySummary]:
        ids = set(ids)
        removed = [s for s in self.chat.memory_summaries if s.id in ids]
        if removed:
            self.chat.memory_summaries = [s for s in self.chat.memory_summaries if s.id not in ids]
            self.chat.touch()
        return removed

    def oldest_n(self, n: int) -> List[MemorySummary]:
        """按 created_at 排序（相同则按 start_time）取最早的 n 个"""
        ordered = sorted(self.chat.memory_summaries, key=lambda s: (s.created_at, s.start_time))
        return ordered[:n]

    def oldest(self) -> Optional[MemorySummary]:
        found = self.oldest_n(1)
        return found[0] if found else None

    def chronological(self) -> List[MemorySummary]:
        """按覆盖时间段排序，用于构建提示词"""
        return sorted(self.chat.memory_summaries, key=lambda s: (s.start_time, s.created_at))

    def total_tokens(self, estimator: Callable[[str], int]) -> int:
        return sum(estimator(s.content) for s in self.chat.memory_summaries)
