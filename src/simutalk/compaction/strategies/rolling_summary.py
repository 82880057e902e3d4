"""滚动摘要压缩策略：记忆压力（合并/淘汰）优先于上下文溢出（消息摘要）

每次 AI 回合完成后执行一次，两个阶段严格有序：
1. 记忆摘要总量超过 token_threshold * memory_max_ratio：
   - 至少两条记忆：把最早的两条合并成一条
   - 只有一条：直接删除（有损，接受的取舍）
   本阶段一旦触发，本次不再进入阶段 2。
2. 消息 + 记忆总量超过 token_threshold：
   - 取最早的 message_set_count 对消息（最多 2 倍条数）摘要为一条新记忆
   - 可摘要的消息不足两条时，退化为删除最早的记忆
摘要调用失败时状态保持不变，下一轮重试。
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from ..base import (
    CompactionAction,
    CompactionContext,
    CompactionStrategy,
    CompactResult,
    StrategyMetadata,
)
from ..utils import estimate_chat_tokens, estimate_messages_tokens, estimate_memories_tokens
from ...errors import CompactionFailed, ProviderError
from ...memory.memory_ledger import MemoryLedger
from ...memory.message_store import MessageStore
from ...memory.models import Message, MemorySummary
from ...utils.logger import logger


class RollingSummaryStrategy(CompactionStrategy):
    """两阶段滚动摘要策略"""

    TOKEN_THRESHOLD = 40_000
    MEMORY_MAX_RATIO = 0.3
    MESSAGE_SET_COUNT = 4

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.token_threshold = self.config.get("token_threshold", self.TOKEN_THRESHOLD)
        self.memory_max_ratio = self.config.get("memory_max_ratio", self.MEMORY_MAX_RATIO)
        self.message_set_count = self.config.get("message_set_count", self.MESSAGE_SET_COUNT)

    @property
    def memory_max_tokens(self) -> float:
        return self.token_threshold * self.memory_max_ratio

    def _memory_tokens(self, context: CompactionContext) -> int:
        return estimate_memories_tokens(context.chat.memory_summaries, context.estimator)

    def _total_tokens(self, context: CompactionContext) -> int:
        return estimate_chat_tokens(context.chat, context.estimator)

    def should_compact(self, context: CompactionContext) -> bool:
        memory_tokens = self._memory_tokens(context)
        total_tokens = self._total_tokens(context)
        should = memory_tokens > self.memory_max_tokens or total_tokens > self.token_threshold
        logger.debug(
            f"压缩检查: 记忆 {memory_tokens}/{self.memory_max_tokens:.0f}, "
            f"总计 {total_tokens}/{self.token_threshold}, {'触发' if should else '不触发'}"
        )
        return should

    async def compact(self, context: CompactionContext) -> CompactResult:
        tokens_before = self._total_tokens(context)

        if self._memory_tokens(context) > self.memory_max_tokens:
            return await self._relieve_memory_pressure(context, tokens_before)

        if tokens_before > self.token_threshold:
            return await self._summarize_oldest_messages(context, tokens_before)

        return self._result(context, CompactionAction.NONE, tokens_before)

    # 阶段 1
    async def _relieve_memory_pressure(self, context: CompactionContext, tokens_before: int) -> CompactResult:
        ledger = MemoryLedger(context.chat)

        if len(ledger) >= 2:
            oldest = ledger.oldest_n(2)
            try:
                merged = await self._merge_memories(oldest, context)
            except (CompactionFailed, ProviderError) as e:
                return self._failed(context, tokens_before, f"记忆合并失败: {e}")

            ledger.remove_by_ids(m.id for m in oldest)
            ledger.add(merged)
            logger.info(f"合并最早的 2 条记忆 → {merged.id}")
            return self._result(
                context, CompactionAction.MERGED, tokens_before,
                removed_memory_ids=[m.id for m in oldest], added_memory=merged,
            )

        return self._evict_oldest_memory(context, tokens_before, "记忆超出预算且无法合并")

    # 阶段 2
    async def _summarize_oldest_messages(self, context: CompactionContext, tokens_before: int) -> CompactResult:
        block = self.select_block(context.chat.messages)

        if len(block) < 2:
            if context.chat.memory_summaries:
                return self._evict_oldest_memory(context, tokens_before, "可摘要的消息不足两条")
            return self._failed(context, tokens_before, "可摘要的消息不足两条，且没有可删除的记忆")

        try:
            summary = await self._summarize_block(block, context)
        except (CompactionFailed, ProviderError) as e:
            return self._failed(context, tokens_before, f"消息摘要失败: {e}")

        # 删除消息与新增记忆在同一步内完成
        MemoryLedger(context.chat).add(summary)
        MessageStore(context.chat).remove(summary.summarized_message_ids)
        logger.info(f"摘要最早的 {len(block)} 条消息 → 记忆 {summary.id}")
        return self._result(
            context, CompactionAction.SUMMARIZED, tokens_before,
            removed_message_ids=list(summary.summarized_message_ids), added_memory=summary,
        )

    def select_block(self, messages: List[Message]) -> List[Message]:
        """从头部取最多 message_set_count 对（2 倍条数）消息"""
        return list(messages[: self.message_set_count * 2])

    def _evict_oldest_memory(self, context: CompactionContext, tokens_before: int, reason: str) -> CompactResult:
        ledger = MemoryLedger(context.chat)
        oldest = ledger.oldest()
        if oldest is None:
            return self._failed(context, tokens_before, reason)

        ledger.remove_by_ids([oldest.id])
        logger.warning(
            f"{reason}，删除最早的记忆 {oldest.id}（覆盖 {len(oldest.summarized_message_ids)} 条消息，内容将丢失）"
        )
        return self._result(context, CompactionAction.EVICTED, tokens_before, removed_memory_ids=[oldest.id])

    async def _merge_memories(self, memories: List[MemorySummary], context: CompactionContext) -> MemorySummary:
        text = await self._generate(context, self._build_merge_prompt(memories))
        replaced = estimate_memories_tokens(memories, context.estimator)
        self._ensure_smaller(text, replaced, context)

        message_ids: List[str] = []
        for memory in memories:
            message_ids.extend(memory.summarized_message_ids)

        return MemorySummary(
            content=text,
            summarized_message_ids=message_ids,
            start_time=min(m.start_time for m in memories),
            end_time=max(m.end_time for m in memories),
            created_at=datetime.now(),
        )

    async def _summarize_block(self, block: List[Message], context: CompactionContext) -> MemorySummary:
        text = await self._generate(context, self._build_summary_prompt(block, context))
        replaced = estimate_messages_tokens(block, context.estimator)
        self._ensure_smaller(text, replaced, context)

        return MemorySummary(
            content=text,
            summarized_message_ids=[m.id for m in block],
            start_time=block[0].timestamp,
            end_time=block[-1].timestamp,
            created_at=datetime.now(),
        )

    async def _generate(self, context: CompactionContext, prompt: str) -> str:
        """调用摘要模型"""
        if context.summarizer is None:
            raise CompactionFailed("未提供摘要模型客户端")

        response = await context.summarizer.call(prompt)
        text = (response.content or "").strip()
        if not text:
            raise CompactionFailed("摘要模型返回空内容")
        return text

    @staticmethod
    def _ensure_smaller(text: str, replaced_tokens: int, context: CompactionContext) -> None:
        new_tokens = context.estimator(text)
        if new_tokens >= replaced_tokens:
            raise CompactionFailed(f"摘要未变短: {new_tokens} >= {replaced_tokens} tokens")

    def _build_summary_prompt(self, block: List[Message], context: CompactionContext) -> str:
        lines = []
        for msg in block:
            speaker = context.user_name if msg.is_user else context.character_name
            lines.append(f"[{msg.timestamp:%Y-%m-%d %H:%M}] {speaker}: {msg.active_content}")
        conversation_text = "\n".join(lines)

        return f"""Summarize the following part of a role-play chat between {context.user_name} and {context.character_name} as long-term memory.

Keep what matters for continuing the story:
- Events that happened and promises or plans that were made
- Changes in the relationship and emotions
- Facts learned about either person (names, preferences, places)

Write concise Markdown bullet points in English, much shorter than the original.

Conversation:
{conversation_text}"""

    @staticmethod
    def _build_merge_prompt(memories: List[MemorySummary]) -> str:
        blocks = []
        for memory in sorted(memories, key=lambda m: m.start_time):
            blocks.append(
                f"[{memory.start_time:%Y-%m-%d %H:%M} ~ {memory.end_time:%Y-%m-%d %H:%M}]\n{memory.content}"
            )
        memory_text = "\n\n".join(blocks)

        return f"""The following are long-term memory summaries of one ongoing role-play chat, in chronological order.
Merge them into a single, shorter summary that keeps the most important events, relationship changes and facts.
Drop minor details. Write concise Markdown bullet points in English.

Memories:
{memory_text}"""

    def _result(self, context: CompactionContext, action: CompactionAction, tokens_before: int, **kwargs) -> CompactResult:
        return CompactResult(
            success=True,
            action=action,
            tokens_before=tokens_before,
            tokens_after=self._total_tokens(context),
            strategy_name="rolling_summary",
            **kwargs,
        )

    def _failed(self, context: CompactionContext, tokens_before: int, error: str) -> CompactResult:
        return CompactResult(
            success=False,
            action=CompactionAction.FAILED,
            tokens_before=tokens_before,
            tokens_after=tokens_before,
            strategy_name="rolling_summary",
            error=error,
        )

    def get_metadata(self) -> StrategyMetadata:
        return StrategyMetadata(
            name="rolling_summary",
            version="1.0.0",
            description="两阶段滚动摘要：记忆超限时合并/淘汰，上下文超限时摘要最早的消息",
        )
