"""RollingSummaryStrategy 单元测试"""

import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from simutalk.compaction.base import CompactionAction, CompactionContext
from simutalk.compaction.strategies.rolling_summary import RollingSummaryStrategy
from simutalk.compaction.utils import estimate_chat_tokens
from simutalk.errors import ProviderError
from simutalk.memory.message_store import MessageStore


BASE = datetime(2024, 1, 1, 9, 0)


@pytest.fixture
def strategy():
    # 预算 100 tokens，记忆上限 30 tokens，每次摘要 4 对消息
    return RollingSummaryStrategy({"token_threshold": 100, "memory_max_ratio": 0.3, "message_set_count": 4})


def _context(chat, summarizer):
    return CompactionContext(chat=chat, summarizer=summarizer, character_name="Bob", user_name="Alice")


class TestShouldCompact:

    def test_defaults(self):
        strategy = RollingSummaryStrategy()

        assert strategy.token_threshold == 40000
        assert strategy.memory_max_ratio == 0.3
        assert strategy.message_set_count == 4

    def test_under_budget(self, strategy, chat, make_messages, fake_client_cls):
        make_messages(chat, 4, content="x" * 40)  # 40 tokens

        context = _context(chat, fake_client_cls())

        assert strategy.should_compact(context) is False

    @pytest.mark.asyncio
    async def test_compact_under_budget_is_noop(self, strategy, chat, make_messages, fake_client_cls):
        make_messages(chat, 4, content="x" * 40)
        summarizer = fake_client_cls()

        result = await strategy.compact(_context(chat, summarizer))

        assert result.action == CompactionAction.NONE
        assert result.success is True
        assert summarizer.prompts == []
        assert len(chat.messages) == 4

    def test_context_overflow_triggers(self, strategy, chat, make_messages, fake_client_cls):
        make_messages(chat, 10, content="x" * 60)  # 150 tokens

        assert strategy.should_compact(_context(chat, fake_client_cls())) is True

    def test_memory_pressure_triggers(self, strategy, chat, make_memory, fake_client_cls):
        chat.memory_summaries.append(make_memory("m" * 200, BASE))  # 50 tokens > 30

        assert strategy.should_compact(_context(chat, fake_client_cls())) is True


class TestSummarizeMessages:

    @pytest.mark.asyncio
    async def test_oldest_block_becomes_one_memory(self, strategy, chat, make_messages, fake_client_cls):
        messages = list(make_messages(chat, 10, content="x" * 60))
        summarizer = fake_client_cls(replies=["- Alice and Bob met"])

        result = await strategy.compact(_context(chat, summarizer))

        assert result.success is True
        assert result.action == CompactionAction.SUMMARIZED
        assert len(chat.memory_summaries) == 1
        memory = chat.memory_summaries[0]
        assert memory.content == "- Alice and Bob met"
        assert memory.summarized_message_ids == [m.id for m in messages[:8]]
        assert memory.start_time == messages[0].timestamp
        assert memory.end_time == messages[7].timestamp
        assert [m.id for m in chat.messages] == [m.id for m in messages[8:]]
        assert result.removed_message_ids == memory.summarized_message_ids
        assert result.tokens_before == 150
        assert result.tokens_after == estimate_chat_tokens(chat)
        assert result.tokens_after < result.tokens_before

    @pytest.mark.asyncio
    async def test_summary_prompt_uses_names_and_active_branch(self, strategy, chat, make_messages, fake_client_cls):
        make_messages(chat, 10, content="x" * 60)
        reply = chat.messages[1]
        MessageStore(chat).branch_to(reply.id, 1, "the chosen version")
        summarizer = fake_client_cls(replies=["short"])

        await strategy.compact(_context(chat, summarizer))

        prompt = summarizer.prompts[0]
        assert "Alice:" in prompt
        assert "Bob: the chosen version" in prompt

    @pytest.mark.asyncio
    async def test_block_smaller_than_set_count(self, chat, make_messages, fake_client_cls):
        strategy = RollingSummaryStrategy({"token_threshold": 100, "message_set_count": 4})
        make_messages(chat, 3, content="x" * 200)  # 150 tokens
        summarizer = fake_client_cls(replies=["short"])

        result = await strategy.compact(_context(chat, summarizer))

        assert result.action == CompactionAction.SUMMARIZED
        assert chat.messages == []
        assert len(chat.memory_summaries[0].summarized_message_ids) == 3

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_state(self, strategy, chat, make_messages, fake_client_cls):
        make_messages(chat, 10, content="x" * 60)
        before = [m.id for m in chat.messages]
        summarizer = fake_client_cls(replies=[ProviderError("503")])

        result = await strategy.compact(_context(chat, summarizer))

        assert result.success is False
        assert result.action == CompactionAction.FAILED
        assert "503" in result.error
        assert [m.id for m in chat.messages] == before
        assert chat.memory_summaries == []
        assert result.tokens_after == result.tokens_before

    @pytest.mark.asyncio
    async def test_summary_not_smaller_is_rejected(self, strategy, chat, make_messages, fake_client_cls):
        make_messages(chat, 10, content="x" * 60)
        summarizer = fake_client_cls(replies=["y" * 2000])

        result = await strategy.compact(_context(chat, summarizer))

        assert result.action == CompactionAction.FAILED
        assert len(chat.messages) == 10
        assert chat.memory_summaries == []

    @pytest.mark.asyncio
    async def test_empty_summary_is_rejected(self, strategy, chat, make_messages, fake_client_cls):
        make_messages(chat, 10, content="x" * 60)

        result = await strategy.compact(_context(chat, fake_client_cls(replies=["   "])))

        assert result.action == CompactionAction.FAILED
        assert len(chat.messages) == 10

    @pytest.mark.asyncio
    async def test_single_message_evicts_oldest_memory(self, strategy, chat, make_messages, make_memory, fake_client_cls):
        make_messages(chat, 1, content="x" * 500)  # 125 tokens
        older = make_memory("m" * 40, BASE)  # 10 tokens，未超出记忆上限
        newer = make_memory("n" * 40, BASE + timedelta(hours=1))
        chat.memory_summaries.extend([newer, older])
        summarizer = fake_client_cls()

        result = await strategy.compact(_context(chat, summarizer))

        assert result.action == CompactionAction.EVICTED
        assert result.removed_memory_ids == [older.id]
        assert chat.memory_summaries == [newer]
        assert len(chat.messages) == 1
        assert summarizer.prompts == []

    @pytest.mark.asyncio
    async def test_single_message_without_memory_fails(self, strategy, chat, make_messages, fake_client_cls):
        make_messages(chat, 1, content="x" * 500)

        result = await strategy.compact(_context(chat, fake_client_cls()))

        assert result.action == CompactionAction.FAILED
        assert len(chat.messages) == 1


class TestMemoryPressure:

    @pytest.mark.asyncio
    async def test_two_oldest_memories_merged(self, strategy, chat, make_memory, fake_client_cls):
        first = make_memory("a" * 60, BASE, ids=["m1", "m2"], start=BASE, end=BASE + timedelta(minutes=5))
        second = make_memory(
            "b" * 60, BASE + timedelta(hours=1), ids=["m3", "m4"],
            start=BASE + timedelta(minutes=10), end=BASE + timedelta(minutes=20),
        )
        third = make_memory("c" * 8, BASE + timedelta(hours=2), ids=["m5"])
        chat.memory_summaries.extend([third, second, first])
        summarizer = fake_client_cls(replies=["merged"])

        result = await strategy.compact(_context(chat, summarizer))

        assert result.action == CompactionAction.MERGED
        assert set(result.removed_memory_ids) == {first.id, second.id}
        assert len(chat.memory_summaries) == 2
        merged = result.added_memory
        assert merged in chat.memory_summaries
        assert third in chat.memory_summaries
        assert merged.content == "merged"
        assert merged.summarized_message_ids == ["m1", "m2", "m3", "m4"]
        assert merged.start_time == BASE
        assert merged.end_time == BASE + timedelta(minutes=20)

    @pytest.mark.asyncio
    async def test_stage_one_ends_the_pass(self, strategy, chat, make_messages, make_memory, fake_client_cls):
        make_messages(chat, 10, content="x" * 60)
        chat.memory_summaries.extend([
            make_memory("a" * 80, BASE),
            make_memory("b" * 80, BASE + timedelta(hours=1)),
        ])
        summarizer = fake_client_cls(replies=["merged"])

        result = await strategy.compact(_context(chat, summarizer))

        assert result.action == CompactionAction.MERGED
        assert len(chat.messages) == 10
        assert len(summarizer.prompts) == 1

    @pytest.mark.asyncio
    async def test_single_memory_over_budget_is_evicted(self, strategy, chat, make_memory, fake_client_cls):
        only = make_memory("m" * 200, BASE)
        chat.memory_summaries.append(only)
        summarizer = fake_client_cls()

        result = await strategy.compact(_context(chat, summarizer))

        assert result.action == CompactionAction.EVICTED
        assert result.removed_memory_ids == [only.id]
        assert chat.memory_summaries == []
        assert summarizer.prompts == []

    @pytest.mark.asyncio
    async def test_merge_failure_leaves_state(self, strategy, chat, make_memory, fake_client_cls):
        memories = [make_memory("a" * 80, BASE), make_memory("b" * 80, BASE + timedelta(hours=1))]
        chat.memory_summaries.extend(memories)

        result = await strategy.compact(_context(chat, fake_client_cls(replies=[ProviderError("timeout")])))

        assert result.action == CompactionAction.FAILED
        assert chat.memory_summaries == memories

    @pytest.mark.asyncio
    async def test_missing_summarizer_fails(self, strategy, chat, make_memory):
        memories = [make_memory("a" * 80, BASE), make_memory("b" * 80, BASE + timedelta(hours=1))]
        chat.memory_summaries.extend(memories)

        result = await strategy.compact(_context(chat, None))

        assert result.action == CompactionAction.FAILED
        assert chat.memory_summaries == memories


class TestMetadata:

    def test_metadata(self, strategy):
        metadata = strategy.get_metadata()

        assert metadata.name == "rolling_summary"
        assert metadata.version == "1.0.0"
