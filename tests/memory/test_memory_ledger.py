"""MemoryLedger 单元测试"""

import sys
from datetime import datetime, timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from simutalk.compaction.utils import estimate_tokens
from simutalk.memory.memory_ledger import MemoryLedger


BASE = datetime(2024, 1, 1, 9, 0)


class TestMemoryLedger:

    def test_add_and_remove(self, chat, make_memory):
        ledger = MemoryLedger(chat)
        first = make_memory("first", BASE)
        second = make_memory("second", BASE + timedelta(hours=1))
        ledger.add(first)
        ledger.add(second)

        removed = ledger.remove_by_ids([first.id, "missing"])

        assert removed == [first]
        assert ledger.summaries == [second]

    def test_oldest_by_created_at(self, chat, make_memory):
        ledger = MemoryLedger(chat)
        newer = make_memory("newer", BASE + timedelta(hours=2))
        older = make_memory("older", BASE)
        ledger.add(newer)
        ledger.add(older)

        assert ledger.oldest() is older
        assert ledger.oldest_n(2) == [older, newer]

    def test_oldest_tie_broken_by_start_time(self, chat, make_memory):
        ledger = MemoryLedger(chat)
        late = make_memory("late", BASE, start=BASE + timedelta(minutes=30))
        early = make_memory("early", BASE, start=BASE)
        ledger.add(late)
        ledger.add(early)

        assert ledger.oldest() is early

    def test_oldest_empty(self, chat):
        assert MemoryLedger(chat).oldest() is None

    def test_chronological_orders_by_start_time(self, chat, make_memory):
        ledger = MemoryLedger(chat)
        # 合并产生的记忆 created_at 较新，但覆盖的时间段更早
        merged = make_memory("merged", BASE + timedelta(days=1), start=BASE, end=BASE + timedelta(hours=1))
        recent = make_memory("recent", BASE + timedelta(hours=5), start=BASE + timedelta(hours=3))
        ledger.add(recent)
        ledger.add(merged)

        assert [s.content for s in ledger.chronological()] == ["merged", "recent"]

    def test_total_tokens(self, chat, make_memory):
        ledger = MemoryLedger(chat)
        ledger.add(make_memory("a" * 40, BASE))
        ledger.add(make_memory("b" * 5, BASE))

        assert ledger.total_tokens(estimate_tokens) == 10 + 2
