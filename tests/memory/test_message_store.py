"""MessageStore 单元测试"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from simutalk.errors import NotFound, OutOfRange
from simutalk.memory.message_store import MessageStore
from simutalk.protocol import USER_SENDER_ID


class TestAppend:

    def test_append_starts_without_branches(self, chat):
        store = MessageStore(chat)
        before = chat.updated_at

        msg = store.append(USER_SENDER_ID, "hi")

        assert msg.current_branch_index == 0
        assert msg.branches == []
        assert msg.chat_id == chat.id
        assert chat.messages == [msg]
        assert chat.updated_at >= before

    def test_append_extra_fields(self, chat):
        msg = MessageStore(chat).append(
            chat.character_id, "⚠️ 오류: boom", is_error=True, translated_content="번역"
        )

        assert msg.is_error is True
        assert msg.translated_content == "번역"

    def test_get_unknown_raises(self, chat):
        with pytest.raises(NotFound):
            MessageStore(chat).get("missing")

    def test_find_unknown_returns_none(self, chat):
        assert MessageStore(chat).find("missing") is None


class TestBranches:

    def test_add_branch_does_not_move_index(self, chat):
        store = MessageStore(chat)
        msg = store.append(chat.character_id, "original")

        index = store.add_branch(msg.id, "second")

        assert index == 1
        assert msg.current_branch_index == 0
        assert msg.active_content == "original"

    def test_add_branch_then_select_newest(self, chat):
        store = MessageStore(chat)
        msg = store.append(chat.character_id, "original")
        store.add_branch(msg.id, "v2")

        index = store.add_branch(msg.id, "v3")
        store.set_branch_index(msg.id, index)

        assert msg.current_branch_index == len(msg.branches) == 2
        assert msg.active_content == "v3"
        assert msg.content == "original"

    def test_add_branch_unknown_message(self, chat):
        with pytest.raises(NotFound):
            MessageStore(chat).add_branch("missing", "x")

    @pytest.mark.parametrize("index", [-1, 2])
    def test_set_branch_index_out_of_range(self, chat, index):
        store = MessageStore(chat)
        msg = store.append(chat.character_id, "original")
        store.add_branch(msg.id, "v2")

        with pytest.raises(OutOfRange):
            store.set_branch_index(msg.id, index)
        assert msg.current_branch_index == 0

    def test_original_preserved_across_edits(self, chat):
        store = MessageStore(chat)
        msg = store.append(USER_SENDER_ID, "first draft")

        for i in range(5):
            index = store.add_branch(msg.id, f"edit {i}")
            store.set_branch_index(msg.id, index)

        assert msg.content == "first draft"
        assert len(msg.branches) == 5
        store.set_branch_index(msg.id, 0)
        assert msg.active_content == "first draft"


class TestPairedSync:

    def _pair(self, chat, user_branches: int, reply_branches: int):
        store = MessageStore(chat)
        user_msg = store.append(USER_SENDER_ID, "question")
        reply = store.append(chat.character_id, "answer")
        for i in range(user_branches):
            store.add_branch(user_msg.id, f"question {i + 1}")
        for i in range(reply_branches):
            store.add_branch(reply.id, f"answer {i + 1}")
        return store, user_msg, reply

    def test_reply_follows_user_selection(self, chat):
        store, user_msg, reply = self._pair(chat, 2, 2)

        store.select_branch(user_msg.id, 2)
        assert reply.current_branch_index == 2

        store.select_branch(user_msg.id, 0)
        assert reply.current_branch_index == 0

    def test_reply_index_clamped(self, chat):
        store, user_msg, reply = self._pair(chat, 3, 1)

        store.select_branch(user_msg.id, 3)

        assert user_msg.current_branch_index == 3
        assert reply.current_branch_index == 1

    def test_character_selection_does_not_touch_neighbours(self, chat):
        store, user_msg, reply = self._pair(chat, 2, 2)
        next_user = store.append(USER_SENDER_ID, "next")

        store.select_branch(reply.id, 1)

        assert user_msg.current_branch_index == 0
        assert next_user.current_branch_index == 0

    def test_user_followed_by_user_is_not_synced(self, chat):
        store = MessageStore(chat)
        first = store.append(USER_SENDER_ID, "one")
        second = store.append(USER_SENDER_ID, "two")
        store.add_branch(first.id, "one b")

        store.select_branch(first.id, 1)

        assert second.current_branch_index == 0


class TestBranchTo:

    def test_fill_gap_duplicates_active_content(self, chat):
        store = MessageStore(chat)
        reply = store.append(chat.character_id, "answer")

        index = store.branch_to(reply.id, 3, "new answer")

        assert index == 3
        assert reply.current_branch_index == 3
        assert [b.content for b in reply.branches] == ["answer", "answer", "new answer"]

    def test_no_fill_when_enough_branches(self, chat):
        store = MessageStore(chat)
        reply = store.append(chat.character_id, "answer")
        store.add_branch(reply.id, "b1")
        store.add_branch(reply.id, "b2")

        index = store.branch_to(reply.id, 1, "b3")

        assert index == 3
        assert len(reply.branches) == 3
        assert reply.active_content == "b3"

    def test_index_must_be_positive(self, chat):
        store = MessageStore(chat)
        reply = store.append(chat.character_id, "answer")

        with pytest.raises(OutOfRange):
            store.branch_to(reply.id, 0, "x")


class TestRemoveAndUpdate:

    def test_remove_returns_removed(self, chat, make_messages):
        make_messages(chat, 4)
        store = MessageStore(chat)
        ids = [chat.messages[0].id, chat.messages[1].id, "missing"]

        removed = store.remove(ids)

        assert [m.id for m in removed] == ids[:2]
        assert len(store) == 2

    def test_update_patches_in_place(self, chat):
        store = MessageStore(chat)
        msg = store.append(chat.character_id, "hello")

        store.update(msg.id, translated_content="안녕")

        assert msg.translated_content == "안녕"
        assert msg.branches == []

    def test_update_rejects_other_fields(self, chat):
        store = MessageStore(chat)
        msg = store.append(chat.character_id, "hello")

        with pytest.raises(ValueError):
            store.update(msg.id, current_branch_index=3)

    def test_update_branch_translation(self, chat):
        store = MessageStore(chat)
        msg = store.append(chat.character_id, "hello")
        store.add_branch(msg.id, "hi")

        store.update_branch_translation(msg.id, 1, "안녕")
        store.update_branch_translation(msg.id, 0, "여보세요")

        assert msg.branches[0].translated_content == "안녕"
        assert msg.translated_content == "여보세요"
        with pytest.raises(OutOfRange):
            store.update_branch_translation(msg.id, 2, "x")

    def test_last_character_message(self, chat, make_messages):
        make_messages(chat, 3)

        last = MessageStore(chat).last_character_message()

        assert last is chat.messages[1]
