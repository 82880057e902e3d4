"""聊天存储单元测试"""

import sys
from datetime import timedelta
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from simutalk.memory.chat_store import InMemoryChatRepository, JsonChatRepository
from simutalk.memory.message_store import MessageStore
from simutalk.memory.models import Chat, Message
from simutalk.protocol import ChatMode, OutputLanguage, USER_SENDER_ID


@pytest.fixture(params=["memory", "json"])
def repository(request, tmp_path):
    if request.param == "memory":
        return InMemoryChatRepository()
    return JsonChatRepository(tmp_path / "chats")


def _populated_chat() -> Chat:
    chat = Chat(character_id="char-1", mode=ChatMode.AUTOPILOT, autopilot_scenario="rainy night")
    chat.output_language = OutputLanguage.JAPANESE
    store = MessageStore(chat)
    user_msg = store.append(USER_SENDER_ID, "hello", image_data="aGVsbG8=", image_mime_type="image/jpeg")
    reply = store.append("char-1", "hi")
    store.branch_to(reply.id, 2, "hey")
    store.add_branch(user_msg.id, "hello again")
    store.update_branch_translation(reply.id, 2, "やあ")
    return chat


class TestRepository:

    def test_save_and_load_roundtrip(self, repository):
        chat = _populated_chat()

        repository.save(chat)
        loaded = repository.load(chat.id)

        assert loaded is not chat
        assert loaded.to_dict() == chat.to_dict()
        reply = loaded.messages[1]
        assert reply.current_branch_index == 2
        assert reply.active_content == "hey"
        assert reply.active_translation == "やあ"
        assert loaded.messages[0].image_mime_type == "image/jpeg"

    def test_load_missing(self, repository):
        assert repository.load("missing") is None

    def test_saved_copy_is_isolated(self, repository):
        chat = _populated_chat()
        repository.save(chat)

        MessageStore(chat).append(USER_SENDER_ID, "not saved yet")

        assert len(repository.load(chat.id).messages) == 2

    def test_delete(self, repository):
        chat = _populated_chat()
        repository.save(chat)

        assert repository.delete(chat.id) is True
        assert repository.delete(chat.id) is False
        assert repository.load(chat.id) is None

    def test_list_sorted_by_updated_at(self, repository):
        older = Chat(character_id="a")
        newer = Chat(character_id="b")
        repository.save(older)
        newer.updated_at = older.updated_at + timedelta(seconds=1)
        repository.save(newer)

        assert [c.id for c in repository.list_chats()] == [newer.id, older.id]

    def test_get_or_create_for_character(self, repository):
        created = repository.get_or_create_for_character("char-9")
        again = repository.get_or_create_for_character("char-9")

        assert created.id == again.id
        assert len(repository.list_chats()) == 1


class TestJsonRepository:

    def test_unreadable_file_is_skipped(self, tmp_path):
        repo = JsonChatRepository(tmp_path)
        repo.save(Chat(character_id="ok"))
        (tmp_path / "chat-broken.json").write_text("{not json", encoding="utf-8")

        chats = repo.list_chats()

        assert [c.character_id for c in chats] == ["ok"]

    def test_file_layout(self, tmp_path):
        repo = JsonChatRepository(tmp_path)
        chat = Chat(character_id="c")

        repo.save(chat)

        assert (tmp_path / f"chat-{chat.id}.json").exists()
        assert not list(tmp_path.glob("*.tmp"))


class TestModels:

    def test_corrupt_branch_index_is_clamped(self):
        msg = Message.from_dict({
            "id": "m1",
            "chat_id": "c",
            "sender_id": "char-1",
            "content": "x",
            "branches": [{"content": "y"}],
            "current_branch_index": 7,
        })

        assert msg.current_branch_index == 1
        assert msg.active_content == "y"
