"""测试公共夹具：脚本化的假模型客户端与基础数据"""

import asyncio
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# 添加 src 到路径
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from simutalk.config import Config
from simutalk.memory.models import Chat, Message, MemorySummary
from simutalk.model_client import ChatResponse, ModelClient
from simutalk.persona import Character, CharacterFieldProfile, UserProfile, UserFieldProfile
from simutalk.protocol import USER_SENDER_ID


CHARACTER_ID = "char-bob"


class FakeModelClient(ModelClient):
    """按顺序返回预设回复；回复为异常实例时抛出该异常"""

    model = "fake-model"

    def __init__(self, replies=None, delay: float = 0.0, chunk_size: int = 3):
        self.replies = list(replies or [])
        self.delay = delay
        self.chunk_size = chunk_size
        self.prompts = []
        self.images = []

    def _take(self, prompt, image):
        """记录请求并取出本次的回复（取消时回复也被消耗）"""
        self.prompts.append(prompt)
        self.images.append(image)
        return self.replies.pop(0) if self.replies else "default reply"

    async def call(self, prompt, image=None):
        reply = self._take(prompt, image)
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(reply, Exception):
            raise reply
        return ChatResponse(content=reply)

    async def stream(self, prompt, image=None):
        reply = self._take(prompt, image)
        if isinstance(reply, Exception):
            raise reply
        for i in range(0, len(reply), self.chunk_size):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield reply[i:i + self.chunk_size]


@pytest.fixture
def fake_client_cls():
    return FakeModelClient


@pytest.fixture
def config():
    return Config(api_key="test-key", streaming=False)


@pytest.fixture
def character():
    return Character(
        id=CHARACTER_ID,
        field_profile=CharacterFieldProfile(
            name="Bob",
            personality="cheerful",
            speech_style="casual",
            relationship="old friend",
            world_setting="modern Seoul",
        ),
    )


@pytest.fixture
def user():
    return UserProfile(field_profile=UserFieldProfile(name="Alice", personality="calm"))


@pytest.fixture
def chat():
    return Chat(character_id=CHARACTER_ID)


@pytest.fixture
def make_messages():
    """生成交替的用户/角色消息，时间戳递增"""

    def _make(chat: Chat, count: int, content: str = "hello there", start: datetime = None):
        start = start or datetime(2024, 1, 1, 12, 0)
        for i in range(count):
            sender = USER_SENDER_ID if i % 2 == 0 else chat.character_id
            chat.messages.append(Message(
                chat_id=chat.id,
                sender_id=sender,
                content=content,
                timestamp=start + timedelta(minutes=i),
            ))
        return chat.messages

    return _make


@pytest.fixture
def make_memory():
    def _make(content: str, created_at: datetime, ids=None, start: datetime = None, end: datetime = None):
        return MemorySummary(
            content=content,
            summarized_message_ids=list(ids or []),
            start_time=start or created_at,
            end_time=end or created_at,
            created_at=created_at,
        )

    return _make
