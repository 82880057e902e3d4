"""聊天存储模块

核心组件：
- Chat / Message / MessageBranch / MemorySummary: 数据模型
- MessageStore: 消息列表与分支语义
- MemoryLedger: 记忆摘要集合
- ChatRepository: 聊天整体读写（内存 / JSON 文件）

注意：MessageStore 与 MemoryLedger 是同一个 Chat 聚合的两个视图
"""

from .models import (
    Chat,
    Message,
    MessageBranch,
    MemorySummary,
)
from .message_store import MessageStore
from .memory_ledger import MemoryLedger
from .chat_store import ChatRepository, InMemoryChatRepository, JsonChatRepository

__all__ = [
    "Chat",
    "Message",
    "MessageBranch",
    "MemorySummary",
    "MessageStore",
    "MemoryLedger",
    "ChatRepository",
    "InMemoryChatRepository",
    "JsonChatRepository",
]
