"""聊天持久化：键值文档存储接口及两种简单实现"""

import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from .models import Chat
from ..utils.logger import logger


class ChatRepository(ABC):
    """以聊天 id 为键，整体读写 Chat 聚合"""

    @abstractmethod
    def load(self, chat_id: str) -> Optional[Chat]:
        pass

    @abstractmethod
    def save(self, chat: Chat) -> None:
        pass

    @abstractmethod
    def delete(self, chat_id: str) -> bool:
        pass

    @abstractmethod
    def list_chats(self) -> List[Chat]:
        pass

    def get_or_create_for_character(self, character_id: str) -> Chat:
        """每个角色只对应一个聊天，已存在则直接返回"""
        for chat in self.list_chats():
            if chat.character_id == character_id:
                return chat
        chat = Chat(character_id=character_id)
        self.save(chat)
        logger.info(f"创建新聊天: {chat.id} (角色 {character_id})")
        return chat


class InMemoryChatRepository(ChatRepository):
    """进程内存储，保存的是序列化副本，避免外部修改泄漏"""

    def __init__(self):
        self._docs: Dict[str, dict] = {}

    def load(self, chat_id: str) -> Optional[Chat]:
        doc = self._docs.get(chat_id)
        return Chat.from_dict(doc) if doc else None

    def save(self, chat: Chat) -> None:
        self._docs[chat.id] = chat.to_dict()

    def delete(self, chat_id: str) -> bool:
        return self._docs.pop(chat_id, None) is not None

    def list_chats(self) -> List[Chat]:
        chats = [Chat.from_dict(doc) for doc in self._docs.values()]
        chats.sort(key=lambda c: c.updated_at, reverse=True)
        return chats


class JsonChatRepository(ChatRepository):
    """每个聊天一个 JSON 文件：<data_dir>/chat-<id>.json

    写入先落到临时文件再原子替换，保证单个聊天的读写是整体的。
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, chat_id: str) -> Path:
        return self.data_dir / f"chat-{chat_id}.json"

    def load(self, chat_id: str) -> Optional[Chat]:
        path = self._path(chat_id)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return Chat.from_dict(json.load(f))

    def save(self, chat: Chat) -> None:
        path = self._path(chat.id)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(chat.to_dict(), f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"保存聊天失败 {chat.id}: {e}")
            raise

    def delete(self, chat_id: str) -> bool:
        path = self._path(chat_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"删除聊天: {chat_id}")
        return True

    def list_chats(self) -> List[Chat]:
        chats = []
        for path in self.data_dir.glob("chat-*.json"):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    chats.append(Chat.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"读取聊天文件失败 {path}: {e}")
                continue

        chats.sort(key=lambda c: c.updated_at, reverse=True)
        return chats
