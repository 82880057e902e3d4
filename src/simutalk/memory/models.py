"""聊天数据模型"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Dict, Any

from ..protocol import ChatMode, OutputLanguage, USER_SENDER_ID


def new_id() -> str:
    return str(uuid.uuid4())


def _parse_time(value: Optional[str]) -> datetime:
    return datetime.fromisoformat(value) if value else datetime.now()


@dataclass
class MessageBranch:
    """消息的一个候选版本（同级，非树）"""
    content: str
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=datetime.now)
    translated_content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "id": self.id,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.translated_content is not None:
            d["translated_content"] = self.translated_content
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessageBranch":
        return cls(
            id=data.get("id") or new_id(),
            content=data.get("content", ""),
            timestamp=_parse_time(data.get("timestamp")),
            translated_content=data.get("translated_content"),
        )


@dataclass
class Message:
    """聊天消息

    current_branch_index 为 0 时选中 content（原始生成），k>0 时选中 branches[k-1]。
    content 本身永远不会因编辑或重新生成而改变。
    """
    chat_id: str
    sender_id: str
    content: str
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=datetime.now)
    translated_content: Optional[str] = None
    branches: List[MessageBranch] = field(default_factory=list)
    current_branch_index: int = 0
    image_data: Optional[str] = None
    image_mime_type: Optional[str] = None
    is_error: bool = False

    @property
    def is_user(self) -> bool:
        return self.sender_id == USER_SENDER_ID

    @property
    def active_content(self) -> str:
        """当前选中分支的内容"""
        if self.current_branch_index == 0:
            return self.content
        return self.branches[self.current_branch_index - 1].content

    @property
    def active_translation(self) -> Optional[str]:
        if self.current_branch_index == 0:
            return self.translated_content
        return self.branches[self.current_branch_index - 1].translated_content

    def all_versions(self) -> List[str]:
        """原始内容 + 所有分支内容，用于“已尝试过”的上下文"""
        return [self.content] + [b.content for b in self.branches]

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "id": self.id,
            "chat_id": self.chat_id,
            "sender_id": self.sender_id,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "branches": [b.to_dict() for b in self.branches],
            "current_branch_index": self.current_branch_index,
        }
        if self.translated_content is not None:
            d["translated_content"] = self.translated_content
        if self.image_data:
            d["image_data"] = self.image_data
            d["image_mime_type"] = self.image_mime_type
        if self.is_error:
            d["is_error"] = True
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        branches = [MessageBranch.from_dict(b) for b in data.get("branches") or []]
        index = int(data.get("current_branch_index", 0))
        # 持久化数据损坏时把索引拉回合法范围
        index = max(0, min(index, len(branches)))
        return cls(
            id=data.get("id") or new_id(),
            chat_id=data.get("chat_id", ""),
            sender_id=data.get("sender_id", USER_SENDER_ID),
            content=data.get("content", ""),
            timestamp=_parse_time(data.get("timestamp")),
            translated_content=data.get("translated_content"),
            branches=branches,
            current_branch_index=index,
            image_data=data.get("image_data"),
            image_mime_type=data.get("image_mime_type"),
            is_error=bool(data.get("is_error", False)),
        )


@dataclass
class MemorySummary:
    """长期记忆摘要：替代一段已被压缩的消息"""
    content: str
    summarized_message_ids: List[str]
    start_time: datetime
    end_time: datetime
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "summarized_message_ids": list(self.summarized_message_ids),
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemorySummary":
        return cls(
            id=data.get("id") or new_id(),
            content=data.get("content", ""),
            summarized_message_ids=list(data.get("summarized_message_ids") or []),
            start_time=_parse_time(data.get("start_time")),
            end_time=_parse_time(data.get("end_time")),
            created_at=_parse_time(data.get("created_at")),
        )


@dataclass
class Chat:
    """聊天聚合：独占其消息与记忆摘要"""
    character_id: str
    id: str = field(default_factory=new_id)
    mode: ChatMode = ChatMode.DIRECT
    messages: List[Message] = field(default_factory=list)
    memory_summaries: List[MemorySummary] = field(default_factory=list)
    autopilot_scenario: Optional[str] = None
    output_language: OutputLanguage = OutputLanguage.KOREAN
    user_profile_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def touch(self) -> None:
        self.updated_at = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "character_id": self.character_id,
            "mode": self.mode.value,
            "messages": [m.to_dict() for m in self.messages],
            "memory_summaries": [s.to_dict() for s in self.memory_summaries],
            "autopilot_scenario": self.autopilot_scenario,
            "output_language": self.output_language.value,
            "user_profile_id": self.user_profile_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chat":
        return cls(
            id=data["id"],
            character_id=data["character_id"],
            mode=ChatMode(data.get("mode", ChatMode.DIRECT.value)),
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            memory_summaries=[MemorySummary.from_dict(s) for s in data.get("memory_summaries") or []],
            autopilot_scenario=data.get("autopilot_scenario"),
            output_language=OutputLanguage(data.get("output_language", OutputLanguage.KOREAN.value)),
            user_profile_id=data.get("user_profile_id"),
            created_at=_parse_time(data.get("created_at")),
            updated_at=_parse_time(data.get("updated_at")),
        )
