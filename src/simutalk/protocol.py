"""会话协议定义：枚举、事件与输入项"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Any
import json
from datetime import datetime


USER_SENDER_ID = "user"


class ChatMode(str, Enum):
    """聊天模式"""
    DIRECT = "direct"
    AUTOPILOT = "autopilot"


class OutputLanguage(str, Enum):
    """输出语言"""
    KOREAN = "korean"
    ENGLISH = "english"
    JAPANESE = "japanese"
    CHINESE = "chinese"

    @property
    def display_name(self) -> str:
        return LANGUAGE_NAMES[self]


LANGUAGE_NAMES = {
    OutputLanguage.KOREAN: "한국어",
    OutputLanguage.ENGLISH: "English",
    OutputLanguage.JAPANESE: "日本語",
    OutputLanguage.CHINESE: "中文",
}


class GenerationStatus(str, Enum):
    """单个聊天的生成状态"""
    IDLE = "idle"
    IN_FLIGHT = "in_flight"


class GenerationOutcome(str, Enum):
    """一次生成的结束方式"""
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


@dataclass
class ImageInput:
    """随消息发送的图片（base64）"""
    data: str
    mime_type: str = "image/png"

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass
class TokenUsage:
    """Token使用情况"""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def is_zero(self) -> bool:
        return self.total_tokens == 0


@dataclass
class EventMsg:
    """事件消息"""
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def generation_started(cls, request_id: str, target: str) -> "EventMsg":
        return cls("generation_started", {"request_id": request_id, "target": target})

    @classmethod
    def generation_delta(cls, request_id: str, chunk: str) -> "EventMsg":
        return cls("generation_delta", {"request_id": request_id, "chunk": chunk})

    @classmethod
    def character_message(cls, message_id: str, sender_id: str, content: str) -> "EventMsg":
        return cls("character_message", {
            "message_id": message_id,
            "sender_id": sender_id,
            "content": content,
        })

    @classmethod
    def branch_added(cls, message_id: str, branch_index: int, content: str) -> "EventMsg":
        return cls("branch_added", {
            "message_id": message_id,
            "branch_index": branch_index,
            "content": content,
        })

    @classmethod
    def generation_cancelled(cls, request_id: str) -> "EventMsg":
        return cls("generation_cancelled", {"request_id": request_id})

    @classmethod
    def compaction_complete(cls, action: str, tokens_before: int, tokens_after: int) -> "EventMsg":
        return cls("compaction_complete", {
            "action": action,
            "tokens_before": tokens_before,
            "tokens_after": tokens_after,
        })

    @classmethod
    def error(cls, message: str) -> "EventMsg":
        return cls("error", {"message": message})


@dataclass
class Event:
    """事件队列条目"""
    id: str
    msg: EventMsg
    timestamp: datetime = field(default_factory=datetime.now)

    def to_json(self) -> str:
        """转换为JSON字符串"""
        return json.dumps({
            "id": self.id,
            "msg": {
                "type": self.msg.type,
                **self.msg.data
            },
            "timestamp": self.timestamp.isoformat()
        }, default=str, ensure_ascii=False)
