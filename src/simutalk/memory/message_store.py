"""消息存储：聊天消息列表的增删改查与分支语义"""

from typing import Iterable, List, Optional

from .models import Chat, Message, MessageBranch
from ..errors import NotFound, OutOfRange
from ..utils.logger import logger


class MessageStore:
    """Chat.messages 之上的视图（纯存储层）

    核心职责：
    - 追加消息、分支；切换分支索引
    - 用户消息与其后的角色回复之间的分支联动
    - 压缩时按 id 删除消息

    设计原则：
    - 只做存储，不做策略决策；是否创建分支由调用方决定
    - 不持有锁，串行化由 GenerationCoordinator 的聊天锁保证
    """

    def __init__(self, chat: Chat):
        self.chat = chat

    @property
    def messages(self) -> List[Message]:
        return self.chat.messages

    def __len__(self) -> int:
        return len(self.chat.messages)

    def get(self, message_id: str) -> Message:
        for msg in self.chat.messages:
            if msg.id == message_id:
                return msg
        raise NotFound(f"消息不存在: {message_id}")

    def find(self, message_id: str) -> Optional[Message]:
        try:
            return self.get(message_id)
        except NotFound:
            return None

    def index_of(self, message_id: str) -> int:
        for i, msg in enumerate(self.chat.messages):
            if msg.id == message_id:
                return i
        raise NotFound(f"消息不存在: {message_id}")

    def append(self, sender_id: str, content: str, **extra) -> Message:
        """追加新消息（索引为 0，无分支）"""
        msg = Message(
            chat_id=self.chat.id,
            sender_id=sender_id,
            content=content,
            translated_content=extra.get("translated_content"),
            image_data=extra.get("image_data"),
            image_mime_type=extra.get("image_mime_type"),
            is_error=extra.get("is_error", False),
        )
        self.chat.messages.append(msg)
        self.chat.touch()
        return msg

    def add_branch(self, message_id: str, content: str, translated_content: Optional[str] = None) -> int:
        """追加分支，返回选中该分支的索引；不改变当前索引"""
        msg = self.get(message_id)
        msg.branches.append(MessageBranch(content=content, translated_content=translated_content))
        self.chat.touch()
        return len(msg.branches)

    def set_branch_index(self, message_id: str, index: int) -> None:
        msg = self.get(message_id)
        if index < 0 or index > len(msg.branches):
            raise OutOfRange(f"分支索引 {index} 超出范围 [0, {len(msg.branches)}]: {message_id}")
        msg.current_branch_index = index
        self.chat.touch()

    def select_branch(self, message_id: str, index: int) -> None:
        """切换分支；用户消息切换时，紧随其后的角色回复跟随到 min(index, 分支数)"""
        self.set_branch_index(message_id, index)

        position = self.index_of(message_id)
        msg = self.chat.messages[position]
        if not msg.is_user or position + 1 >= len(self.chat.messages):
            return

        reply = self.chat.messages[position + 1]
        if reply.is_user:
            return
        reply.current_branch_index = min(index, len(reply.branches))

    def branch_to(self, message_id: str, index: int, content: str) -> int:
        """把新内容放到指定分支索引上并选中它

        分支数不足 index-1 时，先用当前激活内容补齐占位分支，保持索引连续。
        index 小于等于现有分支数时直接追加到末尾。
        """
        if index < 1:
            raise OutOfRange(f"分支索引必须 >= 1: {index}")
        msg = self.get(message_id)

        fillers = 0
        while len(msg.branches) < index - 1:
            msg.branches.append(MessageBranch(content=msg.active_content))
            fillers += 1
        if fillers:
            logger.debug(f"补齐 {fillers} 个占位分支: {message_id}")

        new_index = self.add_branch(message_id, content)
        self.set_branch_index(message_id, new_index)
        return new_index

    def remove(self, message_ids: Iterable[str]) -> List[Message]:
        """按 id 删除消息（仅供压缩使用），返回被删除的消息"""
        ids = set(message_ids)
        removed = [m for m in self.chat.messages if m.id in ids]
        if removed:
            self.chat.messages = [m for m in self.chat.messages if m.id not in ids]
            self.chat.touch()
        return removed

    def update(self, message_id: str, **fields) -> Message:
        """原地修改 content / translated_content，不创建分支"""
        allowed = {"content", "translated_content"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"不支持修改的字段: {', '.join(sorted(unknown))}")

        msg = self.get(message_id)
        for key, value in fields.items():
            setattr(msg, key, value)
        self.chat.touch()
        return msg

    def update_branch_translation(self, message_id: str, branch_index: int, text: Optional[str]) -> None:
        """为分支设置翻译；branch_index 与 current_branch_index 同义（0 表示原始内容）"""
        msg = self.get(message_id)
        if branch_index == 0:
            msg.translated_content = text
        elif 1 <= branch_index <= len(msg.branches):
            msg.branches[branch_index - 1].translated_content = text
        else:
            raise OutOfRange(f"分支索引 {branch_index} 超出范围 [0, {len(msg.branches)}]: {message_id}")
        self.chat.touch()

    def last_character_message(self) -> Optional[Message]:
        for msg in reversed(self.chat.messages):
            if not msg.is_user:
                return msg
        return None
