"""提示词构建

所有提示词都包含：角色/用户人设、记忆摘要、最近消息窗口、明确的输出语言指令。
"""

import re
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from .memory.models import Message, MemorySummary
from .persona import Character, UserProfile
from .protocol import OutputLanguage


IMAGE_NOTICE = (
    "[IMPORTANT: The user has sent an image along with this message. You MUST look at and "
    "acknowledge the image in your response. Describe what you see in the image or react to it "
    "naturally as the character would.]"
)


def language_directive(language: OutputLanguage) -> str:
    return (
        f"Write your reply in {language.display_name} ({language.value}) only, "
        f"regardless of the language used in the conversation above."
    )


class PromptBuilder:
    """绑定一对人设的提示词构建器"""

    def __init__(self, character: Character, user: UserProfile, recent_window: int = 10):
        self.character = character
        self.user = user
        self.recent_window = recent_window

    def _speaker(self, msg: Message) -> str:
        return self.user.name if msg.is_user else self.character.name

    def format_history(self, messages: Sequence[Message]) -> str:
        """最近 recent_window 条消息，使用当前选中分支的内容；错误提示不进入上下文"""
        visible = [m for m in messages if not m.is_error]
        lines = []
        for msg in visible[-self.recent_window:]:
            content = msg.active_content
            if msg.image_data:
                content = f"{content} [image attached]"
            lines.append(f"{self._speaker(msg)}: {content}")
        return "\n".join(lines)

    @staticmethod
    def format_memories(memories: Sequence[MemorySummary]) -> str:
        if not memories:
            return ""
        ordered = sorted(memories, key=lambda s: (s.start_time, s.created_at))
        blocks = []
        for i, memory in enumerate(ordered, 1):
            span = f"{memory.start_time:%Y-%m-%d %H:%M} ~ {memory.end_time:%Y-%m-%d %H:%M}"
            blocks.append(f"### Memory {i} ({span})\n{memory.content}")
        return "\n\n".join(blocks)

    def _context_sections(self, memories: Sequence[MemorySummary], include_user: bool = True) -> List[str]:
        sections = [f"[Character]\n{self.character.describe()}"]
        if include_user:
            sections.append(f"[User]\n{self.user.describe()}")
        memory_text = self.format_memories(memories)
        if memory_text:
            sections.append(f"[Long-term memory: earlier parts of this conversation]\n{memory_text}")
        return sections

    def character_prompt(
        self,
        history: Sequence[Message],
        user_message: str,
        language: OutputLanguage,
        memories: Sequence[MemorySummary] = (),
        current_time: Optional[datetime] = None,
        has_image: bool = False,
    ) -> str:
        """直接模式：角色回复用户的新消息"""
        now = current_time or datetime.now()
        sections = [
            "You are an AI playing a character in a role-play messenger chat.",
            *self._context_sections(memories),
            f"[Current time]\n{now:%Y-%m-%d %H:%M}",
            f"[Previous conversation]\n{self.format_history(history)}",
            f"[New message from {self.user.name}]\n{user_message}",
            (
                f"Reply naturally as {self.character.name}, reflecting the character's personality and "
                f"speech style. Output only the reply, without explanations.\n{language_directive(language)}"
            ),
        ]
        prompt = "\n\n".join(sections)
        if has_image:
            prompt = f"{prompt}\n\n{IMAGE_NOTICE}"
        return prompt

    def branch_prompt(
        self,
        history: Sequence[Message],
        existing_versions: Sequence[str],
        language: OutputLanguage,
        memories: Sequence[MemorySummary] = (),
        scenario: Optional[str] = None,
    ) -> str:
        """重新生成：同一位置已尝试过的版本都要列出，要求给出不同的回复"""
        sections = [
            "You are an AI playing a character in a role-play messenger chat.\n"
            "You must write a different version of a reply for the same situation.",
        ]
        if scenario:
            sections.append(f"[Scenario]\n{scenario}")
        sections.extend(self._context_sections(memories))
        sections.append(f"[Previous conversation]\n{self.format_history(history)}")
        if existing_versions:
            tried = "\n".join(f"Version {i}: {text}" for i, text in enumerate(existing_versions, 1))
            sections.append(f"[Already generated versions - produce something different]\n{tried}")
        sections.append(
            f"Continue the conversation as {self.character.name} with a new reply whose nuance or content "
            f"differs from the existing versions. Output only the line.\n{language_directive(language)}"
        )
        return "\n\n".join(sections)

    def first_message_prompt(
        self,
        language: OutputLanguage,
        memories: Sequence[MemorySummary] = (),
        current_time: Optional[datetime] = None,
    ) -> str:
        now = current_time or datetime.now()
        sections = [
            "You are an AI playing a character in a role-play messenger chat.",
            *self._context_sections(memories),
            f"[Current time]\n{now:%Y-%m-%d %H:%M}",
            (
                f"{self.character.name} is sending the first message of this conversation to {self.user.name}. "
                f"Write that opening message in character. Output only the message.\n{language_directive(language)}"
            ),
        ]
        return "\n\n".join(sections)

    def autopilot_prompt(
        self,
        history: Sequence[Message],
        scenario: str,
        language: OutputLanguage,
        memories: Sequence[MemorySummary] = (),
        current_time: Optional[datetime] = None,
    ) -> str:
        """自动进行模式：由模型决定下一位说话者"""
        now = current_time or datetime.now()
        sections = [
            "You are an AI that automatically advances a role-play chat between two people.",
            f"[Scenario]\n{scenario}",
            *self._context_sections(memories),
            f"[Current time]\n{now:%Y-%m-%d %H:%M}",
            f"[Previous conversation]\n{self.format_history(history)}",
            (
                f"Write the next single line of the conversation, spoken by either {self.user.name} or "
                f"{self.character.name}, whoever would naturally speak next.\n"
                f"Use exactly the format `Name: line` and output nothing else.\n{language_directive(language)}"
            ),
        ]
        return "\n\n".join(sections)

    def parse_autopilot_response(self, text: str) -> Tuple[bool, str]:
        """解析 `Name: line`，返回 (是否为用户发言, 内容)；无法识别时视为角色发言"""
        stripped = text.strip()
        match = re.match(r"^\s*\**\s*([^:：\n]{1,40}?)\s*\**\s*[:：]\s*(.+)$", stripped, re.DOTALL)
        if not match:
            return False, stripped

        speaker, content = match.group(1).strip(), match.group(2).strip()
        if speaker == self.user.name:
            return True, content
        if speaker == self.character.name:
            return False, content
        return False, stripped


def translation_prompt(text: str, target_language: OutputLanguage) -> str:
    return (
        f"Translate the following text into {target_language.display_name}. "
        f"Output only the translation, without any explanation.\n\nText: {text}"
    )
