"""聊天会话 - 面向界面层的命令与只读访问器"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from .compaction.base import CompactionContext
from .compaction.manager import CompactionManager
from .compaction.strategies.rolling_summary import RollingSummaryStrategy
from .config import Config
from .errors import ChatEngineError
from .event_handler import EventHandler
from .generation import GenerationCoordinator, GenerationHandle, GenerationTarget
from .memory.chat_store import ChatRepository
from .memory.memory_ledger import MemoryLedger
from .memory.message_store import MessageStore
from .memory.models import Chat, Message, MemorySummary
from .model_client import ModelClient
from .persona import Character, UserProfile
from .prompt import PromptBuilder, translation_prompt
from .protocol import (
    ChatMode, EventMsg, GenerationStatus, ImageInput, OutputLanguage, USER_SENDER_ID,
)
from .utils.logger import logger


@dataclass
class MessageView:
    """解析了当前分支的消息快照"""
    id: str
    sender_id: str
    content: str
    translated_content: Optional[str]
    timestamp: datetime
    branch_index: int
    branch_count: int
    is_error: bool = False
    has_image: bool = False

    @property
    def is_user(self) -> bool:
        return self.sender_id == USER_SENDER_ID

    @classmethod
    def from_message(cls, msg: Message) -> "MessageView":
        return cls(
            id=msg.id,
            sender_id=msg.sender_id,
            content=msg.active_content,
            translated_content=msg.active_translation,
            timestamp=msg.timestamp,
            branch_index=msg.current_branch_index,
            branch_count=len(msg.branches),
            is_error=msg.is_error,
            has_image=bool(msg.image_data),
        )


class ChatSession:
    """一个聊天的会话

    命令在已有生成进行中时立即抛出 AlreadyInFlight，不排队。
    每个命令和每次生成结束后都会保存聊天。
    """

    def __init__(
        self,
        chat: Chat,
        character: Character,
        user: UserProfile,
        config: Config,
        client: ModelClient,
        summarizer: Optional[ModelClient] = None,
        translator: Optional[ModelClient] = None,
        repository: Optional[ChatRepository] = None,
        event_handler: Optional[EventHandler] = None,
        coordinator: Optional[GenerationCoordinator] = None,
    ):
        self.chat = chat
        self.character = character
        self.user = user
        self.config = config
        self.client = client
        self.summarizer = summarizer or client
        self.translator = translator or client
        self.repository = repository
        self.event_handler = event_handler or EventHandler()

        self.prompts = PromptBuilder(character, user, recent_window=config.recent_window)
        self.store = MessageStore(chat)
        self.ledger = MemoryLedger(chat)

        self.compaction_manager = CompactionManager()
        self.compaction_manager.register_strategy(
            "rolling_summary", RollingSummaryStrategy(config.compaction_settings())
        )

        # 协调器可以在多个会话间共享，压缩回调按请求传入
        self.coordinator = coordinator or GenerationCoordinator(
            client,
            event_handler=self.event_handler,
            request_timeout=config.request_timeout,
            streaming=config.streaming,
        )

    @property
    def lock(self):
        return self.coordinator.chat_lock(self.chat.id)

    # ------------------------------------------------------------------
    # 访问器
    # ------------------------------------------------------------------

    def messages(self) -> List[MessageView]:
        return [MessageView.from_message(m) for m in self.chat.messages]

    def memory_summaries(self) -> List[MemorySummary]:
        return self.ledger.chronological()

    def generation_state(self) -> Tuple[GenerationStatus, Optional[str]]:
        return self.coordinator.state(self.chat.id)

    @property
    def language(self) -> OutputLanguage:
        return self.chat.output_language

    # ------------------------------------------------------------------
    # 对话命令
    # ------------------------------------------------------------------

    async def send_user_message(
        self,
        content: str,
        image: Optional[ImageInput] = None,
        translate: bool = False,
    ) -> Optional[GenerationHandle]:
        """发送用户消息并请求角色回复

        translate=True 时先把输入翻译成聊天的输出语言，只追加消息不请求回复。
        """
        content = content.strip()
        if not content and image is None:
            raise ValueError("消息内容不能为空")
        self.coordinator.ensure_idle(self.chat.id)

        if translate:
            translated = await self._translate(content, self.language)
            async with self.lock:
                self.coordinator.ensure_idle(self.chat.id)
                self.store.append(USER_SENDER_ID, translated, translated_content=content)
            self._save()
            return None

        async with self.lock:
            self.coordinator.ensure_idle(self.chat.id)
            user_msg = self.store.append(
                USER_SENDER_ID,
                content,
                image_data=image.data if image else None,
                image_mime_type=image.mime_type if image else None,
            )
            handle = self._start(
                lambda chat: self._reply_prompt(chat, user_msg.id, has_image=image is not None),
                GenerationTarget.append(self.character.id),
                image=image,
            )
        self._save()
        return handle

    async def request_reply(self) -> GenerationHandle:
        """不追加新消息，让角色回复最后一条用户消息"""
        async with self.lock:
            self.coordinator.ensure_idle(self.chat.id)
            last = self.chat.messages[-1] if self.chat.messages else None
            if last is None or not last.is_user:
                raise ChatEngineError("最后一条消息不是用户消息，无法请求回复")
            return self._start(
                lambda chat: self._reply_prompt(chat, last.id, has_image=bool(last.image_data)),
                GenerationTarget.append(self.character.id),
                image=self._image_of(last),
            )

    async def regenerate(self, message_id: str) -> GenerationHandle:
        """为角色消息生成新的分支"""
        async with self.lock:
            self.coordinator.ensure_idle(self.chat.id)
            msg = self.store.get(message_id)
            if msg.is_user:
                raise ChatEngineError("只能重新生成角色消息")
            return self._start(self._branch_prompt_for(message_id), GenerationTarget.branch(message_id))

    async def edit_user_message(self, message_id: str, new_content: str) -> GenerationHandle:
        """编辑用户消息：原文保留，新内容作为分支；随后的角色回复在相同索引生成新版本"""
        new_content = new_content.strip()
        if not new_content:
            raise ValueError("消息内容不能为空")

        async with self.lock:
            self.coordinator.ensure_idle(self.chat.id)
            msg = self.store.get(message_id)
            if not msg.is_user:
                raise ChatEngineError("只能编辑用户消息")

            new_index = self.store.add_branch(message_id, new_content)
            self.store.set_branch_index(message_id, new_index)

            position = self.store.index_of(message_id)
            reply = None
            if position + 1 < len(self.chat.messages) and not self.chat.messages[position + 1].is_user:
                reply = self.chat.messages[position + 1]

            if reply is not None:
                target = GenerationTarget.paired_branch(reply.id, new_index)
            else:
                target = GenerationTarget.append(self.character.id)

            logger.info(f"编辑用户消息 {message_id} → 分支 {new_index}")
            handle = self._start(
                lambda chat: self._reply_prompt(chat, message_id, has_image=bool(msg.image_data)),
                target,
                image=self._image_of(msg),
            )
        self._save()
        return handle

    async def select_branch(self, message_id: str, index: int) -> None:
        """切换分支（用户消息联动其后的角色回复）

        生成进行中不允许切换，否则配对分支会落到与用户消息不同的索引上。
        """
        async with self.lock:
            self.coordinator.ensure_idle(self.chat.id)
            self.store.select_branch(message_id, index)
        self._save()

    async def request_first_message(self) -> GenerationHandle:
        async with self.lock:
            self.coordinator.ensure_idle(self.chat.id)
            return self._start(
                lambda chat: self.prompts.first_message_prompt(
                    chat.output_language, MemoryLedger(chat).chronological()
                ),
                GenerationTarget.append(self.character.id),
            )

    async def autopilot_step(self) -> GenerationHandle:
        """自动进行模式：根据场景生成下一句（说话者由模型决定）"""
        if self.chat.mode != ChatMode.AUTOPILOT:
            raise ChatEngineError("当前不是自动进行模式")
        scenario = (self.chat.autopilot_scenario or "").strip()
        if not scenario:
            raise ChatEngineError("请先设置自动进行场景")

        async with self.lock:
            self.coordinator.ensure_idle(self.chat.id)
            return self._start(
                lambda chat: self.prompts.autopilot_prompt(
                    chat.messages, scenario, chat.output_language, MemoryLedger(chat).chronological()
                ),
                GenerationTarget.autopilot(self._parse_autopilot),
            )

    async def translate_message(self, message_id: str, retranslate: bool = False) -> str:
        """把当前分支翻译成界面语言，结果保存到消息或分支上"""
        msg = self.store.get(message_id)
        branch_index = msg.current_branch_index
        existing = msg.active_translation
        if existing and not retranslate:
            return existing

        text = await self._translate(msg.active_content, OutputLanguage(self.config.ui_language))
        async with self.lock:
            self.store.update_branch_translation(message_id, branch_index, text)
        self._save()
        return text

    def cancel_generation(self) -> bool:
        return self.coordinator.cancel_chat(self.chat.id)

    # ------------------------------------------------------------------
    # 设置
    # ------------------------------------------------------------------

    async def set_mode(self, mode: ChatMode) -> None:
        async with self.lock:
            self.chat.mode = ChatMode(mode)
            self.chat.touch()
        self._save()

    async def set_autopilot_scenario(self, scenario: Optional[str]) -> None:
        async with self.lock:
            self.chat.autopilot_scenario = scenario.strip() if scenario else None
            self.chat.touch()
        self._save()

    async def set_output_language(self, language: OutputLanguage) -> None:
        async with self.lock:
            self.chat.output_language = OutputLanguage(language)
            self.chat.touch()
        self._save()

    # ------------------------------------------------------------------
    # 内部
    # ------------------------------------------------------------------

    def _start(self, prompt_builder, target: GenerationTarget, image: Optional[ImageInput] = None) -> GenerationHandle:
        handle = self.coordinator.generate(
            self.chat, prompt_builder, target, image=image, compactor=self._compact,
        )
        handle.task.add_done_callback(lambda _: self._save())
        return handle

    def _reply_prompt(self, chat: Chat, user_message_id: str, has_image: bool = False) -> str:
        """用户消息之前的历史 + 该用户消息（当前分支内容）"""
        store = MessageStore(chat)
        position = store.index_of(user_message_id)
        user_msg = chat.messages[position]
        return self.prompts.character_prompt(
            chat.messages[:position],
            user_msg.active_content,
            chat.output_language,
            memories=MemoryLedger(chat).chronological(),
            has_image=has_image,
        )

    def _branch_prompt_for(self, message_id: str):
        def build(chat: Chat) -> str:
            store = MessageStore(chat)
            position = store.index_of(message_id)
            msg = chat.messages[position]
            scenario = chat.autopilot_scenario if chat.mode == ChatMode.AUTOPILOT else None
            return self.prompts.branch_prompt(
                chat.messages[:position],
                msg.all_versions(),
                chat.output_language,
                memories=MemoryLedger(chat).chronological(),
                scenario=scenario,
            )
        return build

    def _parse_autopilot(self, text: str) -> Tuple[str, str]:
        is_user, content = self.prompts.parse_autopilot_response(text)
        return (USER_SENDER_ID if is_user else self.character.id), content

    @staticmethod
    def _image_of(msg: Message) -> Optional[ImageInput]:
        if not msg.image_data:
            return None
        return ImageInput(data=msg.image_data, mime_type=msg.image_mime_type or "image/png")

    async def _translate(self, text: str, language: OutputLanguage) -> str:
        response = await self.translator.call(translation_prompt(text, language))
        translated = response.content.strip()
        logger.debug(f"翻译完成 → {language.value}: {len(translated)} 字符")
        return translated

    async def _compact(self, chat: Chat, request_id: str) -> None:
        """每轮 AI 回复完成后执行一次，调用方已持有聊天锁

        compaction_complete 事件使用触发它的请求 id，便于界面对应到这一轮。
        """
        context = CompactionContext(
            chat=chat,
            summarizer=self.summarizer,
            character_name=self.character.name,
            user_name=self.user.name,
        )
        result = await self.compaction_manager.check_and_compact(context)
        if result is None:
            return

        await self.event_handler.emit(request_id, EventMsg.compaction_complete(
            result.action.value, result.tokens_before, result.tokens_after,
        ))
        if result.acted:
            self._save()

    def _save(self) -> None:
        if self.repository is not None:
            self.repository.save(self.chat)
