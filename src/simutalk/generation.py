"""生成协调器 - 每个聊天至多一个进行中的模型调用

状态机（按聊天）：
    Idle -> InFlight(request_id) -> Completed | Failed | Cancelled | TimedOut -> Idle

- 同一聊天进行中再次请求时直接抛出 AlreadyInFlight，不排队
- 用户取消：静默结束，不追加任何消息
- 超时：与取消走相同的中止路径，但作为错误气泡展示
- 成功追加后执行一次压缩（受同一超时限制），然后才回到 Idle
"""

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple

from .errors import AlreadyInFlight, NotFound, OutOfRange, ProviderError, GenerationTimeout
from .event_handler import EventHandler
from .memory.message_store import MessageStore
from .memory.models import Chat
from .model_client import ModelClient
from .protocol import EventMsg, GenerationOutcome, GenerationStatus, ImageInput
from .utils.logger import logger


ERROR_PREFIX = "⚠️ 오류: "

PromptBuilderFn = Callable[[Chat], str]
# (chat, request_id)
Compactor = Callable[[Chat, str], Awaitable[None]]


class TargetKind(str, Enum):
    APPEND = "append"
    BRANCH = "branch"
    PAIRED_BRANCH = "paired_branch"
    AUTOPILOT = "autopilot"


@dataclass
class GenerationTarget:
    """生成结果的落点"""
    kind: TargetKind
    sender_id: Optional[str] = None
    message_id: Optional[str] = None
    branch_index: Optional[int] = None
    # 自动进行模式：把 `Name: line` 解析为 (sender_id, content)
    parse_response: Optional[Callable[[str], Tuple[str, str]]] = None

    @classmethod
    def append(cls, sender_id: str) -> "GenerationTarget":
        return cls(TargetKind.APPEND, sender_id=sender_id)

    @classmethod
    def branch(cls, message_id: str) -> "GenerationTarget":
        """重新生成：追加分支并选中"""
        return cls(TargetKind.BRANCH, message_id=message_id)

    @classmethod
    def paired_branch(cls, message_id: str, branch_index: int) -> "GenerationTarget":
        """编辑后的回复：放到与用户消息相同的分支索引上"""
        return cls(TargetKind.PAIRED_BRANCH, message_id=message_id, branch_index=branch_index)

    @classmethod
    def autopilot(cls, parse_response: Callable[[str], Tuple[str, str]]) -> "GenerationTarget":
        return cls(TargetKind.AUTOPILOT, parse_response=parse_response)

    @property
    def is_conversational(self) -> bool:
        return self.kind in (TargetKind.APPEND, TargetKind.AUTOPILOT)


@dataclass
class GenerationResult:
    """一次生成的最终结果"""
    request_id: str
    outcome: GenerationOutcome
    message_id: Optional[str] = None
    branch_index: Optional[int] = None
    content: str = ""
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.outcome == GenerationOutcome.COMPLETED


class GenerationHandle:
    """进行中请求的句柄：可取消、可等待"""

    def __init__(self, request_id: str, chat_id: str, target: GenerationTarget):
        self.request_id = request_id
        self.chat_id = chat_id
        self.target = target
        self.task: Optional[asyncio.Task] = None
        self.cancelled_by_user = False
        self.compactor: Optional[Compactor] = None
        # 模型调用返回后不再响应取消，结果已经确定
        self._abortable = True

    def cancel(self) -> bool:
        """尽力取消；重复调用无副作用。返回是否真正发出了取消"""
        if self.task is None or self.task.done() or not self._abortable or self.cancelled_by_user:
            return False
        self.cancelled_by_user = True
        self.task.cancel()
        return True

    def done(self) -> bool:
        return self.task is not None and self.task.done()

    async def wait(self) -> GenerationResult:
        """等待结果；等待方被取消不会连带取消生成任务"""
        try:
            return await asyncio.shield(self.task)
        except asyncio.CancelledError:
            # 任务在开始执行前就被取消
            if self.task.cancelled():
                return GenerationResult(self.request_id, GenerationOutcome.CANCELLED)
            raise

    def __await__(self):
        return self.wait().__await__()


class GenerationCoordinator:
    """按聊天协调模型调用

    进行中的句柄存放在以 chat_id 为键的映射中，不同聊天互不影响。
    所有对聊天的修改（用户或协调器发起）都经过同一把按聊天的锁。
    """

    def __init__(
        self,
        client: ModelClient,
        event_handler: Optional[EventHandler] = None,
        compactor: Optional[Compactor] = None,
        request_timeout: float = 300.0,
        streaming: bool = True,
    ):
        self.client = client
        self.event_handler = event_handler
        self.compactor = compactor
        self.request_timeout = request_timeout
        self.streaming = streaming
        self._handles: Dict[str, GenerationHandle] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def chat_lock(self, chat_id: str) -> asyncio.Lock:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[chat_id] = lock
        return lock

    def is_in_flight(self, chat_id: str) -> bool:
        return chat_id in self._handles

    def state(self, chat_id: str) -> Tuple[GenerationStatus, Optional[str]]:
        handle = self._handles.get(chat_id)
        if handle is None:
            return GenerationStatus.IDLE, None
        return GenerationStatus.IN_FLIGHT, handle.request_id

    def current(self, chat_id: str) -> Optional[GenerationHandle]:
        return self._handles.get(chat_id)

    def ensure_idle(self, chat_id: str) -> None:
        handle = self._handles.get(chat_id)
        if handle is not None:
            raise AlreadyInFlight(chat_id, handle.request_id)

    def generate(
        self,
        chat: Chat,
        prompt_builder: PromptBuilderFn,
        target: GenerationTarget,
        image: Optional[ImageInput] = None,
        stream: Optional[bool] = None,
        compactor: Optional[Compactor] = None,
    ) -> GenerationHandle:
        """发起生成，立即返回句柄；提示词在此刻根据聊天状态构建

        compactor 为空时使用协调器默认的压缩回调
        """
        self.ensure_idle(chat.id)

        prompt = prompt_builder(chat)
        handle = GenerationHandle(str(uuid.uuid4()), chat.id, target)
        handle.compactor = compactor or self.compactor
        use_stream = self.streaming if stream is None else stream

        self._handles[chat.id] = handle
        handle.task = asyncio.create_task(self._run(chat, handle, prompt, image, use_stream))
        handle.task.add_done_callback(lambda _: self._release(chat.id, handle))

        logger.info(f"开始生成 [{target.kind.value}] chat={chat.id} request={handle.request_id}")
        self._emit(handle.request_id, EventMsg.generation_started(handle.request_id, target.kind.value))
        return handle

    def cancel(self, handle: GenerationHandle) -> bool:
        cancelled = handle.cancel()
        if cancelled:
            logger.info(f"取消生成 request={handle.request_id}")
        return cancelled

    def cancel_chat(self, chat_id: str) -> bool:
        handle = self._handles.get(chat_id)
        if handle is None:
            return False
        return self.cancel(handle)

    def cancel_all(self) -> int:
        return sum(1 for handle in list(self._handles.values()) if self.cancel(handle))

    async def _run(
        self,
        chat: Chat,
        handle: GenerationHandle,
        prompt: str,
        image: Optional[ImageInput],
        use_stream: bool,
    ) -> GenerationResult:
        request_id = handle.request_id
        target = handle.target
        try:
            try:
                text = await asyncio.wait_for(
                    self._invoke(request_id, prompt, image, use_stream),
                    timeout=self.request_timeout,
                )
            except asyncio.CancelledError:
                handle._abortable = False
                logger.info(f"生成已取消 request={request_id}")
                self._emit(request_id, EventMsg.generation_cancelled(request_id))
                return GenerationResult(request_id, GenerationOutcome.CANCELLED)
            except asyncio.TimeoutError:
                handle._abortable = False
                error = GenerationTimeout(f"模型响应超时（{self.request_timeout:g}秒）")
                logger.warning(f"生成超时 request={request_id}")
                return await self._fail(chat, handle, error, GenerationOutcome.TIMED_OUT)
            except ProviderError as e:
                handle._abortable = False
                logger.error(f"模型调用失败 request={request_id}: {e}")
                return await self._fail(chat, handle, e, GenerationOutcome.FAILED)

            handle._abortable = False

            if not text.strip():
                # 空结果且无错误：视为取消，不追加任何内容
                logger.info(f"模型返回空结果，按取消处理 request={request_id}")
                self._emit(request_id, EventMsg.generation_cancelled(request_id))
                return GenerationResult(request_id, GenerationOutcome.CANCELLED)

            async with self.chat_lock(chat.id):
                try:
                    result = self._apply(chat, handle, text.strip())
                except (NotFound, OutOfRange) as e:
                    logger.warning(f"生成结果无法落地 request={request_id}: {e}")
                    self._emit(request_id, EventMsg.error(str(e)))
                    return GenerationResult(request_id, GenerationOutcome.FAILED, error=str(e))

                await self._compact(chat, handle)

            logger.info(f"生成完成 [{target.kind.value}] request={request_id}: {len(result.content)} 字符")
            return result
        finally:
            self._release(chat.id, handle)

    def _release(self, chat_id: str, handle: GenerationHandle) -> None:
        if self._handles.get(chat_id) is handle:
            del self._handles[chat_id]

    async def _invoke(
        self,
        request_id: str,
        prompt: str,
        image: Optional[ImageInput],
        use_stream: bool,
    ) -> str:
        if not use_stream:
            response = await self.client.call(prompt, image)
            return response.content or ""

        # 只持久化最终文本，中间块只作为事件转发
        chunks = []
        async for chunk in self.client.stream(prompt, image):
            chunks.append(chunk)
            self._emit(request_id, EventMsg.generation_delta(request_id, chunk))
        return "".join(chunks)

    def _apply(self, chat: Chat, handle: GenerationHandle, text: str) -> GenerationResult:
        store = MessageStore(chat)
        target = handle.target
        request_id = handle.request_id

        if target.kind in (TargetKind.APPEND, TargetKind.AUTOPILOT):
            sender_id, content = target.sender_id, text
            if target.kind == TargetKind.AUTOPILOT:
                sender_id, content = target.parse_response(text)
            msg = store.append(sender_id, content)
            self._emit(request_id, EventMsg.character_message(msg.id, msg.sender_id, content))
            return GenerationResult(request_id, GenerationOutcome.COMPLETED, message_id=msg.id, content=content)

        if target.kind == TargetKind.BRANCH:
            index = store.add_branch(target.message_id, text)
            store.set_branch_index(target.message_id, index)
        else:
            index = store.branch_to(target.message_id, target.branch_index, text)

        self._emit(request_id, EventMsg.branch_added(target.message_id, index, text))
        return GenerationResult(
            request_id, GenerationOutcome.COMPLETED,
            message_id=target.message_id, branch_index=index, content=text,
        )

    async def _fail(
        self,
        chat: Chat,
        handle: GenerationHandle,
        error: ProviderError,
        outcome: GenerationOutcome,
    ) -> GenerationResult:
        """对话回合追加错误气泡；分支目标只发送错误事件"""
        request_id = handle.request_id
        target = handle.target
        message_id = None

        if target.is_conversational:
            sender_id = target.sender_id or chat.character_id
            async with self.chat_lock(chat.id):
                msg = MessageStore(chat).append(sender_id, f"{ERROR_PREFIX}{error}", is_error=True)
            message_id = msg.id
            self._emit(request_id, EventMsg.character_message(msg.id, msg.sender_id, msg.content))

        self._emit(request_id, EventMsg.error(str(error)))
        return GenerationResult(request_id, outcome, message_id=message_id, error=str(error))

    async def _compact(self, chat: Chat, handle: GenerationHandle) -> None:
        """每次成功落地后执行一次压缩；失败或超时只记录日志，下一轮重试

        压缩期间持有聊天锁且请求仍处于进行中，因此与模型调用共用同一个超时上限。
        """
        if handle.compactor is None:
            return
        try:
            await asyncio.wait_for(handle.compactor(chat, handle.request_id), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"压缩超时（{self.request_timeout:g}秒），下一轮重试 request={handle.request_id}")
        except Exception as e:
            logger.error(f"压缩执行出错，已忽略: {e}", exc_info=True)

    def _emit(self, request_id: str, msg: EventMsg) -> None:
        if self.event_handler is not None:
            self.event_handler.emit_nowait(request_id, msg)
