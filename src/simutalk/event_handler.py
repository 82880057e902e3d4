"""统一事件处理器 - 会话引擎向界面层推送状态"""

import asyncio
from typing import Optional
from .protocol import Event, EventMsg


class EventHandler:
    """统一事件处理器 - 负责所有事件的发送和管理"""

    def __init__(self):
        self.event_queue: "asyncio.Queue[Event]" = asyncio.Queue()

    async def emit(self, event_id: str, event_msg: EventMsg):
        """发送事件 - 统一的事件发送接口"""
        await self.event_queue.put(Event(id=event_id, msg=event_msg))

    def emit_nowait(self, event_id: str, event_msg: EventMsg):
        """同步上下文中发送事件（队列无上限，不会阻塞）"""
        self.event_queue.put_nowait(Event(id=event_id, msg=event_msg))

    async def get_next_event(self, timeout: float = 0.1) -> Optional[Event]:
        """获取下一个事件，超时返回 None"""
        try:
            return await asyncio.wait_for(self.event_queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> list:
        """取出当前队列中所有事件"""
        events = []
        while not self.event_queue.empty():
            events.append(self.event_queue.get_nowait())
        return events
