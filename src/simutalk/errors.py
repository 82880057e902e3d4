"""会话引擎异常体系"""

from typing import Optional


class ChatEngineError(Exception):
    """所有会话引擎异常的基类"""


class AlreadyInFlight(ChatEngineError):
    """同一聊天已有生成请求在进行中"""

    def __init__(self, chat_id: str, request_id: Optional[str] = None):
        self.chat_id = chat_id
        self.request_id = request_id
        super().__init__(f"聊天 {chat_id} 已有进行中的生成请求: {request_id}")


class NotFound(ChatEngineError):
    """引用的消息或分支不存在（调用方与状态不同步）"""


class OutOfRange(ChatEngineError):
    """分支索引越界"""


class ProviderError(ChatEngineError):
    """模型调用失败：非成功状态码或响应格式错误"""


class GenerationTimeout(ProviderError):
    """模型调用超时，与手动取消走相同的中止路径，但需要向用户展示"""


class CompactionFailed(ChatEngineError):
    """摘要调用失败，下一轮重试，不影响对话"""
