"""SimuTalk - 角色扮演聊天的会话引擎"""

__version__ = "0.1.0"

from .config import Config
from .errors import (
    ChatEngineError,
    AlreadyInFlight,
    NotFound,
    OutOfRange,
    ProviderError,
    GenerationTimeout,
    CompactionFailed,
)
from .generation import GenerationCoordinator, GenerationHandle, GenerationResult, GenerationTarget
from .model_client import ModelClient, OpenAIModelClient, ChatResponse
from .persona import Character, UserProfile
from .protocol import ChatMode, OutputLanguage, GenerationStatus, GenerationOutcome, ImageInput
from .session import ChatSession, MessageView

__all__ = [
    "__version__",
    "Config",
    "ChatEngineError",
    "AlreadyInFlight",
    "NotFound",
    "OutOfRange",
    "ProviderError",
    "GenerationTimeout",
    "CompactionFailed",
    "GenerationCoordinator",
    "GenerationHandle",
    "GenerationResult",
    "GenerationTarget",
    "ModelClient",
    "OpenAIModelClient",
    "ChatResponse",
    "Character",
    "UserProfile",
    "ChatMode",
    "OutputLanguage",
    "GenerationStatus",
    "GenerationOutcome",
    "ImageInput",
    "ChatSession",
    "MessageView",
]
