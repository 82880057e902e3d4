"""SimuTalk 配置管理 - 基于 pydantic-settings

配置优先级（从高到低）：
1. 代码传入参数
2. .env 文件
3. 系统环境变量
4. 默认值
"""

import os
from pathlib import Path
from typing import Optional, Dict, Any, Literal, Tuple
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, PydanticBaseSettingsSource


OutputLanguageName = Literal["korean", "english", "japanese", "chinese"]


class Config(BaseSettings):
    """配置类 - 支持.env文件和环境变量"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SIMUTALK_",
        case_sensitive=False,
        extra="ignore",
    )

    # 模型配置
    model: str = Field(default="gpt-4o-mini", description="对话模型")
    summary_model: Optional[str] = Field(default=None, description="摘要模型（为空时使用对话模型）")
    translation_model: Optional[str] = Field(default=None, description="翻译模型（为空时使用对话模型）")
    api_key: Optional[str] = Field(default=None, validate_default=True, description="API密钥")
    api_base: Optional[str] = Field(default=None, description="API基础URL")

    # 模型参数
    max_tokens: int = Field(default=2048, ge=1, le=128000, description="最大输出token数")
    temperature: float = Field(default=0.9, ge=0.0, le=2.0, description="采样温度")

    # 生成控制
    streaming: bool = Field(default=True, description="使用流式响应")
    request_timeout: float = Field(default=300.0, gt=0, description="单次请求超时(秒)")
    recent_window: int = Field(default=10, ge=1, le=200, description="提示词中包含的最近消息数")

    # 记忆压缩
    token_threshold: int = Field(default=40000, ge=10, description="上下文token预算")
    memory_max_ratio: float = Field(default=0.3, gt=0.0, le=1.0, description="记忆摘要占预算的最大比例")
    message_set_count: int = Field(default=4, ge=1, le=50, description="每次摘要的用户+角色消息对数")

    # 语言
    output_language: OutputLanguageName = Field(default="korean", description="新聊天的默认输出语言")
    ui_language: OutputLanguageName = Field(default="korean", description="消息翻译目标语言")

    # 存储
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".simutalk" / "chats", description="聊天存储目录")

    # 日志
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="WARNING")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置源优先级：代码传入 > .env文件 > 环境变量 > 默认值"""
        return init_settings, dotenv_settings, env_settings, file_secret_settings

    @field_validator("api_key", mode="before")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        """加载 API Key，支持 OPENAI_API_KEY"""
        if v:
            return v
        return os.getenv("OPENAI_API_KEY")

    @field_validator("data_dir", mode="before")
    @classmethod
    def validate_data_dir(cls, v) -> Path:
        """展开 ~ 并转换为绝对路径"""
        path = Path(v) if isinstance(v, str) else v
        return path.expanduser().resolve()

    @model_validator(mode="after")
    def validate_required_fields(self):
        """验证必需字段"""
        if not self.api_key:
            raise ValueError("API key is required. Set OPENAI_API_KEY or provide api_key")
        if not self.model:
            raise ValueError("Model name is required")
        return self

    @property
    def memory_max_tokens(self) -> int:
        """记忆摘要的token上限"""
        return int(self.token_threshold * self.memory_max_ratio)

    @property
    def effective_summary_model(self) -> str:
        return self.summary_model or self.model

    @property
    def effective_translation_model(self) -> str:
        return self.translation_model or self.model

    def compaction_settings(self) -> Dict[str, Any]:
        """压缩策略参数"""
        return {
            "token_threshold": self.token_threshold,
            "memory_max_ratio": self.memory_max_ratio,
            "message_set_count": self.message_set_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """从字典创建配置"""
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（隐藏敏感信息）"""
        data = self.model_dump()
        data["data_dir"] = str(data["data_dir"])
        if data.get("api_key"):
            data["api_key"] = "***" + data["api_key"][-4:] if len(data["api_key"]) > 4 else "***"
        return data
