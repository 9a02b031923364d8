"""配置管理模块"""
import json
from typing import Dict, List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings


DEFAULT_MODEL_ALIASES = {
    "gemini-2.5-flash": "gemini-2.0-flash-001",
    "gemini-2.0-flash": "gemini-2.0-flash-001",
    "gemini-2.5-flash-lite": "gemini-2.0-flash-001",
}


class Settings(BaseSettings):
    """应用配置"""

    # 后端 chat completions 配置
    openai_api_base: str = Field(
        default="https://api.githubcopilot.com",
        alias="OPENAI_API_BASE",
        description="Chat completions 后端基础URL"
    )
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")

    # API Keys（JSON字符串）
    api_keys_json: str = Field(
        default='["sk-test-key"]',
        alias="API_KEYS"
    )

    # 模型别名（JSON字符串），覆盖默认映射表
    model_aliases_json: str = Field(default="", alias="MODEL_ALIASES")

    default_max_tokens: int = Field(default=4096, alias="DEFAULT_MAX_TOKENS")
    request_timeout: float = Field(default=120.0, alias="REQUEST_TIMEOUT")

    # 速率限制（秒），为空表示不限制
    rate_limit_seconds: Optional[float] = Field(default=None, alias="RATE_LIMIT_SECONDS")
    rate_limit_wait: bool = Field(default=False, alias="RATE_LIMIT_WAIT")

    vision_enabled_header: bool = Field(default=True)
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # 服务配置
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        populate_by_name = True

    @property
    def api_keys(self) -> List[str]:
        """解析API密钥"""
        return json.loads(self.api_keys_json)

    @property
    def model_aliases(self) -> Dict[str, str]:
        """解析模型别名表"""
        aliases = dict(DEFAULT_MODEL_ALIASES)
        if self.model_aliases_json:
            aliases.update(json.loads(self.model_aliases_json))
        return aliases

    def resolve_model(self, model: str) -> str:
        """将客户端模型名映射为后端模型名，未知名称原样返回"""
        return self.model_aliases.get(model, model)

    def validate_api_key(self, api_key: str) -> bool:
        """验证API密钥"""
        return api_key in self.api_keys


# 全局配置实例
settings = Settings()
