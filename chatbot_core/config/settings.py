"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置。
优先级：显式参数 > 环境变量 > .env > config.yaml > secrets 目录。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHATBOT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """应用配置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    # 智谱：API Key 形如 "<id>.<secret>"，每次请求用它签一个短期 JWT
    zhipu_api_key: Optional[str] = Field(default=None, description="智谱 API 密钥")
    zhipu_base_url: str = Field(
        default="https://open.bigmodel.cn/api/paas/v4",
        description="智谱 API 基础URL",
    )
    # OpenAI 兼容接口（OpenAI / Moonshot 等）
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI 兼容接口的 API 密钥")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI 兼容接口基础URL")
    # Coze：JWT OAuth 换取 access token
    coze_api_url: str = Field(default="https://api.coze.cn", description="Coze API 基础URL")
    coze_client_id: Optional[str] = Field(default=None, description="Coze OAuth 应用 ID")
    coze_public_key_id: Optional[str] = Field(default=None, description="Coze OAuth 公钥 ID")
    coze_private_key: Optional[str] = Field(default=None, description="Coze OAuth 私钥（PEM）")
    coze_access_token: Optional[str] = Field(
        default=None,
        description="Coze 个人访问令牌，配置后跳过 OAuth",
    )
    coze_token_refresh_minutes: int = Field(default=14, ge=1, description="Coze token 本地缓存时长（分钟）")
    coze_token_lifetime_seconds: int = Field(default=900, ge=60, description="向 Coze 申请的 token 有效期（秒）")

    http_timeout: float = Field(default=30.0, ge=1.0, description="非流式 HTTP 超时时间（秒）")
    stream_timeout: float = Field(default=300.0, ge=1.0, description="流式 HTTP 超时时间（秒）")
    stream_delay_ms: int = Field(default=0, ge=0, le=1000, description="流式片段之间的展示延迟（毫秒）")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 对话 ----
    max_context_messages: Optional[int] = Field(default=None, ge=1, description="最多带多少条历史消息，None 表示全部")
    strict_model_selection: bool = Field(
        default=False,
        description="为 True 时无效的 model_id 直接拒绝，否则回退到默认模型",
    )
    models: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="启动时写入模型库的模型定义（模型库为空时才生效）",
    )

    # ---- 访问令牌 ----
    jwt_secret: str = Field(default="change-me", description="访问令牌签名密钥")
    jwt_algorithm: str = Field(default="HS256", description="访问令牌签名算法")
    access_token_expire_minutes: int = Field(default=60 * 24, ge=1, description="访问令牌有效期（分钟）")

    # ---- 推送通道 ----
    sse_poll_interval: float = Field(default=0.5, gt=0, description="检测客户端断开的轮询间隔（秒）")
    api_host: str = Field(default="127.0.0.1", description="HTTP 服务监听地址")
    api_port: int = Field(default=8080, ge=1, le=65535, description="HTTP 服务端口")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("zhipu_api_key")
    @classmethod
    def validate_zhipu_key(cls, v: Optional[str]) -> Optional[str]:
        if v and v.count(".") != 1:
            raise ValueError("ZHIPU_API_KEY must look like '<id>.<secret>'")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
