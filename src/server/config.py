"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类
- config: Config 的单例实例
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.normalize_path_prefix: 规范化证书链 URL 的路径前缀
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, PydanticBaseSettingsSource


class Config(BaseSettings):
    # 测试模式：为 True 时跳过全部请求校验
    alexa_verify_disabled: bool = False
    # 叶子证书必须绑定的主机名
    alexa_echo_dns: str = "echo-api.amazon.com"

    # 证书链 URL 的接受策略
    cert_url_scheme: str = "https"
    cert_url_host: str = "s3.amazonaws.com"
    cert_url_port: int = 443
    cert_url_path_prefix: str = "/echo.api/"

    timestamp_tolerance_seconds: int = 150
    cert_fetch_timeout: float = 10.0
    # 为空时使用 certifi 自带的根证书包
    trust_store_path: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("cert_url_scheme", "cert_url_host", mode="before")
    @classmethod
    def lowercase_url_parts(cls, value: Any) -> str:
        """scheme 与主机名不区分大小写，统一转为小写后比较。"""
        return str(value or "").strip().lower()

    @field_validator("cert_url_path_prefix", mode="before")
    @classmethod
    def normalize_path_prefix(cls, value: Any) -> str:
        """保证路径前缀以 / 开头并以 / 结尾，避免 /echo.api 匹配到 /echo.apix。"""
        text = str(value or "").strip()
        if not text.startswith("/"):
            text = "/" + text
        if not text.endswith("/"):
            text = text + "/"
        return text

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > config.json > secrets。"""

        class JsonFileSettingsSource(PydanticBaseSettingsSource):
            """从工作目录的 config.json（或 CONFIG_FILE 指定路径）加载配置的自定义 Source。"""

            def __init__(self, settings_cls):
                super().__init__(settings_cls)
                self._data: Dict[str, Any] | None = None

            def _load(self) -> None:
                if self._data is not None:
                    return
                cfg_path = os.environ.get("CONFIG_FILE")
                path = Path(cfg_path) if cfg_path else Path.cwd() / "config.json"
                if not path.exists():
                    self._data = {}
                    return
                try:
                    with path.open("r", encoding="utf-8") as f:
                        data = json.load(f)
                    self._data = data if isinstance(data, dict) else {}
                except (OSError, ValueError):
                    self._data = {}

            def __call__(self) -> Dict[str, Any]:
                self._load()
                return dict(self._data or {})

            def get_field_value(self, field, field_name):  # type: ignore[override]
                """为满足抽象基类要求，按字段名返回字段值。"""
                self._load()
                data = self._data or {}
                if field_name in data:
                    return data[field_name], field_name, True
                return None, field_name, False

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )


config = Config()
