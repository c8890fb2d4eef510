# -*- coding: utf-8 -*-
"""
@FileName    : settings.py
@Author      : jiaxin
@Date        : 2026/10/12
@Time        : 10:05
@Description :
全局配置：启动时构造一次，之后只读（frozen），由 app.state 传递给各个处理器。
"""
import os
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import PydanticBaseSettingsSource

CONFIG_FILE_ENV = "REGISTRY_REDIRECT_CONFIG"
DEFAULT_CONFIG_FILE = "config.yaml"


class UpstreamKind(str, Enum):
    GHCR = "ghcr"
    GCR = "gcr"
    CUSTOM = "custom"


class ListenConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = 8080


class DocsConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False


class HTTPSConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    cert: Optional[str] = None
    key: Optional[str] = None

    @model_validator(mode='after')
    def validate_cert_and_key_if_enabled(self):
        if self.enabled:
            if not self.cert or not self.key:
                raise ValueError("'https.cert' and 'https.key' are required when 'https.enabled' is true")
            if not Path(self.cert).exists():
                raise ValueError(f"Certificate file not found: {self.cert}")
            if not Path(self.key).exists():
                raise ValueError(f"Private key file not found: {self.key}")
        return self


class UpstreamConfig(BaseModel):
    """
    上游注册表：
    - ghcr：https://ghcr.io，token 接口 /token
    - gcr：https://gcr.io，token 接口 /v2/token
    - custom：私有网关，必须指定 host
    """
    model_config = ConfigDict(frozen=True)

    kind: UpstreamKind = UpstreamKind.GHCR
    host: Optional[str] = None
    scheme: str = "https"
    token_path: Optional[str] = None
    service: Optional[str] = None
    timeout: float = 30.0
    retries: int = Field(default=0, ge=0)

    @model_validator(mode='after')
    def validate_custom_host(self):
        if self.kind == UpstreamKind.CUSTOM and not self.host:
            raise ValueError("'upstream.host' is required when 'upstream.kind' is 'custom'")
        return self

    @property
    def registry_host(self) -> str:
        if self.host:
            return self.host
        return "gcr.io" if self.kind == UpstreamKind.GCR else "ghcr.io"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.registry_host}"

    @property
    def v2_url(self) -> str:
        return f"{self.base_url}/v2/"

    @property
    def token_endpoint_path(self) -> str:
        if self.token_path:
            return "/" + self.token_path.lstrip("/")
        return "/v2/token" if self.kind == UpstreamKind.GCR else "/token"

    @property
    def token_url(self) -> str:
        return self.base_url + self.token_endpoint_path

    @property
    def service_name(self) -> str:
        return self.service or self.registry_host


class Settings(BaseSettings):
    listen: ListenConfig = Field(default_factory=ListenConfig)
    docs: DocsConfig = Field(default_factory=DocsConfig)
    https: HTTPSConfig = Field(default_factory=HTTPSConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    # 可见仓库 -> 上游仓库：example.dev/static -> ghcr.io/<repo>/static
    repo: str = ""
    # 用户可见的路径前缀，例如 example.dev/<prefix>/static
    prefix: str = ""
    # 这些域名可以省略 prefix
    prefixless_hosts: FrozenSet[str] = Field(default_factory=frozenset)
    # 重写 Www-Authenticate realm 时使用的协议（TLS 通常在边缘终止）
    public_scheme: str = "https"
    # 未知路径 307 跳转的文档地址模板，支持 {path} 占位符；为空则返回 404
    not_found_redirect: Optional[str] = None
    # blob 响应默认只透传头（通常是 CDN 重定向），不拷贝响应体
    proxy_blob_bodies: bool = False
    log_level: str = "INFO"

    @model_validator(mode='after')
    def normalize_repo_and_prefix(self):
        if self.repo != self.repo.strip("/") or self.prefix != self.prefix.strip("/"):
            raise ValueError("'repo' and 'prefix' must not start or end with '/'")
        return self

    @classmethod
    def settings_customise_sources(
            cls,
            settings_cls,
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
    ):
        class YamlSettingsSource(PydanticBaseSettingsSource):
            def get_field_value(self, field_name: str, field: Any) -> tuple[Any, str, bool]:
                return None, "", False

            def __call__(self) -> Dict[str, Any]:
                config_file = os.getenv(CONFIG_FILE_ENV, DEFAULT_CONFIG_FILE)
                if Path(config_file).exists():
                    with open(config_file, "r", encoding="utf-8") as f:
                        return yaml.safe_load(f) or {}
                return {}

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
            YamlSettingsSource(settings_cls),
        )

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_prefix="REDIRECT_",  # REDIRECT_REPO / REDIRECT_UPSTREAM__KIND ...
        env_nested_delimiter="__",
        extra="forbid",  # 禁止未定义字段
        frozen=True,
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
