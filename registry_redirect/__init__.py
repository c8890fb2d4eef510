# -*- coding: utf-8 -*-
"""
@FileName    : __init__.py
@Author      : jiaxin
@Date        : 2026/10/12
@Time        : 10:01
@Description :
Registry 重定向代理：把可见域名 / 仓库名透明映射到 GHCR、GCR 或私有网关。
"""
__version__ = "0.1.0"

from .app import create_app
from .settings import Settings, UpstreamConfig, UpstreamKind, get_settings

__all__ = [
    "create_app",
    "Settings",
    "UpstreamConfig",
    "UpstreamKind",
    "get_settings",
]
