# -*- coding: utf-8 -*-
"""
@FileName    : routing.py
@Author      : jiaxin
@Date        : 2026/10/12
@Time        : 11:02
@Description :
注册表协议路由表：按顺序匹配，第一个命中的路由生效。
{repo} 定义为 /v2/ 之后、最后两段之前的全部内容，可以包含 "/"。
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

ALLOWED_METHODS = frozenset({"GET", "HEAD"})


class Handler(str, Enum):
    PING = "ping"
    TOKEN = "token"
    PROXY = "proxy"


@dataclass(frozen=True)
class Route:
    handler: Handler
    pattern: re.Pattern


@dataclass(frozen=True)
class RouteMatch:
    handler: Handler
    repo: Optional[str] = None
    kind: Optional[str] = None
    reference: Optional[str] = None


ROUTES = (
    Route(Handler.PING, re.compile(r"^/v2/?$")),
    Route(Handler.TOKEN, re.compile(r"^/token$")),
    Route(Handler.PROXY, re.compile(r"^/v2/(?P<repo>.+)/(?P<kind>manifests)/(?P<reference>[^/]+)$")),
    Route(Handler.PROXY, re.compile(r"^/v2/(?P<repo>.+)/(?P<kind>blobs)/(?P<reference>[^/]+)$")),
    Route(Handler.PROXY, re.compile(r"^/v2/(?P<repo>.+)/(?P<kind>tags)/(?P<reference>list)$")),
)


def is_allowed_method(method: str) -> bool:
    return method.upper() in ALLOWED_METHODS


def match_route(path: str) -> Optional[RouteMatch]:
    """返回第一个匹配的路由，未命中返回 None"""
    for route in ROUTES:
        m = route.pattern.match(path)
        if m is None:
            continue
        groups = m.groupdict()
        return RouteMatch(
            handler=route.handler,
            repo=groups.get("repo"),
            kind=groups.get("kind"),
            reference=groups.get("reference"),
        )
    return None
