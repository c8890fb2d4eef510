# -*- coding: utf-8 -*-
"""
@FileName    : rewrite.py
@Author      : jiaxin
@Date        : 2026/10/12
@Time        : 14:37
@Description :
可见坐标 <-> 上游坐标 的双向改写：
- 请求路径：/v2/[prefix/]<name>/... -> <upstream>/v2/[repo/]<name>/...
- Www-Authenticate：realm 指回本代理的 /token，scope 中的仓库名还原为可见名
- Link 分页头：</v2/[repo/]<name>/tags/list?...> -> </v2/[prefix/]<name>/tags/list?...>
- tags/list 响应体：name 字段还原为可见名
"""
import re
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlsplit

from .logger import get_logger
from .schemas import ListResponse
from .settings import Settings
from .utils import Headers

logger = get_logger()

_CHALLENGE_RE = re.compile(r'^\s*(?P<scheme>[A-Za-z][\w-]*)\s+(?P<params>\S.*)$')
_PARAM_RE = re.compile(r'\s*(?P<key>[\w-]+)\s*=\s*(?P<value>"(?:[^"\\]|\\.)*"|[^,"]*?)\s*(?:,|$)')
_LINK_RE = re.compile(r'\s*<(?P<uri>[^>]*)>(?P<params>[^,]*)')


class PrefixRequiredError(Exception):
    """请求路径缺少必需的可见前缀"""

    def __init__(self, path: str, prefix: str):
        super().__init__(f"path {path!r} does not start with required prefix {prefix!r}")
        self.path = path
        self.prefix = prefix


# ======================
# 前缀判定
# ======================
def prefix_required(settings: Settings, host: str) -> bool:
    """配置了 prefix 且请求域名不在 prefixless_hosts 中时，路径必须带前缀"""
    if not settings.prefix:
        return False
    if host in settings.prefixless_hosts:
        return False
    return _hostname(host) not in settings.prefixless_hosts


def _hostname(host: str) -> str:
    if host.startswith("["):
        return host.split("]")[0] + "]"
    return host.split(":")[0]


def _strip_prefix(settings: Settings, value: str, host: str) -> str:
    if not prefix_required(settings, host):
        return value
    if not value.startswith(settings.prefix + "/"):
        raise PrefixRequiredError(value, settings.prefix)
    return value[len(settings.prefix) + 1:]


# ======================
# 可见 -> 上游
# ======================
def to_upstream_repo(settings: Settings, repo: str, host: str) -> str:
    repo = _strip_prefix(settings, repo, host)
    if settings.repo:
        repo = f"{settings.repo}/{repo}"
    return repo


def rewrite_path(settings: Settings, path: str, query: str, host: str) -> str:
    """
    将客户端路径改写为完整的上游 URL：
    1. 去掉 /v2/
    2. 需要前缀时校验并去掉前缀（缺失则抛出 PrefixRequiredError）
    3. 拼接 repo/
    4. 拼接上游 /v2/ 地址并原样附加 query
    """
    relative = path[len("/v2/"):] if path.startswith("/v2/") else path.lstrip("/")
    relative = _strip_prefix(settings, relative, host)
    if settings.repo:
        relative = f"{settings.repo}/{relative}"

    url = settings.upstream.v2_url + relative
    if query:
        url = f"{url}?{query}"
    return url


# ======================
# 上游 -> 可见
# ======================
def to_client_repo(settings: Settings, upstream_repo: str, host: str) -> str:
    """不属于 repo 命名空间的仓库名原样返回"""
    repo = upstream_repo
    if settings.repo:
        if not repo.startswith(settings.repo + "/"):
            return upstream_repo
        repo = repo[len(settings.repo) + 1:]
    if prefix_required(settings, host):
        repo = f"{settings.prefix}/{repo}"
    return repo


def map_scope(scope: str, mapper: Callable[[str], str]) -> str:
    """
    改写 scope 中 repository 资源的名称，支持空格分隔的多个 scope：
    repository:<name>:<actions> [repository:<name>:<actions> ...]
    """
    mapped = []
    for item in scope.split(" "):
        resource_type, sep, rest = item.partition(":")
        if not sep or not resource_type.startswith("repository") or ":" not in rest:
            mapped.append(item)
            continue
        name, actions = rest.rsplit(":", 1)
        mapped.append(f"{resource_type}:{mapper(name)}:{actions}")
    return " ".join(mapped)


# ======================
# Www-Authenticate
# ======================
def parse_challenge(value: str) -> Optional[Tuple[str, List[Tuple[str, str]]]]:
    """解析 `Bearer realm="...",service="..."`，无法解析时返回 None"""
    m = _CHALLENGE_RE.match(value)
    if not m:
        return None
    params_str = m.group("params")
    params: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(params_str):
        pm = _PARAM_RE.match(params_str, pos)
        if not pm or pm.end() == pos:
            return None
        raw = pm.group("value")
        if raw.startswith('"'):
            raw = re.sub(r'\\(.)', r'\1', raw[1:-1])
        params.append((pm.group("key"), raw))
        pos = pm.end()
    return m.group("scheme"), params


def format_challenge(scheme: str, params: List[Tuple[str, str]]) -> str:
    quoted = []
    for key, value in params:
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        quoted.append(f'{key}="{escaped}"')
    return f"{scheme} " + ",".join(quoted)


def rewrite_www_authenticate(settings: Settings, value: str, host: str) -> str:
    parsed = parse_challenge(value)
    if parsed is None:
        logger.warning(f"⚠️ [重写] 无法解析 Www-Authenticate → 原样透传: {value}")
        return value

    scheme, params = parsed
    upstream = settings.upstream
    rewritten = []
    for key, param in params:
        lower = key.lower()
        if lower == "realm":
            realm = urlsplit(param)
            if realm.netloc == upstream.registry_host:
                param = f"{settings.public_scheme}://{host}/token"
                if realm.query:
                    param = f"{param}?{realm.query}"
        elif lower == "scope":
            param = map_scope(param, lambda name: to_client_repo(settings, name, host))
        rewritten.append((key, param))

    new_value = format_challenge(scheme, rewritten)
    logger.debug(f"🔄 [重写] Www-Authenticate: {value} → {new_value}")
    return new_value


# ======================
# Link 分页
# ======================
def _rewrite_link_uri(settings: Settings, uri: str, host: str) -> str:
    parts = urlsplit(uri)
    if parts.netloc and parts.netloc != settings.upstream.registry_host:
        return uri
    if not parts.path.startswith("/v2/"):
        return uri

    relative = parts.path[len("/v2/"):]
    # 仓库名 = 最后两段之前的部分（<name>/tags/list）
    segments = relative.split("/")
    if len(segments) < 3:
        return uri
    name = "/".join(segments[:-2])
    tail = "/".join(segments[-2:])
    if settings.repo and not name.startswith(settings.repo + "/"):
        return uri

    new_uri = f"/v2/{to_client_repo(settings, name, host)}/{tail}"
    if parts.query:
        new_uri = f"{new_uri}?{parts.query}"
    return new_uri


def rewrite_link(settings: Settings, value: str, host: str) -> str:
    links = []
    pos = 0
    for m in _LINK_RE.finditer(value):
        if value[pos:m.start()].strip(", "):
            logger.warning(f"⚠️ [重写] 无法解析 Link → 原样透传: {value}")
            return value
        uri = _rewrite_link_uri(settings, m.group("uri"), host)
        links.append(f"<{uri}>{m.group('params')}")
        pos = m.end()
    if not links or value[pos:].strip(", "):
        return value

    new_value = ", ".join(links)
    logger.debug(f"🔄 [重写] Link: {value} → {new_value}")
    return new_value


def rewrite_headers(settings: Settings, headers: Headers, host: str) -> Headers:
    """逐项改写上游响应头，保留多值头的顺序"""
    result: Headers = []
    for key, value in headers:
        lower = key.lower()
        if lower == "www-authenticate":
            value = rewrite_www_authenticate(settings, value, host)
        elif lower == "link":
            value = rewrite_link(settings, value, host)
        result.append((key, value))
    return result


# ======================
# tags/list 响应体
# ======================
def rewrite_tag_list(settings: Settings, body: bytes, host: str) -> bytes:
    """
    将 name 字段还原为客户端可见的仓库名，否则客户端会因为名称不匹配反复请求第一页。
    JSON 非法时抛出 pydantic.ValidationError。
    """
    listing = ListResponse.model_validate_json(body)
    name = to_client_repo(settings, listing.name, host)
    logger.debug(f"🔄 [重写] tags/list name: {listing.name} → {name}")
    # 上游未返回的 tags 不补 null
    exclude = None if "tags" in listing.model_fields_set else {"tags"}
    return listing.model_copy(update={"name": name}).model_dump_json(exclude=exclude).encode("utf-8")
