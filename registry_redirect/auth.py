# -*- coding: utf-8 -*-
"""
@FileName    : auth.py
@Author      : jiaxin
@Date        : 2026/10/13
@Time        : 09:42
@Description :
令牌处理：
- 代理请求未携带 Authorization 时，代替客户端向上游换取 pull token
  （containerd 会在 /v2/ 之前发出未认证的 HEAD 请求）
- /token 中继时把 scope 里的可见仓库名改写为上游仓库名
"""
from urllib.parse import parse_qsl, urlencode

import httpx

from .logger import get_logger
from .rewrite import PrefixRequiredError, map_scope, to_upstream_repo
from .schemas import TokenResponse
from .settings import Settings
from .utils import Headers

logger = get_logger()


class TokenExchangeError(Exception):
    """上游 token 接口返回非 200，response 为尚未读取的流式响应"""

    def __init__(self, response: httpx.Response):
        super().__init__(f"token endpoint returned {response.status_code}")
        self.response = response


def token_params(settings: Settings, upstream_repo: str) -> dict:
    return {
        "scope": f"repository:{upstream_repo}:pull",
        "service": settings.upstream.service_name,
    }


async def fetch_token(
        client: httpx.AsyncClient,
        settings: Settings,
        upstream_repo: str,
        headers: Headers
) -> str:
    """
    向上游 token 接口申请 <upstream_repo> 的 pull 权限。
    透传客户端请求头（匿名 / Basic 凭据）。

    - 非 200：抛出 TokenExchangeError，由调用方原样返回状态码和响应体
    - 响应体无法解析：抛出 pydantic.ValidationError
    - 网络错误：抛出 httpx.HTTPError
    """
    request = client.build_request(
        "GET",
        settings.upstream.token_url,
        params=token_params(settings, upstream_repo),
        headers=headers,
    )
    logger.info(f"🔐 [认证] 代替客户端换取 token → {request.url}")

    response = await client.send(request, stream=True)
    if response.status_code != 200:
        logger.info(f"🚫 [认证] 上游 token 接口返回 {response.status_code} → 原样返回客户端")
        raise TokenExchangeError(response)

    try:
        body = await response.aread()
    finally:
        await response.aclose()
    return TokenResponse.model_validate_json(body).token


def rewrite_token_query(settings: Settings, query: str, host: str) -> str:
    """改写所有 scope 参数中的仓库名，其余参数不变"""
    if not query:
        return query

    def _to_upstream(name: str) -> str:
        try:
            return to_upstream_repo(settings, name, host)
        except PrefixRequiredError:
            logger.info(f"⚠️ [认证] scope 中的仓库 '{name}' 缺少前缀 '{settings.prefix}' → 不改写")
            return name

    pairs = []
    for key, value in parse_qsl(query, keep_blank_values=True):
        if key == "scope":
            value = map_scope(value, _to_upstream)
        pairs.append((key, value))
    return urlencode(pairs)
