# -*- coding: utf-8 -*-
"""
@FileName    : utils.py
@Author      : jiaxin
@Date        : 2026/10/12
@Time        : 16:10
@Description :
工具函数模块，包含：
- 请求/响应头处理（保留多值头）
- 日志脱敏
- 上游 HTTP 客户端构造
- 响应体流式透传
"""
from typing import AsyncGenerator, Iterable, List, Optional, Tuple

import httpx
from fastapi import Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from .logger import get_logger
from .settings import Settings

logger = get_logger()

Headers = List[Tuple[str, str]]

CHUNK_SIZE = 64 * 1024

# 逐跳头，不能跨连接转发
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-connection",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})


# ======================
# 请求头处理：去除逐跳头，保留多值头
# ======================
async def handle_headers(raw_headers: Iterable[Tuple[bytes, bytes]], drop: Iterable[str] = ()) -> Headers:
    """
    将 Starlette / httpx 的原始头转换为 [(key, value), ...]：
    - 保留原始大小写与多值头（如多个 Www-Authenticate、Link）
    - 去除逐跳头和 drop 中指定的头
    """
    dropped = HOP_BY_HOP_HEADERS | {name.lower() for name in drop}
    headers: Headers = []
    for key, value in raw_headers:
        key_str = key.decode("latin-1")
        if key_str.lower() in dropped:
            continue
        headers.append((key_str, value.decode("latin-1")))
    return headers


def get_header(headers: Headers, name: str) -> Optional[str]:
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return None


def set_header(headers: Headers, name: str, value: Optional[str]) -> Headers:
    """删除同名头；value 不为 None 时追加新值"""
    lower = name.lower()
    result = [(k, v) for k, v in headers if k.lower() != lower]
    if value is not None:
        result.append((name, value))
    return result


def redact(headers: Headers) -> dict:
    """日志输出前隐藏 Authorization"""
    result = {}
    for key, value in headers:
        if key.lower() == "authorization":
            value = "REDACTED"
        result[key] = value
    return result


# ======================
# 上游客户端
# ======================
def create_client(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """
    每个请求独立创建客户端，不跟随重定向（blob 的 CDN 重定向交给客户端处理）。
    retries 只对连接失败生效。
    """
    if transport is None:
        transport = httpx.AsyncHTTPTransport(retries=settings.upstream.retries)
    return httpx.AsyncClient(
        transport=transport,
        timeout=settings.upstream.timeout,
        follow_redirects=False,
    )


# ======================
# 响应体透传
# ======================
def should_copy_body(path: str, method: str, proxy_blob_bodies: bool = False) -> bool:
    """
    HEAD 不需要响应体；blob 响应通常是指向 CDN 的重定向，
    默认不拷贝响应体以避免大对象经过本服务产生流量费用。
    """
    if method.upper() == "HEAD":
        return False
    parts = path.split("/")
    if len(parts) >= 2 and parts[-2] == "blobs":
        return proxy_blob_bodies
    return True


async def stream_body(
        upstream_resp: httpx.Response,
        client: httpx.AsyncClient
) -> AsyncGenerator[bytes, None]:
    """
    原样（不解压）透传上游响应体，结束或客户端断开时关闭上游连接。
    响应头已发出，出错只能记录日志并中断连接。
    """
    chunk_count = 0
    try:
        async for chunk in upstream_resp.aiter_raw(chunk_size=CHUNK_SIZE):
            yield chunk
            chunk_count += 1
            if chunk_count % 100 == 0:  # 每 6.4MB 打一条 debug 日志
                logger.debug(f"📦 [透传] 已传输 {chunk_count * 64} KB 数据")
    except httpx.HTTPError as e:
        logger.exception(f"💥 [透传] 拷贝响应体失败 → URL: {upstream_resp.url} | 错误: {e}")
        raise
    finally:
        await upstream_resp.aclose()
        await client.aclose()


async def close_upstream(upstream_resp: Optional[httpx.Response], client: httpx.AsyncClient) -> None:
    if upstream_resp is not None:
        await upstream_resp.aclose()
    await client.aclose()


def _encode_headers(headers: Headers) -> List[Tuple[bytes, bytes]]:
    return [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers]


def make_response(status_code: int, headers: Headers, body: bytes = b"") -> Response:
    """headers 原样写出，Content-Length 由调用方负责"""
    response = Response(content=body, status_code=status_code)
    response.raw_headers = _encode_headers(headers)
    return response


def make_streaming_response(
        status_code: int,
        headers: Headers,
        content: AsyncGenerator[bytes, None],
        background: Optional[BackgroundTask] = None
) -> StreamingResponse:
    response = StreamingResponse(content, status_code=status_code, background=background)
    response.raw_headers = _encode_headers(headers)
    return response
