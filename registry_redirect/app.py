# -*- coding: utf-8 -*-
"""
@FileName    : app.py
@Author      : jiaxin
@Date        : 2026/10/13
@Time        : 15:20
@Description :
Registry 重定向代理（只读）：
- 客户端使用可见域名 / 仓库名，镜像实际存放在上游（GHCR、GCR 或私有网关）
- /v2/ 探测：透传上游，重写 Www-Authenticate realm 指回本服务 /token
- /token：中继上游 token 接口，scope 中的仓库名改写为上游仓库名
- manifests / blobs / tags/list：改写路径，缺少凭据时代替客户端换取 token，
  重写 Link 分页头与 tags/list 响应体
"""
from typing import Optional

import httpx
from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from . import __version__
from .auth import TokenExchangeError, fetch_token, rewrite_token_query
from .logger import get_logger
from .rewrite import (
    PrefixRequiredError,
    rewrite_headers,
    rewrite_path,
    rewrite_tag_list,
    to_upstream_repo,
)
from .routing import Handler, RouteMatch, is_allowed_method, match_route
from .schemas import HealthCheckResponse, RegistryError, RegistryErrorResponse
from .settings import Settings
from .utils import (
    Headers,
    close_upstream,
    create_client,
    get_header,
    handle_headers,
    make_response,
    make_streaming_response,
    redact,
    set_header,
    should_copy_body,
    stream_body,
)

logger = get_logger()

router = APIRouter()

# 转发给上游时不带这些头，由 httpx 重新生成
REQUEST_DROP_HEADERS = ("host", "content-length")


def create_app(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """
    构造应用。settings 在此之后只读；transport 为空时使用带重试的默认 transport。
    """
    app = FastAPI(
        title="Registry Redirect",
        description="只读的 Docker Registry v2 重定向代理，支持仓库名映射、可见前缀与 token 代换",
        version=__version__,
        docs_url="/docs" if settings.docs.enabled else None,
        redoc_url="/redoc" if settings.docs.enabled else None,
        openapi_url="/openapi.json" if settings.docs.enabled else None,
    )
    app.state.settings = settings
    app.state.transport = transport
    app.middleware("http")(read_only_guard)
    app.include_router(router)
    return app


# ======================
# 健康检查端点
# ======================
@router.get("/healthz", response_model=HealthCheckResponse, summary="健康检查")
async def health_check():
    """返回服务运行状态，用于 K8s/Liveness Probe"""
    logger.debug("🩺 [健康检查] 收到探测请求")
    return HealthCheckResponse(status="ok", message="registry-redirect is running", version=__version__)


# ======================
# 协议入口：方法校验 + 路由分发
# ======================
async def read_only_guard(request: Request, call_next):
    """在路由之前拦截 GET / HEAD 以外的任意方法（包括 TRACE、PROPFIND 等非标准方法）"""
    if not is_allowed_method(request.method):
        logger.warning(f"✋ [路由] 拒绝写操作 → {request.method} {request.url.path}")
        return PlainTextResponse("registry is read-only", status_code=400)
    return await call_next(request)


@router.api_route("/{path:path}", methods=["GET", "HEAD"], include_in_schema=False)
async def dispatch(request: Request):
    path = request.url.path

    match = match_route(path)
    if match is None:
        return not_found(request)
    if match.handler == Handler.PING:
        return await ping(request)
    if match.handler == Handler.TOKEN:
        return await token(request)
    return await proxy(request, match)


def not_found(request: Request) -> Response:
    settings: Settings = request.app.state.settings
    path = request.url.path
    logger.info(
        f"❓ [路由] 未知路径 → {request.method} {request.url} | "
        f"headers={redact(list(request.headers.items()))}"
    )
    if settings.not_found_redirect:
        # 只替换 {path}，模板中的其他花括号原样保留
        location = settings.not_found_redirect.replace("{path}", path.lstrip("/"))
        logger.info(f"↪️ [路由] 跳转到文档页 → {location}")
        return RedirectResponse(location, status_code=307)
    return Response(status_code=404)


def manifest_unknown(error: PrefixRequiredError) -> JSONResponse:
    """缺少前缀时返回 registry 协议格式的 404，标准客户端才能识别"""
    body = RegistryErrorResponse(errors=[
        RegistryError(
            code="MANIFEST_UNKNOWN",
            message="manifest unknown",
            detail={"path": error.path, "required_prefix": error.prefix},
        )
    ])
    return JSONResponse(
        status_code=404,
        content=body.model_dump(),
        headers={"Docker-Distribution-API-Version": "registry/2.0"},
    )


def _request_host(request: Request) -> str:
    return request.headers.get("host", "")


# ======================
# /v2/ 探测
# ======================
async def ping(request: Request) -> Response:
    settings: Settings = request.app.state.settings
    headers = await handle_headers(request.headers.raw, drop=REQUEST_DROP_HEADERS)
    client = create_client(settings, request.app.state.transport)
    return await forward(request, client, settings.upstream.v2_url, headers, rewrite=True)


# ======================
# /token 中继
# ======================
async def token(request: Request) -> Response:
    settings: Settings = request.app.state.settings
    query = rewrite_token_query(settings, request.url.query, _request_host(request))
    url = settings.upstream.token_url
    if query:
        url = f"{url}?{query}"

    headers = await handle_headers(request.headers.raw, drop=REQUEST_DROP_HEADERS)
    client = create_client(settings, request.app.state.transport)
    return await forward(request, client, url, headers, rewrite=False)


# ======================
# manifests / blobs / tags/list
# ======================
async def proxy(request: Request, match: RouteMatch) -> Response:
    settings: Settings = request.app.state.settings
    host = _request_host(request)

    try:
        url = rewrite_path(settings, request.url.path, request.url.query, host)
        upstream_repo = to_upstream_repo(settings, match.repo, host)
    except PrefixRequiredError as e:
        logger.info(f"🚫 [代理] {e} | Host: {host}")
        return manifest_unknown(e)

    headers = await handle_headers(request.headers.raw, drop=REQUEST_DROP_HEADERS)
    client = create_client(settings, request.app.state.transport)

    if get_header(headers, "authorization") is None:
        try:
            bearer = await fetch_token(client, settings, upstream_repo, headers)
        except TokenExchangeError as e:
            token_resp = e.response
            resp_headers = await handle_headers(token_resp.headers.raw)
            resp_headers = set_header(resp_headers, "X-Redirected", str(token_resp.url))
            head = request.method == "HEAD"
            return relay(token_resp, client, resp_headers, copy_body=not head, head=head)
        except httpx.HTTPError as e:
            logger.exception(f"🔥 [认证] 请求上游 token 接口失败 → {settings.upstream.token_url}")
            await client.aclose()
            return PlainTextResponse(str(e), status_code=500)
        except ValidationError as e:
            logger.error(f"💥 [认证] 无法解析上游 token 响应 → {e}")
            await client.aclose()
            return PlainTextResponse(str(e), status_code=500)
        headers = set_header(headers, "Authorization", f"Bearer {bearer}")

    return await forward(request, client, url, headers, rewrite=True, match=match)


async def forward(
        request: Request,
        client: httpx.AsyncClient,
        url: str,
        headers: Headers,
        rewrite: bool,
        match: Optional[RouteMatch] = None
) -> Response:
    """
    向上游发起单次请求（不重试、不跟随重定向），改写响应头后透传给客户端。
    """
    settings: Settings = request.app.state.settings
    host = _request_host(request)
    method = request.method
    path = request.url.path

    logger.info(f"➡️ [代理] {method} {path} → {url} | headers={redact(headers)}")
    try:
        upstream_resp = await client.send(client.build_request(method, url, headers=headers), stream=True)
    except httpx.HTTPError as e:
        logger.exception(f"🔥 [代理] 请求上游失败 → Target: {url}")
        await client.aclose()
        return PlainTextResponse(str(e), status_code=500, headers={"X-Redirected": url})

    logger.info(f"⬅️ [代理] 上游响应 → Status: {upstream_resp.status_code} | {method} {url}")

    resp_headers = await handle_headers(upstream_resp.headers.raw)
    logger.debug(f"📡 [代理] 上游响应头 → {redact(resp_headers)}")
    if rewrite:
        resp_headers = rewrite_headers(settings, resp_headers, host)
    resp_headers = set_header(resp_headers, "X-Redirected", url)

    if match is not None and match.kind == "tags" and upstream_resp.status_code == 200:
        if method == "GET":
            return await rewrite_list_response(upstream_resp, client, resp_headers, settings, host)
        # HEAD 拿不到改写后的长度，上游的 Content-Length 对应未改写的响应体
        resp_headers = set_header(resp_headers, "Content-Encoding", None)
        resp_headers = set_header(resp_headers, "Content-Length", None)

    copy_body = should_copy_body(path, method, settings.proxy_blob_bodies)
    return relay(upstream_resp, client, resp_headers, copy_body=copy_body, head=method == "HEAD")


async def rewrite_list_response(
        upstream_resp: httpx.Response,
        client: httpx.AsyncClient,
        resp_headers: Headers,
        settings: Settings,
        host: str
) -> Response:
    """
    改写 tags/list 响应体中的 name。
    响应体长度会变化，必须丢弃上游的 Content-Length，否则部分平台会截断或清空响应。
    """
    try:
        body = await upstream_resp.aread()
    except httpx.HTTPError as e:
        logger.exception(f"💥 [代理] 读取 tags/list 响应失败 → {upstream_resp.url}")
        return PlainTextResponse(str(e), status_code=500)
    finally:
        await close_upstream(upstream_resp, client)

    try:
        body = rewrite_tag_list(settings, body, host)
    except ValidationError as e:
        logger.error(f"💥 [代理] 无法解析 tags/list 响应 → {e}")
        return PlainTextResponse(str(e), status_code=500)

    # aread() 已按 Content-Encoding 解压
    resp_headers = set_header(resp_headers, "Content-Encoding", None)
    resp_headers = set_header(resp_headers, "Content-Length", str(len(body)))
    return make_response(upstream_resp.status_code, resp_headers, body)


def relay(
        upstream_resp: httpx.Response,
        client: httpx.AsyncClient,
        resp_headers: Headers,
        copy_body: bool,
        head: bool = False
) -> Response:
    """
    透传上游响应：
    - copy_body 为真：流式拷贝原始字节（保留 Content-Encoding / Content-Length）
    - HEAD：只返回头，保留上游 Content-Length
    - 其他（如 blob）：丢弃响应体，Content-Length 置 0
    """
    if copy_body:
        return make_streaming_response(
            upstream_resp.status_code,
            resp_headers,
            stream_body(upstream_resp, client),
            background=BackgroundTask(close_upstream, upstream_resp, client),
        )

    if not head:
        logger.debug(f"📦 [代理] 跳过响应体拷贝 → {upstream_resp.url}")
        resp_headers = set_header(resp_headers, "Content-Encoding", None)
        resp_headers = set_header(resp_headers, "Content-Length", "0")
    return _closing_response(upstream_resp, client, resp_headers)


def _closing_response(upstream_resp: httpx.Response, client: httpx.AsyncClient, resp_headers: Headers) -> Response:
    response = make_response(upstream_resp.status_code, resp_headers)
    response.background = BackgroundTask(close_upstream, upstream_resp, client)
    return response
