# -*- coding: utf-8 -*-
"""
@FileName    : main.py
@Author      : jiaxin
@Date        : 2026/10/13
@Time        : 17:31
@Description :
Registry 重定向代理启动入口：
- 加载配置（config.yaml / REDIRECT_* 环境变量）
- 初始化日志
- 启动 uvicorn（可选 HTTPS）
"""
import os

from registry_redirect import create_app
from registry_redirect.logger import setup_logging
from registry_redirect.settings import get_settings

# ======================
# 配置加载 & 日志初始化
# ======================
settings = get_settings()
logger = setup_logging(settings)

app = create_app(settings)


# ======================
# 应用启动入口
# ======================
if __name__ == "__main__":
    import uvicorn

    # 打印配置摘要
    upstream = settings.upstream
    logger.info(f"📚 上游注册表: {upstream.kind.value} → {upstream.v2_url} (token: {upstream.token_url})")
    logger.info(f"  📦 repo: '{settings.repo or '-'}' | prefix: '{settings.prefix or '-'}'")
    if settings.prefixless_hosts:
        logger.info(f"  🌍 无需前缀的域名: {', '.join(sorted(settings.prefixless_hosts))}")
    if settings.not_found_redirect:
        logger.info(f"  ↪️ 未知路径跳转: {settings.not_found_redirect}")

    # 托管平台（Cloud Run / Fly）通过 PORT 指定监听端口
    port = int(os.getenv("PORT", settings.listen.port))

    ssl_args = {}
    if settings.https.enabled:
        ssl_args = {
            "ssl_certfile": settings.https.cert,
            "ssl_keyfile": settings.https.key
        }
        logger.info(f"🔒 启动 HTTPS 代理服务 → https://{settings.listen.host}:{port}")
    else:
        logger.info(f"🔌 启动 HTTP 代理服务 → http://{settings.listen.host}:{port}")

    uvicorn.run(
        app,
        host=settings.listen.host,
        port=port,
        reload=False,
        **ssl_args
    )
