"""
Main Web Integration - 组装网关并开启主服务

启动顺序：配置 → 传输层 → 凭证池 → 提供商客户端 → 降级路由器 → 后台刷新调度器
"""

# 加载 .env 文件中的环境变量（必须在其他导入之前）
from dotenv import load_dotenv
load_dotenv()

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from config import GatewaySettings, load_settings
from log import log
from relay2api import __version__
from relay2api.capture import DiagnosticCapture, LoggingObserver
from relay2api.config_loader import load_provider_pools
from relay2api.converters.registry import ConverterRegistry
from relay2api.endpoints import GatewayState
from relay2api.endpoints import router as gateway_router
from relay2api.pool.manager import PoolManager
from relay2api.pool.router import FallbackRouter
from relay2api.pool.scheduler import RefreshScheduler
from relay2api.providers import ProviderClient, ProviderConfig, create_provider_client
from relay2api.transport import Transport, select_transport


def build_clients(settings: GatewaySettings, transport: Transport, provider_types) -> Dict[str, ProviderClient]:
    """为每个提供商类型创建客户端"""
    clients: Dict[str, ProviderClient] = {}
    for provider_type in provider_types:
        data = {
            "timeout": settings.request_timeout,
            "stream_timeout": settings.stream_timeout,
            **settings.providers.get(provider_type, {}),
        }
        clients[provider_type] = create_provider_client(
            provider_type, transport, ProviderConfig.from_dict(provider_type, data),
        )
    return clients


def build_gateway(settings: GatewaySettings, transport: Optional[Transport] = None) -> GatewayState:
    """按配置组装网关运行时对象"""
    transport = transport or select_transport(
        impersonate=settings.tls_impersonate_enabled,
        profile=settings.tls_impersonate_profile,
        timeout=settings.request_timeout,
        stream_timeout=settings.stream_timeout,
        proxy=settings.proxy,
    )

    pools = load_provider_pools(settings.provider_pools_file)
    manager = PoolManager.from_config(pools, settings.pool_settings(), LoggingObserver())

    provider_types = set(manager.provider_types)
    provider_types.update(settings.providers)
    clients = build_clients(settings, transport, sorted(provider_types))

    capture = DiagnosticCapture(flush_delay=settings.capture_flush_delay) if settings.capture_enabled else None
    registry = ConverterRegistry.get_instance()
    router = FallbackRouter(
        manager,
        clients,
        registry=registry,
        fallback_chain=settings.provider_fallback_chain,
        routing_rules=settings.model_routing,
        default_provider=settings.default_provider,
        default_models=settings.default_models(),
        request_timeout=settings.request_timeout,
        stream_timeout=settings.stream_timeout,
        capture=capture,
    )

    scheduler = None
    if settings.background_refresh_enabled:
        scheduler = RefreshScheduler(
            manager,
            clients,
            interval=settings.refresh_interval,
            concurrency=settings.refresh_concurrency,
            jitter=settings.refresh_jitter,
        )
        manager.set_refresh_listener(scheduler.enqueue)

    gateway = GatewayState(
        registry=registry,
        manager=manager,
        router=router,
        api_password=settings.api_password,
        scheduler=scheduler,
        capture=capture,
        transport=transport,
    )
    return gateway


def create_app(gateway: Optional[GatewayState] = None) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        gateway: 预先组装好的网关（测试用）；为 None 时在 lifespan 中按配置组装
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        log.info("启动 relay2api 主服务")
        state = gateway
        if state is None:
            settings = load_settings()
            state = build_gateway(settings)
        app.state.gateway = state

        if state.scheduler is not None:
            state.scheduler.start()

        yield

        log.info("开始关闭 relay2api 主服务")
        if state.scheduler is not None:
            try:
                await state.scheduler.stop()
            except Exception as e:
                log.error(f"关闭刷新调度器时出错: {e}")
        if state.capture is not None:
            await state.capture.drain()
        if state.transport is not None:
            try:
                await state.transport.aclose()
            except Exception as e:
                log.error(f"关闭传输层时出错: {e}")
        log.info("relay2api 主服务已停止")

    app = FastAPI(
        title="relay2api",
        description="Multi-protocol LLM gateway with credential pools and provider fallback",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(gateway_router, prefix="", tags=["Gateway"])

    # 保活接口（仅响应 HEAD）
    @app.head("/keepalive")
    async def keepalive() -> Response:
        return Response(status_code=200)

    return app


app = create_app()

__all__ = ["app", "create_app", "build_gateway"]


async def main():
    """异步主启动函数"""
    from hypercorn.asyncio import serve
    from hypercorn.config import Config

    settings = load_settings()
    port = settings.port
    host = settings.host

    log.info("=" * 60)
    log.info("启动 relay2api")
    log.info("=" * 60)
    log.info("API端点:")
    log.info(f"   OpenAI兼容: http://127.0.0.1:{port}/v1/chat/completions")
    log.info(f"   OpenAI Responses: http://127.0.0.1:{port}/v1/responses")
    log.info(f"   Claude Messages: http://127.0.0.1:{port}/v1/messages")
    log.info(f"   Gemini原生: http://127.0.0.1:{port}/v1beta/models")
    log.info(f"   凭证池状态: http://127.0.0.1:{port}/pool/status")
    if settings.default_provider:
        log.info(f"   默认提供商: {settings.default_provider}")
    log.info("=" * 60)

    # 配置hypercorn
    config = Config()
    config.bind = [f"{host}:{port}"]
    config.accesslog = "-"
    config.errorlog = "-"
    config.loglevel = "INFO"

    # 设置请求体大小限制为100MB
    config.max_request_body_size = 100 * 1024 * 1024
    config.keep_alive_timeout = 300
    config.read_timeout = 300

    await serve(app, config)


if __name__ == "__main__":
    asyncio.run(main())
