"""MagnetSync 主应用入口."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from magnetsync.api import links, subscriptions, sync
from magnetsync.config import get_settings
from magnetsync.context import AppContext
from magnetsync.models.database import (
    async_session_maker,
    close_db,
    init_db,
    release_stale_claims,
)
from magnetsync.scheduler import create_scheduler, shutdown_scheduler

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """应用生命周期管理."""
    app_settings = get_settings()

    # 启动时初始化
    logger.info("正在初始化数据库...")
    await init_db(app_settings.database_url)
    session_factory = async_session_maker()

    # 清除重启前遗留的占用标记
    logger.info("正在检查遗留的提交占用标记...")
    await release_stale_claims(session_factory)

    context = AppContext.build(app_settings, session_factory)
    app.state.context = context

    scheduler = None
    if app_settings.sweep_enabled:
        logger.info("正在启动定时任务...")
        scheduler = create_scheduler(context)

    logger.info("MagnetSync 启动完成！")
    yield

    # 关闭时清理
    logger.info("正在关闭...")
    await shutdown_scheduler(scheduler)
    await context.close()
    await close_db()
    logger.info("MagnetSync 已关闭")


app = FastAPI(
    title="MagnetSync",
    description="RSS 磁力链接订阅 - 123云盘离线下载",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
app.include_router(subscriptions.router)
app.include_router(links.router)
app.include_router(sync.router)


@app.get("/")
async def root() -> dict:
    """根路径."""
    return {
        "name": "MagnetSync",
        "version": "0.1.0",
        "description": "RSS 磁力链接订阅与离线下载",
    }


@app.get("/health")
async def health() -> dict:
    """健康检查."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "magnetsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
