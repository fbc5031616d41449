"""FastAPI 应用入口，负责装配路由、异常处理与生命周期管理。"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.logging_config import log_startup_info, setup_exception_hook, setup_logging
from .db.init_db import init_db
from .exceptions import LorekeeperError


# 必须先配置 logging，再导入 api_router，否则 router 模块中的 logger 会在配置完成前被创建
setup_logging()
setup_exception_hook()

from .api.routers import api_router  # noqa: E402

log_startup_info()
logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """启动时初始化数据库表结构"""
    await init_db()
    yield


app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    version=APP_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(LorekeeperError)
async def lorekeeper_exception_handler(request: Request, exc: LorekeeperError):
    """
    统一处理业务异常

    日志中记录详细错误信息（detail），响应中只返回 message。
    """
    logger.error(
        "业务异常 [%s %s]: %s (状态码: %d)",
        request.method,
        request.url.path,
        exc.detail,
        exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """捕获所有未处理的异常，防止服务崩溃"""
    logger.critical(
        "未捕获的异常 [%s %s]: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=exc,
    )
    for handler in logging.root.handlers:
        handler.flush()

    return JSONResponse(
        status_code=500,
        content={"detail": f"服务器内部错误: {type(exc).__name__}: {exc}"},
    )


app.include_router(api_router)


@app.get("/health", tags=["Health"])
@app.get("/api/health", tags=["Health"])
async def health_check():
    """健康检查接口"""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": APP_VERSION,
    }
