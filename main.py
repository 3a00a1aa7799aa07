"""
FastAPI应用主入口
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.routes import payments as payments_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.settings import mpesa_settings
from core.logging_config import get_logger, configure_logging
from infrastructure.database import create_tables


# 初始化日志：在入口处显式配置
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时创建数据库表（仅开发环境）
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")

    issues = mpesa_settings.validate_configuration()
    if issues:
        logger.warning(
            "mpesa_configuration_incomplete",
            environment=mpesa_settings.environment,
            fields=[i.field for i in issues],
        )
    else:
        logger.info("mpesa_configured", environment=mpesa_settings.environment)

    yield

    gateway = getattr(app.state, "payment_gateway", None)
    if gateway is not None:
        await gateway.aclose()
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="M-Pesa STK push payment lifecycle: initiation, callbacks, reconciliation and retries",
)

# 添加中间件（注意顺序：从下往上执行）
# 1. Request ID中间件（最先执行，为后续中间件提供request_id）
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)

# 2. CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)

# 注册路由
app.include_router(payments_routes.router, prefix="/api/v1")


@app.get("/", tags=["Root"])
async def root():
    """API根路径"""
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
            "redoc": "/redoc"
        },
        message="Welcome"
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点（含 M-Pesa 配置完整性）"""
    issues = mpesa_settings.validate_configuration()
    return success_response(
        data={
            "status": "healthy",
            "mpesa": {
                "environment": mpesa_settings.environment,
                "configured": not issues,
                "missing": [i.field for i in issues],
            },
        },
        message="OK",
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
