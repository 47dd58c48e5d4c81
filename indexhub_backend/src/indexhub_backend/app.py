"""IndexHub 后端核心骨架

- FastAPI 实例
- JobScheduler 调度器与 ReconciliationEngine 对账引擎集成（应用启动/关闭生命周期）
- 启动时先做崩溃恢复，再开始第一次调度
- RESTful API 接口
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import state
from .api.v1 import router as api_v1_router
from .config.settings import Settings, get_settings
from .errors import IndexHubError
from .models.entities import DatabaseManager
from .pipelines import CommandIndexPipeline
from .providers import build_default_registry
from .reconciliation import ReconciliationEngine
from .scheduling import JobRunLedger, JobScheduler
from .utils.logging import setup_logging

logger = setup_logging()


def build_components(settings: Settings) -> JobScheduler:
    """按配置组装存储、对账引擎、任务流水与调度器，并发布到共享状态"""
    db_path = Path(settings.storage.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db_manager = DatabaseManager.get_instance(str(db_path))

    registry = build_default_registry(settings.providers)
    engine = ReconciliationEngine(registry, db_manager)
    engine.seed_document_providers(
        (preset.name, preset.url) for preset in settings.presets
    )
    ledger = JobRunLedger(db_manager, log_limit_bytes=settings.pipeline.log_limit_bytes)
    pipeline = CommandIndexPipeline(
        settings.pipeline.command, working_dir=settings.pipeline.working_dir
    )
    scheduler = JobScheduler(
        ledger,
        pipeline,
        engine,
        db_manager,
        max_in_flight=settings.scheduler.max_in_flight,
        refresh_interval_seconds=settings.scheduler.refresh_interval_seconds,
        tick_interval_seconds=settings.scheduler.tick_interval_seconds,
        reconcile_interval_seconds=settings.scheduler.reconcile_interval_seconds,
        orphan_retention_days=settings.retention.orphan_retention_days,
        timezone_name=settings.scheduler.timezone,
    )

    state.set_registry(registry)
    state.set_engine(engine)
    state.set_scheduler(scheduler)
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:  # noqa: D401 (fastapi 兼容)
    """应用生命周期：启动调度器 & 关闭清理。"""
    logger.info("Application starting ...")

    # 解析配置文件（尽早进行，以便初始化数据库路径等依赖）
    settings = get_settings()

    try:
        scheduler = build_components(settings)
        recovered = scheduler.recover()
        scheduler.start()
        logger.info("JobScheduler started, recovered %d dangling runs", recovered)
    except Exception as exc:
        logger.exception("Failed to initialise scheduler: %s", exc)
        raise

    logger.info("Application started")

    try:
        yield
    finally:
        logger.info("Application shutting down ...")
        await scheduler.stop()
        logger.info("JobScheduler stopped.")
        state.set_scheduler(None)
        state.set_engine(None)
        state.set_registry(None)


app = FastAPI(
    title="IndexHub Backend",
    description="IndexHub 代码仓库与文档索引编排服务 API",
    version="1.0.0",
    lifespan=lifespan,
)

# 添加 CORS 支持
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # 在生产环境中应该限制为具体域名
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(IndexHubError)
async def handle_indexhub_error(request: Request, exc: IndexHubError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message},
    )


# 注册 API 路由
app.include_router(api_v1_router)


@app.get("/", summary="健康检查 / Hello")
async def root():
    return {"message": "Hello IndexHub"}


def main() -> None:  # pragma: no cover
    import uvicorn

    uvicorn.run("indexhub_backend.app:app", host="0.0.0.0", port=8000)


# 可选：uvicorn 直接运行入口
if __name__ == "__main__":  # pragma: no cover
    main()
