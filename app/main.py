# app/main.py
import logging, sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import Settings, settings
from app.core.exceptions import EscrowError
from app.db.session import build_engine, build_sessionmaker
from app.routers.orders import router as orders_router
from app.routers.wallets import router as wallets_router
from app.services.bootstrap_service import init_db
from app.services.escrow_service import EscrowService
from app.tasks.scheduler import build_scheduler, start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.CRITICAL)
    logging.getLogger("apscheduler").setLevel(logging.ERROR)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    # every state change and payout step is logged at INFO
    logging.getLogger("app.services").setLevel(logging.INFO)
    logging.getLogger("app.tasks").setLevel(logging.INFO)


def create_app(config: Settings = settings, engine=None, with_scheduler: bool | None = None) -> FastAPI:
    engine = engine or build_engine(config)
    sessionmaker = build_sessionmaker(engine)
    escrow = EscrowService(sessionmaker, config)
    if with_scheduler is None:
        with_scheduler = config.SCHEDULER_ENABLED

    app = FastAPI(
        title=config.APP_NAME,
        version=config.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = config
    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.escrow = escrow
    app.state.scheduler = build_scheduler(escrow, config) if with_scheduler else None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    app.include_router(orders_router)
    app.include_router(wallets_router)

    @app.on_event("startup")
    async def on_startup() -> None:
        await init_db(engine)
        if app.state.scheduler is not None:
            start_scheduler(app.state.scheduler)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        if app.state.scheduler is not None:
            stop_scheduler(app.state.scheduler)
        await engine.dispose()

    @app.get("/ping")
    async def ping():
        return {"ok": True, "env": config.APP_ENV}

    @app.get("/healthz")
    async def healthz():
        return {"status": "healthy"}

    return app


configure_logging()
app = create_app()
