from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from quotecast.core.env_loader import load_project_env

load_project_env()

from quotecast.api.routes_chat import router as chat_router
from quotecast.api.routes_health import router as health_router
from quotecast.core.logger import get_logger
from quotecast.services.container import ServiceContainer, build_container

logger = get_logger("quotecast.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # cancels in-flight generations
    await app.state.container.aclose()
    logger.info("services closed")


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    app = FastAPI(title="QuoteCast", version="0.1.0", lifespan=lifespan)
    app.state.container = container or build_container()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )

    app.include_router(health_router)
    app.include_router(chat_router)
    return app


app = create_app()
