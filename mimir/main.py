"""FastAPI entry-point exposing the delegation engine."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from mimir.api.agents import router as agents_router
from mimir.api.query import router as query_router
from mimir.api.traces import router as traces_router
from mimir.config import config
from mimir.runtime import get_agent_registry, get_llm_pool

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _init_logging() -> None:
    logging.basicConfig(level=config.log_level.upper(), format=LOG_FORMAT)
    for noisy in ("httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    _init_logging()
    registry = get_agent_registry()
    if not get_llm_pool().is_registered(config.default_model):
        logger.warning("No completion backend configured; queries will fail until OPENAI_API_KEY is set")
    logger.info(
        "Mimir started (%s) with agents: %s",
        config.environment,
        ", ".join(definition.name for definition in registry.list_definitions()),
    )
    yield
    registry.reset()


app = FastAPI(title="Mimir Delegation Engine", lifespan=lifespan)
app.include_router(query_router)
app.include_router(traces_router)
app.include_router(agents_router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
