"""FastAPI application factory and runtime wiring."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from roleforge.config import ConfigSource
from roleforge.embedding import Embedder, HttpEmbedder
from roleforge.llm import LLM
from roleforge.memory.retriever import MemoryRetriever
from roleforge.memory.store import MemoryStore
from roleforge.pipeline.orchestrator import Orchestrator
from roleforge.pipeline.vectorization import VectorizationAgent
from roleforge.routes import router
from roleforge.storage import Storage

load_dotenv(Path(__file__).parent.parent / ".env")

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


@dataclass
class Runtime:
    """Everything a request handler needs, built once per app."""

    storage: Storage
    config: ConfigSource
    memory: MemoryStore
    retriever: MemoryRetriever
    vectorizer: VectorizationAgent
    orchestrator: Orchestrator


def build_runtime(
    data_dir: Path, *, llm: LLM | None = None, embedder: Embedder | None = None
) -> Runtime:
    storage = Storage(data_dir)
    config = ConfigSource(data_dir / "config.json")
    settings = config.load()
    memory = MemoryStore(
        data_dir / "vectors",
        embedder or HttpEmbedder.from_config(settings.embedding),
        bulk_delete_threshold=settings.vector.bulk_delete_threshold,
        audit_log=data_dir / "vector_audit.jsonl",
    )
    retriever = MemoryRetriever(memory, config, storage, storage, storage)
    vectorizer = VectorizationAgent(storage, memory, config)
    orchestrator = Orchestrator(
        storage=storage, config=config, retriever=retriever, vectorizer=vectorizer, llm=llm
    )
    return Runtime(storage, config, memory, retriever, vectorizer, orchestrator)


def create_app(
    data_dir: Path | None = None,
    *,
    llm: LLM | None = None,
    embedder: Embedder | None = None,
) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    runtime = build_runtime(resolved, llm=llm, embedder=embedder)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Let in-flight vectorization finish before the process exits
        await runtime.orchestrator.wait_for_background()
        logger.info("Background tasks drained")

    app = FastAPI(title="RoleForge", lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
