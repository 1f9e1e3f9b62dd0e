"""Main FastAPI application."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lumi import __version__
from lumi.api.endpoints import router
from lumi.runtime import Runtime, build_runtime
from lumi.utils.logging import LogConfig, setup_logging
from lumi.utils.settings import load_settings


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Create the API application around a runtime, building one from the environment if needed."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.runtime.aclose()

    app = FastAPI(
        title="Lumi Agent Runtime",
        description=(
            "Runs LLM agents against OpenAI, Anthropic, Gemini and Ollama, executing "
            "the tools they request and coordinating group conversations."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Conversation", "description": "Create conversations and exchange messages with agents."},
            {"name": "Agents", "description": "Agent configurations."},
            {"name": "Tools", "description": "Registered tools and their argument contracts."},
            {"name": "Audit", "description": "Tool-call log and execution sessions."},
            {"name": "Health", "description": "Service health monitoring and status checks."},
        ],
    )
    app.state.runtime = runtime or build_runtime()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    setup_logging(LogConfig(level=settings.log_level))
    uvicorn.run(create_app(build_runtime(settings)), host="0.0.0.0", port=8000, log_level="info")
