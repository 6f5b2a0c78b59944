"""FastAPI app entrypoint."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from portal_contracts.api_version import API_VERSION

from .api.v1.chats import router as chats_router
from .logging_config import configure_logging
from .services.runtime import ChatRuntime, open_runtime
from .services.settings.config import Settings

# Load .env files if present (local dev convenience). In production, prefer real env vars.
from .services.settings.env import load_env


def _build_v1_router() -> APIRouter:
    v1 = APIRouter(prefix="/api/v1")

    @v1.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "api_version": API_VERSION}

    v1.include_router(chats_router)
    return v1


def create_app(settings: Settings | None = None, *, runtime: ChatRuntime | None = None) -> FastAPI:
    """Build the app. A prebuilt `runtime` is used as-is and not closed on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if runtime is not None:
            app.state.runtime = runtime
            yield
            return

        opened = await open_runtime(settings or Settings.from_env())
        app.state.runtime = opened
        try:
            yield
        finally:
            await opened.close()

    app = FastAPI(title="Portal Chat API", version=API_VERSION, lifespan=lifespan)

    # Allow the local desktop/web shell (Vite dev server) to call this API.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://127.0.0.1:5173",
            "http://localhost:5173",
            "tauri://localhost",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(_build_v1_router())
    return app


def main() -> None:
    import uvicorn

    load_env()
    configure_logging()
    uvicorn.run(create_app(), host="127.0.0.1", port=8000)


if __name__ == "__main__":
    main()
