import asyncio
import inspect
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles
from openai import AsyncOpenAI

from dal.guidance_dal import GuidanceDAL
from dal.jsonl_recorder import JsonlRecorder
from routes.guidance_route import router as guidance_router
from routes.guidance_ws import router as guidance_ws_router
from services.capture.screen_capture import ScreenCapture
from services.guidance.step_orchestrator import StepOrchestrator
from services.openai.step_model import OpenAIStepModel
from utils.database_cleaner import DatabaseCleaner
from utils.database_init import AsyncDatabaseInitializer
from utils.settings import GuidanceSettings

BASE_DIR = Path(__file__).resolve().parent
PUBLIC_DIR = BASE_DIR / "public"

from dotenv import load_dotenv

load_dotenv()  # Load environment variables from .env file if present

LOGGER = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan manager to initialize:
      - the recorder (SQLite at DATABASE_DIR/guidance.db, or JSONL files)
      - the OpenAI async client and the model port built on it
      - the screen capture port
      - the step orchestrator
    and attach them to `app.state`.
    """
    settings: GuidanceSettings = app.state.settings

    cleanup_task = None
    if settings.structured_logs:
        if settings.database_dir is None:
            raise RuntimeError("DATABASE_DIR must be set to store structured guidance logs")
        recorder = JsonlRecorder(settings.database_dir, max_log_size_mb=settings.max_log_size_mb)
        app.state.guidance_dal = None
    else:
        db_initializer = AsyncDatabaseInitializer(
            settings.database_dir, reset_on_start=settings.database_reset_on_start
        )
        await db_initializer.ensure_database()
        app.state.db_initializer = db_initializer
        recorder = GuidanceDAL(db_initializer)
        app.state.guidance_dal = recorder
        if settings.log_retention_days > 0:
            cleaner = DatabaseCleaner(db_initializer, retention_seconds=settings.log_retention_days * 86_400)
            cleanup_task = asyncio.create_task(cleaner.run_periodic_cleanup())
    app.state.recorder = recorder

    # Initialize OpenAI async client
    openai_api_key = os.getenv("OPENAI_API_KEY")
    if not openai_api_key:
        raise RuntimeError("OPENAI_API_KEY environment variable is not set")

    try:
        openai_client = AsyncOpenAI(base_url=settings.openai_base_url, timeout=settings.model_timeout_seconds)
    except Exception as exc:
        raise RuntimeError("Failed to initialize OpenAI Async client") from exc

    app.state.openai_client = openai_client

    model = OpenAIStepModel(
        openai_client,
        model=settings.openai_model,
        temperature=settings.openai_temperature,
        max_output_tokens=settings.openai_max_output_tokens,
    )
    app.state.orchestrator = StepOrchestrator(ScreenCapture.from_settings(settings), model, recorder)
    LOGGER.info(
        "Guidance service ready (model=%s, real_capture=%s, recorder=%s)",
        settings.openai_model,
        settings.use_real_capture,
        type(recorder).__name__,
    )

    try:
        yield
    finally:
        if cleanup_task is not None:
            cleanup_task.cancel()
            try:
                await cleanup_task
            except asyncio.CancelledError:
                pass

        orchestrator = getattr(app.state, "orchestrator", None)
        if orchestrator is not None:
            await orchestrator.drain()

        # Gracefully close the OpenAI client if it exposes a close/aclose method.
        client = getattr(app.state, "openai_client", None)
        if client is not None:
            aclose = getattr(client, "aclose", None) or getattr(client, "close", None)
            if aclose is not None:
                try:
                    if inspect.iscoroutinefunction(aclose):
                        await aclose()
                    else:
                        result = aclose()
                        if inspect.isawaitable(result):
                            await result
                except Exception:
                    LOGGER.debug("Ignoring error while closing the OpenAI client", exc_info=True)


def create_app(settings: GuidanceSettings | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application instance.
    """
    settings = settings or GuidanceSettings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings

    # Serve static assets from the public directory, if it exists.
    if PUBLIC_DIR.exists():
        app.mount("/public", StaticFiles(directory=PUBLIC_DIR), name="public")

    @app.get("/", include_in_schema=False)
    async def serve_index():
        """
        Serve the overlay frontend index page from the public directory.
        """
        index_path = PUBLIC_DIR / "index.html"
        if not index_path.exists():
            raise HTTPException(status_code=404, detail="Frontend not found")
        return FileResponse(index_path)

    @app.get("/health")
    async def health(request: Request):
        """
        Simple health check that reports which guidance components are wired up.
        """
        state = request.app.state
        has_openai = getattr(state, "openai_client", None) is not None
        return {
            "ok": True,
            "db_initialized": getattr(state, "guidance_dal", None) is not None,
            "recorder": type(getattr(state, "recorder", None)).__name__ if hasattr(state, "recorder") else None,
            "openai_available": has_openai,
            "orchestrator_ready": getattr(state, "orchestrator", None) is not None,
        }

    # Register application routers
    app.include_router(guidance_router)
    app.include_router(guidance_ws_router)

    return app


app = create_app()
