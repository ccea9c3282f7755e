import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from controllers.selfie_controller import SelfieController
from routes.mcp_route import router as mcp_router
from services.realtime.session_registry import SessionRegistry
from services.storage.s3_uploader import S3Uploader
from services.workflow_template import NodeAddresses, WorkflowTemplate
from utils.errors import ConfigError, SessionNotFoundError
from utils.settings import Settings, load_settings

load_dotenv()  # Load environment variables from .env file if present

LOGGER = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


async def build_state(app: FastAPI, settings: Settings) -> None:
    """
    Attach shared services to `app.state`:
      - the validated settings
      - the workflow template (load failure is fatal)
      - the session registry
      - the optional S3 uploader
      - the selfie tool controller
    """
    app.state.settings = settings
    app.state.workflow_template = await WorkflowTemplate.load(
        settings.workflow_path, NodeAddresses.from_settings(settings)
    )
    app.state.session_registry = SessionRegistry()
    app.state.uploader = S3Uploader(settings.s3) if settings.s3_upload_enabled and settings.s3 else None
    app.state.selfie_controller = SelfieController(
        settings.comfyui_url,
        app.state.workflow_template,
        app.state.session_registry,
        uploader=app.state.uploader,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = getattr(app.state, "settings", None) or load_settings()
    configure_logging(settings.log_level)
    await build_state(app, settings)
    try:
        yield
    finally:
        app.state.session_registry.close_all()
        if app.state.uploader is not None:
            await app.state.uploader.aclose()


async def session_not_found_handler(_: Request, exc: SessionNotFoundError):
    return PlainTextResponse("No transport found for sessionId", status_code=400)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure the FastAPI application instance.
    """
    app = FastAPI(lifespan=lifespan)
    if settings is not None:
        app.state.settings = settings

    app.add_exception_handler(SessionNotFoundError, session_not_found_handler)

    @app.get("/health")
    async def health(request: Request):
        """
        Report open sessions and which optional services are configured.
        """
        state = request.app.state
        registry = getattr(state, "session_registry", None)
        return {
            "ok": True,
            "sessions": len(registry) if registry is not None else 0,
            "storage_enabled": getattr(state, "uploader", None) is not None,
            "template_loaded": getattr(state, "workflow_template", None) is not None,
        }

    app.include_router(mcp_router)

    return app


def main() -> None:
    try:
        settings = load_settings()
    except ConfigError as exc:
        configure_logging("ERROR")
        LOGGER.critical("FATAL: %s", exc)
        sys.exit(1)
    configure_logging(settings.log_level)
    # A template that fails to load aborts lifespan startup, before the socket is bound.
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


app = create_app()


if __name__ == "__main__":
    main()
