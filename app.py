import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse, PlainTextResponse, Response

from services.errors import InvalidRequest, PipelineError
from services.model_loader import ModelBundle, load_model_bundle
from services.tts_service import ParlerTTSService, SynthesisResult
from settings import ServerConfig

# Configuration
logging.basicConfig(
    level=os.getenv("PARLER_LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 0.5
NOT_FOUND_BODY = "404 Not Found"


async def _read_form_fields(request: Request) -> Dict[str, Any]:
    """Collect form fields as text/bytes. Later duplicates win."""
    try:
        form = await request.form()
    except Exception as e:
        raise HTTPException(status_code=400, detail="Invalid form body") from e

    fields: Dict[str, Any] = {}
    try:
        for name, value in form.multi_items():
            if hasattr(value, "read"):
                value = await value.read()
            fields[name] = value
    finally:
        await form.close()
    return fields


async def _await_unless_disconnected(request: Request, task: "asyncio.Task[SynthesisResult]") -> SynthesisResult:
    """Wait for generation, abandoning it if the client goes away."""
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("🔌 Client disconnected, cancelling generation")
                task.cancel()
                raise HTTPException(status_code=499, detail="Client disconnected")
    except asyncio.CancelledError:
        task.cancel()
        raise


def _build_api_router() -> APIRouter:
    router = APIRouter(prefix="/api")

    @router.post("/tts")
    async def generate_tts(request: Request):
        """Synthesize speech from form fields text/description/temperature/seed/top_p."""
        service: ParlerTTSService = request.app.state.tts_service
        fields = await _read_form_fields(request)

        try:
            task = asyncio.ensure_future(service.synthesize(fields))
            result = await _await_unless_disconnected(request, task)
        except InvalidRequest as e:
            logger.info(f"Rejected request: {e}")
            raise HTTPException(status_code=e.status_code, detail=str(e)) from e
        except PipelineError as e:
            logger.exception(f"❌ TTS generation failed: {e}")
            raise HTTPException(status_code=e.status_code, detail="Internal generation error") from e

        return Response(
            content=result.audio,
            media_type="audio/wav",
            headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
        )

    @router.get("/health", response_class=PlainTextResponse)
    async def health_check():
        """Health check endpoint"""
        return "OK"

    @router.get("/debug", response_class=PlainTextResponse)
    async def debug_endpoint():
        logger.info("Debug endpoint hit!")
        return "Debug endpoint working"

    return router


def _static_response(public_dir: Path, full_path: str):
    root = public_dir.resolve()
    candidate = (root / full_path).resolve()
    if candidate.is_relative_to(root):
        if candidate.is_dir():
            candidate = candidate / "index.html"
        if candidate.is_file():
            return FileResponse(candidate)

    index_file = root / "index.html"
    try:
        body = index_file.read_text(encoding="utf-8")
    except OSError:
        body = NOT_FOUND_BODY
    return HTMLResponse(body)


def create_app(
    settings: Optional[ServerConfig] = None,
    bundle_loader: Callable[[ServerConfig], ModelBundle] = load_model_bundle,
) -> FastAPI:
    settings = settings or ServerConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Load the model bundle before accepting requests; failure aborts startup."""
        logger.info("🔄 Loading model bundle...")
        loop = asyncio.get_running_loop()
        bundle = await loop.run_in_executor(None, bundle_loader, settings)
        app.state.tts_service = ParlerTTSService(bundle, settings)
        logger.info(f"🚀 Server ready on http://{settings.host}:{settings.port}")
        logger.info(f"Serving static files from: {settings.public_dir}/")
        yield
        app.state.tts_service.shutdown()
        logger.info("🛑 Parler TTS server shutting down")

    app = FastAPI(
        title="Parler TTS Server",
        description="Text + voice description to speech with Parler-TTS",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    app.include_router(_build_api_router())

    @app.get("/{full_path:path}", include_in_schema=False)
    async def serve_static(full_path: str):
        return _static_response(Path(settings.public_dir), full_path)

    return app


app = create_app()


if __name__ == "__main__":
    settings = ServerConfig()
    uvicorn.run(
        "app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=True
    )
