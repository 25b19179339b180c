"""HTTP backend: global settings, uploads with temp storage, downloads and periodic cleanup."""
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, JSONResponse, Response
from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError

from .composite import CompositeResult, encode_result, mime_for
from .config import ServerConfig, load_server_config
from .contracts import DownloadRequest, UploadResult
from .errors import InvalidInputError, ModelUnavailableError, RenderingError
from .io import decode_image
from .model import ModelRegistry
from .pipeline import options_from_settings, process_image
from .settings_store import SettingsStore
from .storage import FileStore, validate_upload

logger = logging.getLogger(__name__)


def _message(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message})


def _validation_message(err: ValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e.get("loc", ()))
        parts.append(f"{loc}: {e.get('msg')}" if loc else str(e.get("msg")))
    return "Validation error: " + "; ".join(parts)


def _sniff_mime(path: Path) -> Optional[str]:
    try:
        with Image.open(path) as img:
            return Image.MIME.get(img.format or "")
    except (UnidentifiedImageError, OSError):
        return None


async def _cleanup_loop(files: FileStore, ttl_s: float, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            await asyncio.to_thread(files.remove_expired, ttl_s)
        except Exception:  # noqa: BLE001 - the sweep must outlive any single failure
            logger.exception("Error cleaning up files")


def create_app(
    config: Optional[ServerConfig] = None,
    settings_store: Optional[SettingsStore] = None,
    models: Optional[ModelRegistry] = None,
) -> FastAPI:
    config = config or load_server_config()
    files = FileStore(config.upload_dir, config.processed_dir)
    store = settings_store or SettingsStore(path=config.settings_path)
    registry = models or ModelRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Own the temp dirs, the cleanup task and the model handles."""
        files.ensure_dirs()
        task = asyncio.create_task(_cleanup_loop(files, config.cleanup_ttl_s, config.cleanup_interval_s))
        yield
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        registry.release_all()

    app = FastAPI(
        title="Cutout",
        description="Background removal settings, uploads and downloads",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.files = files
    app.state.settings = store
    app.state.models = registry

    @app.exception_handler(InvalidInputError)
    async def _invalid_input(_request: Request, exc: InvalidInputError):
        return _message(400, exc.message)

    @app.exception_handler(ModelUnavailableError)
    async def _model_unavailable(_request: Request, exc: ModelUnavailableError):
        logger.error("Model unavailable: %s", exc.message)
        return _message(503, exc.message)

    @app.exception_handler(RenderingError)
    async def _rendering(_request: Request, exc: RenderingError):
        logger.error("Rendering failed: %s", exc.message)
        return _message(500, "Failed to process image")

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "processing_mode": config.processing_mode,
            "models": registry.states(),
        }

    @app.get("/api/settings")
    async def get_settings():
        return store.get().to_wire()

    @app.post("/api/settings")
    async def update_settings(request: Request):
        try:
            body = await request.json()
        except ValueError:
            return _message(400, "Request body must be JSON")
        if not isinstance(body, dict):
            return _message(400, "Request body must be a JSON object")
        try:
            updated = store.update(body)
        except ValidationError as e:
            return _message(400, _validation_message(e))
        return updated.to_wire()

    @app.post("/api/upload")
    async def upload(image: Optional[UploadFile] = File(None)):
        if image is None:
            return _message(400, "No file uploaded")

        data = await image.read()
        validate_upload(
            data,
            image.content_type,
            max_bytes=config.max_upload_bytes,
            allowed_types=config.allowed_mime_types,
        )
        source = await run_in_threadpool(decode_image, data)

        upload_name = files.save_upload(data)
        processed_name = files.processed_name(image.filename or "image")

        if config.processing_mode == "segment":
            settings = store.get()
            options = await run_in_threadpool(options_from_settings, settings)
            handle = registry.get(settings.model)
            result, _labels, timings = await run_in_threadpool(process_image, source, handle, options)
            payload = await run_in_threadpool(encode_result, result, "png")
            files.save_processed(processed_name, payload)
            logger.info("Processed %s in %.3fs", processed_name, timings.total_s)
        else:
            logger.info("Server-side processing disabled; %s is a copy of the upload", processed_name)
            files.copy_to_processed(upload_name, processed_name)

        return UploadResult(
            original=f"/api/images/{upload_name}",
            processed=f"/api/images/processed/{processed_name}",
        ).model_dump()

    @app.get("/api/images/{filename}")
    async def get_original(filename: str):
        try:
            path = files.upload_path(filename)
        except FileNotFoundError:
            return _message(404, "Image not found")
        return FileResponse(path, media_type=_sniff_mime(path))

    @app.get("/api/images/processed/{filename}")
    async def get_processed(filename: str):
        try:
            path = files.processed_path(filename)
        except FileNotFoundError:
            return _message(404, "Processed image not found")
        return FileResponse(path, media_type=_sniff_mime(path))

    @app.post("/api/download")
    async def download(request: Request):
        try:
            req = DownloadRequest.model_validate(await request.json())
        except ValidationError as e:
            return _message(400, _validation_message(e))
        except ValueError:
            return _message(400, "Request body must be JSON")
        if not req.filepath:
            return _message(400, "No file path provided")

        try:
            path = files.processed_path(Path(req.filepath).name)
        except FileNotFoundError:
            return _message(404, "Processed image not found")

        fmt = req.options.format
        rgba = await run_in_threadpool(decode_image, path.read_bytes())
        stored = CompositeResult(rgba=rgba, backdrop_kind="stored")
        payload = await run_in_threadpool(encode_result, stored, fmt, req.options.quality)
        return Response(
            content=payload,
            media_type=mime_for(fmt),
            headers={"Content-Disposition": f'attachment; filename="background_removed.{fmt}"'},
        )

    return app
