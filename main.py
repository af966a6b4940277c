import logging
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import BackgroundTasks, FastAPI, File, Request, UploadFile
from fastapi.responses import JSONResponse

import config
from catalog import LocalCatalogStore, MetadataUploadHook
from errors import UploadFailure
from extractors import guess_mime
from jobs import JobTracker
from models import ImportJob, MediaUploadResponse, RefreshResponse, UploadResponse
from orchestrator import ImportOrchestrator
from runner import ProcessRunner

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def is_zip(file: UploadFile) -> bool:
    return Path(file.filename or "").suffix.lower() == ".zip"


async def stage_uploads(files: List[UploadFile], target_dir: Path) -> List[Path]:
    """Write uploaded files into target_dir in chunks and return their paths."""
    target_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for file in files:
        path = target_dir / Path(file.filename or "upload").name
        with open(path, "wb") as f:
            while True:
                chunk = await file.read(config.UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                f.write(chunk)
        paths.append(path)
        logger.info(f"Saved uploaded file: {file.filename}")
    return paths


def create_app(
    store: Optional[LocalCatalogStore] = None,
    runner: Optional[ProcessRunner] = None,
    tracker: Optional[JobTracker] = None,
    temp_dir: Optional[Path] = None,
) -> FastAPI:
    """
    Build the importer API.

    Anything not passed in is created on startup from config.
    """
    temp_root = Path(temp_dir) if temp_dir else config.TEMP_DIR

    def install(app: FastAPI, store: LocalCatalogStore, runner: ProcessRunner, tracker: JobTracker) -> None:
        store.add_upload_hook(MetadataUploadHook(runner))
        app.state.store = store
        app.state.runner = runner
        app.state.tracker = tracker
        app.state.orchestrator = ImportOrchestrator(store, runner, tracker)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the catalog on startup, clean up staged uploads on shutdown."""
        temp_root.mkdir(parents=True, exist_ok=True)
        if not hasattr(app.state, "orchestrator"):
            logger.info(f"Starting up: opening catalog {config.CATALOG_PATH}")
            install(
                app,
                LocalCatalogStore(config.CATALOG_PATH, config.PUBLIC_DIR, config.UPLOADS_DIR),
                ProcessRunner(),
                JobTracker(),
            )

        yield

        logger.info("Shutting down: Cleaning up temporary files...")
        if temp_root.exists():
            shutil.rmtree(temp_root, ignore_errors=True)

    app = FastAPI(
        title="Instagram Archive Importer API",
        description="Import Instagram data exports into the media catalog",
        version="1.0.0",
        lifespan=lifespan,
    )
    if store is not None:
        install(app, store, runner or ProcessRunner(), tracker or JobTracker())

    def start_import(request: Request, background_tasks: BackgroundTasks, archives: List[Path],
                     job_dir: Path, job_id: str) -> None:
        background_tasks.add_task(request.app.state.orchestrator.run, job_id, archives, job_dir)
        logger.info(f"Created job {job_id} with {len(archives)} archive(s)")

    @app.post("/instagram-import", response_model=UploadResponse)
    async def instagram_import(
        request: Request,
        background_tasks: BackgroundTasks,
        files: Optional[List[UploadFile]] = File(None),
    ):
        """
        Upload one or more Instagram export zips and start an import job.

        Returns:
            Job ID for polling /instagram-import/status
        """
        tracker: JobTracker = request.app.state.tracker
        tracker.prune()

        if not files:
            return error_response(400, "No files provided")
        for file in files:
            if not is_zip(file):
                return error_response(400, f"Unsupported file type: {file.filename}. Only .zip archives are allowed.")

        job = tracker.create()
        job_dir = temp_root / job.id
        archives = await stage_uploads(files, job_dir / "uploads")
        start_import(request, background_tasks, archives, job_dir, job.id)
        return UploadResponse(job_id=job.id)

    @app.get("/instagram-import/status", response_model=ImportJob)
    async def instagram_import_status(request: Request, job: Optional[str] = None):
        """Snapshot of an import job's stage, progress, stats and recent messages."""
        if not job:
            return error_response(400, "Missing job parameter")
        snapshot = request.app.state.tracker.get(job)
        if snapshot is None:
            return error_response(404, "Job not found")
        return snapshot

    @app.post("/upload", response_model=MediaUploadResponse)
    async def upload_media(
        request: Request,
        background_tasks: BackgroundTasks,
        files: Optional[List[UploadFile]] = File(None),
    ):
        """
        Upload media into the catalog, filling caption/alt text from embedded metadata.

        Zip archives start an import job instead.
        """
        if not files:
            return error_response(400, "No files provided")

        store: LocalCatalogStore = request.app.state.store
        tracker: JobTracker = request.app.state.tracker
        response = MediaUploadResponse()

        zips = [file for file in files if is_zip(file)]
        if zips:
            tracker.prune()
            job = tracker.create()
            job_dir = temp_root / job.id
            archives = await stage_uploads(zips, job_dir / "uploads")
            start_import(request, background_tasks, archives, job_dir, job.id)
            response.job_id = job.id

        media_files = [file for file in files if not is_zip(file)]
        if media_files:
            temp_root.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix="upload_", dir=temp_root))
            try:
                for path, file in zip(await stage_uploads(media_files, staging), media_files):
                    mime = file.content_type
                    if not mime or mime == "application/octet-stream":
                        mime = guess_mime(path.name)
                    try:
                        response.files.append(store.upload_file({"name": path.name, "mime": mime}, path))
                    except UploadFailure as e:
                        logger.error(f"Upload failed for {path.name}: {e}")
                        return error_response(500, str(e))
            finally:
                shutil.rmtree(staging, ignore_errors=True)
        return response

    @app.api_route("/articles/refresh", methods=["GET", "POST"], response_model=RefreshResponse)
    async def refresh_articles(request: Request):
        """Republish every article so relation changes show up in the public API."""
        summary = request.app.state.orchestrator.refresh_articles()
        logger.info(f"Refreshed articles: {summary}")
        return RefreshResponse(**summary)

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        tracker: Optional[JobTracker] = getattr(request.app.state, "tracker", None)
        return {
            "status": "healthy",
            "catalog_loaded": tracker is not None,
            "active_jobs": tracker.active_count() if tracker else 0,
        }

    return app


app = create_app()


def main():
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
