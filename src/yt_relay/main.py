from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import uvicorn
from fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, Response
from starlette.routing import Mount, Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from yt_relay.config import Settings, load_settings
from yt_relay.db.database import Database
from yt_relay.db.jobs import JobsRepository
from yt_relay.db.user_settings import UserSettingsRepository
from yt_relay.errors import JobNotFoundError
from yt_relay.mcp_tools import ToolRegistry
from yt_relay.services.broadcaster import Broadcaster
from yt_relay.services.downloader import YtDlpFetcher
from yt_relay.services.progress import LiveProgressCache
from yt_relay.services.reclaim import DiskReclaimer
from yt_relay.services.resumable_upload import ResumableUploadClient
from yt_relay.state_machine import JobStateMachine
from yt_relay.utils.naming import remote_filename
from yt_relay.worker import JobOrchestrator

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
logger = logging.getLogger(__name__)

# WebSocket close code for a policy violation (no user identity supplied).
POLICY_VIOLATION = 1008


class AppRuntime:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.database = Database(settings.database_path)
        self.jobs = JobsRepository(self.database)
        self.user_settings = UserSettingsRepository(self.database)

        self.broadcaster = Broadcaster()
        self.progress_cache = LiveProgressCache(settings.progress_cache_size)
        self.state_machine = JobStateMachine(
            jobs=self.jobs,
            broadcaster=self.broadcaster,
            progress_cache=self.progress_cache,
            downloads_dir=settings.downloads_dir,
        )
        self.fetcher = YtDlpFetcher(
            settings.downloads_dir,
            binary=settings.ytdlp_binary,
            probe_timeout_seconds=settings.probe_timeout_seconds,
            fetch_timeout_seconds=settings.fetch_timeout_seconds,
        )
        self.reclaimer = DiskReclaimer(self.jobs, settings.downloads_dir, settings.min_free_bytes)
        self.orchestrator = JobOrchestrator(
            jobs=self.jobs,
            user_settings=self.user_settings,
            state_machine=self.state_machine,
            fetcher=self.fetcher,
            reclaimer=self.reclaimer,
            uploader_factory=self.make_uploader,
            cookies_dir=settings.cookies_dir,
        )

    def make_uploader(self, endpoint: str) -> ResumableUploadClient:
        return ResumableUploadClient(
            endpoint,
            chunk_size=self.settings.upload_chunk_size,
            timeout_seconds=self.settings.upload_timeout_seconds,
        )

    async def startup(self) -> None:
        await self.orchestrator.recover_interrupted()

    async def close(self) -> None:
        await self.orchestrator.close()
        self.database.close()


def create_app(runtime: AppRuntime) -> Starlette:
    settings = runtime.settings
    mcp = FastMCP(name="yt-relay")
    ToolRegistry(runtime.orchestrator, runtime.progress_cache).register(mcp)
    mcp_app = mcp.http_app(path=settings.mcp_path)

    async def health(_: Request) -> JSONResponse:
        return JSONResponse(
            {
                "ok": True,
                "active_jobs": runtime.orchestrator.active_jobs,
                "realtime_channels": runtime.broadcaster.channel_count(),
                "db_path": str(settings.database_path),
                "mcp_path": settings.mcp_path,
            }
        )

    async def realtime(websocket: WebSocket) -> None:
        user_id = websocket.query_params.get("userId")
        if not user_id:
            await websocket.close(code=POLICY_VIOLATION)
            return

        await websocket.accept()
        runtime.broadcaster.register(user_id, websocket)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            runtime.broadcaster.unregister(user_id, websocket)

    async def download_file(request: Request) -> Response:
        job_id = request.path_params["job_id"]
        user_id = request.query_params.get("userId") or ""
        try:
            job = runtime.orchestrator.get_job(user_id, job_id)
        except JobNotFoundError:
            return JSONResponse({"message": "Job not found"}, status_code=404)
        if job["status"] != "completed":
            return JSONResponse({"message": "Job is not completed yet"}, status_code=400)

        file_path = job.get("file_path")
        if not file_path or not Path(file_path).is_file():
            return JSONResponse({"message": "File not found on server"}, status_code=404)

        return FileResponse(
            file_path,
            media_type="audio/mpeg" if job["kind"] == "audio" else "video/mp4",
            filename=remote_filename(job.get("title"), job["kind"]),
        )

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with mcp_app.lifespan(app):
            await runtime.startup()
            try:
                yield
            finally:
                await runtime.close()

    return Starlette(
        routes=[
            Route(settings.health_path, health, methods=["GET"]),
            WebSocketRoute(settings.ws_path, realtime),
            Route("/jobs/{job_id}/file", download_file, methods=["GET"]),
            Mount("/", app=mcp_app),
        ],
        lifespan=lifespan,
    )


def cli() -> None:
    settings = load_settings()
    runtime = AppRuntime(settings)
    app = create_app(runtime)
    logger.info("Starting yt-relay on %s:%s (MCP %s, realtime %s)", settings.host, settings.port, settings.mcp_path, settings.ws_path)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    cli()
