from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastmcp import FastMCP
from mcp.types import ToolAnnotations

from yt_relay.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    ProbeError,
    ValidationError,
)
from yt_relay.services.progress import LiveProgressCache
from yt_relay.worker import JobOrchestrator

_SECRET_SETTINGS = ("proxy_password", "cookies")


def _error(code: str, exc: Exception) -> dict[str, Any]:
    return {"error": code, "message": str(exc)}


def _public_settings(settings: dict[str, Any] | None) -> dict[str, Any]:
    if settings is None:
        return {}
    public = dict(settings)
    for key in _SECRET_SETTINGS:
        public[f"has_{key}"] = bool(public.pop(key, None))
    return public


class ToolRegistry:
    def __init__(self, orchestrator: JobOrchestrator, progress_cache: LiveProgressCache) -> None:
        self.orchestrator = orchestrator
        self.progress_cache = progress_cache

    def _with_live_progress(self, job: dict[str, Any]) -> dict[str, Any]:
        speed, eta = self.progress_cache.get(str(job["id"]))
        return {**job, "speed": speed, "eta": eta}

    def register(self, mcp: FastMCP) -> None:
        _ro = ToolAnnotations(readOnlyHint=True)
        _rw = ToolAnnotations(readOnlyHint=False)

        @mcp.tool(annotations=_rw)
        async def submit_download(
            user_id: str,
            url: str,
            format: str = "video",
            quality: str | None = None,
        ) -> dict[str, Any]:
            """Queue a video for download.

            Args:
                user_id: Owner of the new job
                url: YouTube video URL
                format: "audio" (mp3) or "video" (mp4)
                quality: Maximum video height such as "720p"; ignored for audio

            Returns:
                The queued job, or an error when the URL is rejected.
            """
            try:
                return await self.orchestrator.submit(user_id, url, format, quality)
            except ValidationError as exc:
                return _error("validation_failed", exc)
            except ProbeError as exc:
                return _error("probe_failed", exc)

        @mcp.tool(annotations=_ro)
        async def list_jobs(user_id: str) -> dict[str, Any]:
            items = [self._with_live_progress(job) for job in self.orchestrator.list_jobs(user_id)]
            return {"count": len(items), "items": items}

        @mcp.tool(annotations=_ro)
        async def job_status(user_id: str, job_id: str) -> dict[str, Any]:
            try:
                return self._with_live_progress(self.orchestrator.get_job(user_id, job_id))
            except JobNotFoundError:
                return {"error": "job_not_found", "job_id": job_id}

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False, idempotentHint=True))
        async def cancel_job(user_id: str, job_id: str) -> dict[str, Any]:
            try:
                return await self.orchestrator.cancel(user_id, job_id)
            except JobNotFoundError:
                return {"error": "job_not_found", "job_id": job_id}
            except InvalidTransitionError as exc:
                return _error("invalid_state", exc)

        @mcp.tool(annotations=_rw)
        async def retry_job(user_id: str, job_id: str) -> dict[str, Any]:
            """Restart a failed job from the beginning."""
            try:
                return await self.orchestrator.retry(user_id, job_id)
            except JobNotFoundError:
                return {"error": "job_not_found", "job_id": job_id}
            except InvalidTransitionError as exc:
                return _error("invalid_state", exc)

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=True))
        async def delete_job(user_id: str, job_id: str) -> dict[str, Any]:
            try:
                await self.orchestrator.delete(user_id, job_id)
            except JobNotFoundError:
                return {"error": "job_not_found", "job_id": job_id}
            except InvalidTransitionError as exc:
                return _error("invalid_state", exc)
            return {"success": True, "job_id": job_id}

        @mcp.tool(annotations=_rw)
        async def upload_job(user_id: str, job_id: str) -> dict[str, Any]:
            """Send a completed download to the configured remote endpoint."""
            try:
                job = await self.orchestrator.upload(user_id, job_id)
            except JobNotFoundError:
                return {"error": "job_not_found", "job_id": job_id}
            except (InvalidTransitionError, ValidationError) as exc:
                return _error("upload_rejected", exc)
            return {"success": True, "message": "Upload started", "job_id": job["id"], "file_size": job["file_size"]}

        @mcp.tool(annotations=_ro)
        async def get_settings(user_id: str) -> dict[str, Any]:
            return _public_settings(self.orchestrator.user_settings.get(user_id))

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False, idempotentHint=True))
        async def update_settings(
            user_id: str,
            remote_endpoint: str | None = None,
            auto_upload: bool | None = None,
            proxy_enabled: bool | None = None,
            proxy_type: str | None = None,
            proxy_host: str | None = None,
            proxy_port: int | None = None,
            proxy_username: str | None = None,
            proxy_password: str | None = None,
            cookies: str | None = None,
        ) -> dict[str, Any]:
            """Update remote upload, proxy and cookie settings. Omitted values are left unchanged."""
            changes = {
                key: value
                for key, value in {
                    "remote_endpoint": remote_endpoint,
                    "auto_upload": auto_upload,
                    "proxy_enabled": proxy_enabled,
                    "proxy_type": proxy_type,
                    "proxy_host": proxy_host,
                    "proxy_port": proxy_port,
                    "proxy_username": proxy_username,
                    "proxy_password": proxy_password,
                    "cookies": cookies,
                }.items()
                if value is not None
            }
            try:
                settings = self.orchestrator.update_settings(user_id, **changes)
            except ValidationError as exc:
                return _error("validation_failed", exc)
            return _public_settings(settings)

        @mcp.tool(annotations=_rw)
        async def test_remote_connection(user_id: str) -> dict[str, Any]:
            """Upload a 1MB test file to the configured remote endpoint."""
            result = await self.orchestrator.test_remote_connection(user_id)
            return asdict(result)
