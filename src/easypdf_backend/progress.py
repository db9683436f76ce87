"""Push channel for job progress: streams job snapshots over a WebSocket."""

from __future__ import annotations

import asyncio
import logging

from fastapi import WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from .errors import EasyPDFError
from .job_manager import JobManager

logger = logging.getLogger(__name__)


async def stream_job_progress(websocket: WebSocket, manager: JobManager, job_id: str, interval: float) -> None:
    """
    Poll the job row every ``interval`` seconds and send each snapshot that
    differs from the previous one, until the job reaches a terminal state.

    The job row stays the source of truth; this channel only relays it.
    """
    await websocket.accept()
    last_sent = None
    try:
        while True:
            try:
                view = await run_in_threadpool(manager.get_status, job_id)
            except EasyPDFError as exc:
                logger.warning(f"Progress channel for job {job_id} closing: {exc.message}")
                await websocket.send_json({"type": "error", "detail": exc.message, "jobId": job_id})
                break

            snapshot = view.model_dump(mode="json", by_alias=True)
            if snapshot != last_sent:
                await websocket.send_json({"type": "progress", "job": snapshot})
                last_sent = snapshot
            if view.status.is_terminal:
                break
            await asyncio.sleep(interval)
    except WebSocketDisconnect:
        logger.debug(f"Progress client for job {job_id} disconnected")
        return
    await websocket.close()
