"""
WebSocket handler for real-time job progress updates.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from swapflow.api.routes import get_runner
from swapflow.models.schemas import TERMINAL_STATUSES
from swapflow.services.job_runner import JobRunner

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])

TERMINAL_VALUES = {status.value for status in TERMINAL_STATUSES} | {"deleted"}
HEARTBEAT_SECONDS = 30.0


@router.websocket("/ws/{job_id}")
async def job_progress_websocket(
    websocket: WebSocket,
    job_id: str,
    runner: JobRunner = Depends(get_runner),
) -> None:
    """
    WebSocket endpoint for real-time job progress updates.

    Messages are JSON objects with status, progress, stage,
    external_status, message and timestamp. The connection closes once
    the job reaches a terminal status.

    Example client (Python):
        async with websockets.connect(f"ws://localhost:8802/ws/{job_id}") as ws:
            async for message in ws:
                data = json.loads(message)
                print(f"{data['status']}: {data['progress']}% - {data['message']}")

    Args:
        websocket: WebSocket connection
        job_id: Job identifier to subscribe to
        runner: Job runner whose store broadcasts updates
    """
    job_manager = runner.store

    job = await job_manager.get(job_id)
    if not job:
        await websocket.close(code=4004, reason=f"Job not found: {job_id}")
        return

    await websocket.accept()
    logger.info(f"WebSocket connected for job {job_id}")

    # Subscribe before sending the snapshot so no update is missed
    queue = job_manager.subscribe(job_id)

    try:
        await websocket.send_json({
            "job_id": job.id,
            "status": job.status.value,
            "progress": job.progress,
            "stage": job.current_stage,
            "external_status": job.external_status,
            "message": job.logs[-1] if job.logs else "Connected",
            "timestamp": job.created_at.isoformat(),
            "error": job.error_message,
            "output": job.output_payload if job.is_terminal else None,
        })
        if job.is_terminal:
            await websocket.close()
            return

        while True:
            try:
                message = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                await websocket.send_json(message)

                if message.get("status") in TERMINAL_VALUES:
                    await websocket.close()
                    break

            except asyncio.TimeoutError:
                await websocket.send_json({"type": "heartbeat"})

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for job {job_id}")
    finally:
        job_manager.unsubscribe(job_id, queue)
        logger.info(f"WebSocket closed for job {job_id}")
