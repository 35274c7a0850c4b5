"""
BLOOMFIT Exercise Service Router

Endpoints for camera setup, the exercise session lifecycle and the live
tracking stream (session events plus overlay frames).
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from core.websocket import connection_manager
from shared.utils import error_response, success_response

from .models import (
    CameraError,
    ExerciseState,
    SessionController,
    SessionPreconditionError,
    get_session_controller,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ============= Pydantic Models =============

class SwitchCameraRequest(BaseModel):
    facing_mode: str = "environment"


class StartSessionRequest(BaseModel):
    exercise_type: Optional[str] = None


# ============= Error Mapping =============

def camera_http_error(error: CameraError) -> HTTPException:
    return HTTPException(
        status_code=503,
        detail=error_response(error.user_message, error.kind.value, error.to_dict())
    )


def precondition_http_error(error: SessionPreconditionError) -> HTTPException:
    return HTTPException(status_code=409, detail=error_response(str(error), "session_precondition"))


# ============= Camera Endpoints =============

@router.post("/camera/init")
async def init_camera(controller: SessionController = Depends(get_session_controller)):
    """Acquire the camera, trying each capture configuration in turn."""
    try:
        state = await controller.init_camera()
    except CameraError as e:
        raise camera_http_error(e)
    return success_response({"camera_state": state.value}, "Camera ready")


@router.post("/camera/retry")
async def retry_camera(controller: SessionController = Depends(get_session_controller)):
    try:
        state = await controller.retry_camera()
    except SessionPreconditionError as e:
        raise precondition_http_error(e)
    except CameraError as e:
        raise camera_http_error(e)
    return success_response({"camera_state": state.value}, "Camera ready")


@router.post("/camera/switch")
async def switch_camera(
    request: SwitchCameraRequest,
    controller: SessionController = Depends(get_session_controller)
):
    if request.facing_mode not in ("user", "environment"):
        raise HTTPException(status_code=400, detail="facing_mode must be 'user' or 'environment'")
    try:
        state = await controller.switch_camera(request.facing_mode)
    except SessionPreconditionError as e:
        raise precondition_http_error(e)
    except CameraError as e:
        raise camera_http_error(e)
    return success_response({"camera_state": state.value, "facing_mode": request.facing_mode}, "Camera switched")


# ============= Session Endpoints =============

@router.post("/session/start")
async def start_session(
    request: Optional[StartSessionRequest] = None,
    controller: SessionController = Depends(get_session_controller)
):
    """
    Start an exercise session.

    Requires an active camera (409 otherwise). Starting from Paused begins
    a fresh session.
    """
    previous_type = controller.exercise_type
    if request is not None and request.exercise_type:
        if controller.exercise_state != ExerciseState.IDLE:
            raise HTTPException(status_code=409, detail="Exercise type can only change while idle")
        controller.exercise_type = request.exercise_type
    try:
        await controller.start()
    except SessionPreconditionError as e:
        controller.exercise_type = previous_type
        raise precondition_http_error(e)
    return success_response(controller.status(), "Exercise started")


@router.post("/session/pause")
async def pause_session(controller: SessionController = Depends(get_session_controller)):
    controller.pause()
    return success_response(controller.status(), "Exercise paused")


@router.post("/session/resume")
async def resume_session(controller: SessionController = Depends(get_session_controller)):
    controller.resume()
    return success_response(controller.status(), "Exercise resumed")


@router.post("/session/stop")
async def stop_session(controller: SessionController = Depends(get_session_controller)):
    """Stop the session and submit its summary. No-op when idle."""
    summary = await controller.stop()
    if summary is None:
        return success_response(None, "No exercise in progress")
    return success_response(
        {
            "summary": summary.model_dump(),
            "pending_submissions": len(controller.pending),
        },
        "Exercise completed"
    )


@router.get("/session/status")
async def session_status(controller: SessionController = Depends(get_session_controller)):
    return controller.status()


@router.post("/sessions/retry-pending")
async def retry_pending(controller: SessionController = Depends(get_session_controller)):
    """Resubmit session summaries whose earlier submission failed."""
    result = await controller.retry_pending()
    return success_response(result, "Pending sessions processed")


# ============= WebSocket Stream =============

@router.websocket("/ws/stream")
async def exercise_stream(websocket: WebSocket, controller: SessionController = Depends(get_session_controller)):
    """
    Live tracking stream.

    Pushes session events (CAMERA_STATE, SESSION_STATE, POSTURE_UPDATE,
    REP_COUNT, TIMER, NOTIFICATION) and FRAME events carrying the video
    frame with the skeleton overlay as base64 JPEG. Clients may send PING.
    """
    try:
        client = await connection_manager.connect(websocket)
    except ConnectionError:
        return

    queue = controller.subscribe()
    await connection_manager.send(client.client_id, {"type": "STATUS", **controller.status()})

    async def forward_events():
        while True:
            event = await queue.get()
            if not await connection_manager.send(client.client_id, event.to_dict()):
                break

    forwarder = asyncio.create_task(forward_events())
    try:
        while True:
            data = await websocket.receive_text()
            await connection_manager.handle_message(client.client_id, data)
    except WebSocketDisconnect:
        pass
    finally:
        forwarder.cancel()
        controller.unsubscribe(queue)
        connection_manager.disconnect(client.client_id)
