import logging
from uuid import UUID

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

router = APIRouter(tags=["realtime"])

logger = logging.getLogger(__name__)

@router.websocket("/ws/pipeline-runs/{run_id}")
async def pipeline_run_updates(websocket: WebSocket, run_id: UUID):
    """
    Push status changes of one pipeline run. Client messages are ignored;
    the read loop only notices the disconnect.
    """
    hub = websocket.app.state.hub
    await websocket.accept()
    await hub.subscribe(run_id, websocket)
    logger.info(f"Websocket subscribed to pipeline run {run_id}")

    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"Websocket for pipeline run {run_id} disconnected")
    finally:
        await hub.unsubscribe(run_id, websocket)
