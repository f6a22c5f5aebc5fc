"""
KINDRED LOCAL SERVER

Host surface for the chat screen. One TurnOrchestrator per process.

    POST /api/messages             submit text (optionally with an image or video reference)
    POST /api/sessions             archive the current session, start a new one
    POST /api/image-gen/confirm    generate the pending picture
    POST /api/image-gen/cancel     discard the pending picture
    POST /api/voice/{action}       start | stop | cancel | toggle
    GET  /api/state                current ChatState snapshot
    WS   /ws                       every ChatState change, as JSON; accepts commands

The orchestrator answers asynchronously: POST /api/messages returns as soon
as the turn has been accepted, the reply arrives through /ws.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from kindred import __version__
from kindred.anniversaries import SqliteAnniversaryStore
from kindred.attachments import FfmpegFrameExtractor, FileImageEncoder
from kindred.avatar import build_avatar_driver
from kindred.chat_store import SqliteChatStore
from kindred.config import Config, get_config
from kindred.crisis import CrisisMonitor, build_crisis_notifiers
from kindred.embeddings import build_embedder
from kindred.errors import KindredError
from kindred.image_gen import HttpImageGenGateway
from kindred.llm_gateway import OllamaGateway
from kindred.memory_store import SqliteMemoryService
from kindred.message_builder import MessageBuilder
from kindred.orchestrator import TurnOrchestrator
from kindred.retrieval import MemoryRetrievalCoordinator
from kindred.signals import SignalProcessor
from kindred.speech import WhisperSpeechRecognizer

logger = logging.getLogger(__name__)


# ============================================================================
# REQUEST BODIES
# ============================================================================

class MessageRequest(BaseModel):
    text: str = ""
    image: Optional[str] = None
    video: Optional[str] = None
    max_frames: Optional[int] = None


# ============================================================================
# WIRING
# ============================================================================

def build_orchestrator(config: Config) -> TurnOrchestrator:
    """Construct every adapter from config, once."""
    data_dir = Path(config.get("system.data_dir", "data"))
    data_dir.mkdir(parents=True, exist_ok=True)

    chat_store = SqliteChatStore(data_dir / "chat.db")
    memory = SqliteMemoryService(build_embedder(config), data_dir / "memory.db")
    retrieval_config = config.retrieval()
    flags = config.features()

    image_gen = HttpImageGenGateway.from_config(config)
    return TurnOrchestrator(
        persistence=chat_store,
        llm=OllamaGateway.from_config(config),
        retrieval=MemoryRetrievalCoordinator(
            memory,
            config=retrieval_config,
            flags=flags,
            history_source=chat_store.recent,
        ),
        builder=MessageBuilder(config.persona(), vision_detail=config.get("vision.detail", "auto")),
        signals=SignalProcessor(),
        crisis=CrisisMonitor(build_crisis_notifiers(config)),
        avatar=build_avatar_driver(config),
        speech=WhisperSpeechRecognizer.from_config(config),
        image_encoder=FileImageEncoder(),
        frame_extractor=FfmpegFrameExtractor(),
        image_gen=image_gen if image_gen.configured else None,
        anniversaries=SqliteAnniversaryStore(data_dir / "chat.db"),
        retrieval_config=retrieval_config,
        flags=flags,
        max_video_frames=int(config.get("vision.max_video_frames", 6)),
    )


async def handle_command(orchestrator: TurnOrchestrator, command: dict) -> None:
    """Commands a WebSocket client may send."""
    action = command.get("action")
    if action == "submit":
        text = command.get("text", "")
        if command.get("image"):
            orchestrator.submit_with_image(text, command["image"])
        elif command.get("video"):
            orchestrator.submit_with_video(text, command["video"], command.get("max_frames"))
        else:
            orchestrator.submit(text)
    elif action == "new_session":
        await orchestrator.start_new_session()
    elif action == "confirm_image":
        await orchestrator.confirm_image_generation()
    elif action == "cancel_image":
        orchestrator.cancel_image_generation()
    elif action == "voice_start":
        await orchestrator.start_voice_input()
    elif action == "voice_stop":
        await orchestrator.stop_voice_input()
    elif action == "voice_cancel":
        await orchestrator.cancel_voice_input()
    elif action == "clear_error":
        orchestrator.clear_error()
    elif action == "clear_warning":
        orchestrator.clear_warning()
    else:
        raise ValueError(f"unknown action: {action}")


# ============================================================================
# APP
# ============================================================================

def create_app(orchestrator: Optional[TurnOrchestrator] = None, config: Optional[Config] = None) -> FastAPI:
    holder = {"orchestrator": orchestrator}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if holder["orchestrator"] is None:
            holder["orchestrator"] = build_orchestrator(config or get_config())
        session_id = await holder["orchestrator"].start()
        logger.info(f"[SERVER] Ready (session {session_id})")
        try:
            yield
        finally:
            await holder["orchestrator"].close()

    app = FastAPI(title="Kindred", version=__version__, lifespan=lifespan)

    def current() -> TurnOrchestrator:
        if holder["orchestrator"] is None:
            raise HTTPException(status_code=503, detail="Not ready")
        return holder["orchestrator"]

    @app.get("/api/state")
    async def get_state():
        return current().state.value.to_dict()

    @app.post("/api/messages", status_code=202)
    async def post_message(body: MessageRequest):
        orch = current()
        try:
            if body.image:
                orch.submit_with_image(body.text, body.image)
            elif body.video:
                orch.submit_with_video(body.text, body.video, body.max_frames)
            else:
                orch.submit(body.text)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"status": "accepted", "request_id": orch.current_request_id}

    @app.post("/api/sessions")
    async def new_session():
        session_id = await current().start_new_session()
        return {"status": "created", "session_id": session_id}

    @app.post("/api/image-gen/confirm")
    async def confirm_image():
        orch = current()
        if orch.state.value.pending_image_gen is None:
            raise HTTPException(status_code=409, detail="No picture is waiting for confirmation")
        url = await orch.confirm_image_generation()
        return {"status": "generated" if url else "failed", "url": url}

    @app.post("/api/image-gen/cancel")
    async def cancel_image():
        current().cancel_image_generation()
        return {"status": "cancelled"}

    @app.post("/api/voice/{action}")
    async def voice(action: str):
        orch = current()
        if action == "start":
            started = await orch.start_voice_input()
            if not started:
                raise HTTPException(status_code=503, detail="Voice input unavailable")
        elif action == "stop":
            await orch.stop_voice_input()
        elif action == "cancel":
            await orch.cancel_voice_input()
        elif action == "toggle":
            await orch.toggle_voice_input()
        else:
            raise HTTPException(status_code=404, detail=f"Unknown voice action: {action}")
        return {"status": "ok", "voice_input_active": orch.state.value.voice_input_active}

    @app.websocket("/ws")
    async def chat_socket(websocket: WebSocket):
        orch = current()
        await websocket.accept()
        async with orch.state.subscribe() as states:

            async def pump():
                async for snapshot in states:
                    await websocket.send_json(snapshot.to_dict())

            sender = asyncio.create_task(pump(), name="ws-pump")
            try:
                while True:
                    command = await websocket.receive_json()
                    try:
                        await handle_command(orch, command)
                    except (ValueError, RuntimeError, KindredError) as e:
                        logger.warning(f"[SERVER] WebSocket command failed: {type(e).__name__}: {e}")
                        await websocket.send_json({"error": str(e)})
            except WebSocketDisconnect:
                logger.info("[SERVER] WebSocket client disconnected")
            finally:
                sender.cancel()

    return app


# ============================================================================
# ENTRY POINT
# ============================================================================

def main() -> None:
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, str(config.get("system.log_level", "INFO")).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = config.get("server.host", "127.0.0.1")
    port = int(config.get("server.port", 8000))
    logger.info(f"[SERVER] Starting on http://{host}:{port}")
    uvicorn.run(create_app(config=config), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
