import asyncio
import anyio
import json
import traceback
from pathlib import Path
from typing import AsyncIterator, Optional
from fastapi import APIRouter, FastAPI, File, Header, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError
from auth import AccountStore
from blob_store import BlobForbidden, BlobNotFound, BlobStore, UploadTooLarge
from config import Settings, settings as default_settings
from connection_manager import ConnectionManager
from room_session import RoomHub, RoomSession
from schemas import AccountIn, AccountOut, FileMeta, HistoryOut, StoredFileMeta, UploadOut
from storage import PersistenceLog, SnapshotFile
from utils import is_valid_file_id, is_valid_room_id
from logging_config import logger

UPLOAD_CHUNK_BYTES = 1024 * 1024

router = APIRouter()


def check_room_id(room_id: str):
    if not is_valid_room_id(room_id):
        raise HTTPException(status_code=400, detail="Invalid room ID")


def check_file_id(file_id: str):
    if not is_valid_file_id(file_id):
        raise HTTPException(status_code=400, detail="Invalid file ID")


@router.get("/health")
def health_check():
    logger.info("Health check pinged")
    return {"status": "ok"}


@router.post("/auth/register", response_model=AccountOut)
async def register(account: AccountIn, request: Request):
    return await request.app.state.accounts.register(account.nickname, account.password_hash)


@router.post("/auth/login", response_model=AccountOut)
async def login(account: AccountIn, request: Request):
    return await request.app.state.accounts.login(account.nickname, account.password_hash)


@router.get("/history/{room_id}", response_model=HistoryOut)
async def get_history(room_id: str, request: Request):
    check_room_id(room_id)
    try:
        lines = await request.app.state.hub.log.read_lines(room_id)
    except OSError as e:
        logger.error(f"History read failed for room {room_id[:8]}: {e}")
        raise HTTPException(status_code=500, detail="Storage error")
    return {"lines": lines}


async def _read_chunks(upload: UploadFile) -> AsyncIterator[bytes]:
    while True:
        chunk = await upload.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        yield chunk


@router.post("/upload/{room_id}", response_model=UploadOut)
async def upload_file(
    room_id: str,
    request: Request,
    file: Optional[UploadFile] = File(None),
    x_file_meta: Optional[str] = Header(None),
):
    check_room_id(room_id)
    if file is None:
        raise HTTPException(status_code=400, detail="No file")
    try:
        meta = FileMeta.model_validate(json.loads(x_file_meta or "{}"))
    except (ValueError, ValidationError):
        raise HTTPException(status_code=400, detail="Invalid file meta")

    blobs: BlobStore = request.app.state.blobs
    try:
        file_id = await blobs.save(room_id, meta, _read_chunks(file))
    except UploadTooLarge as e:
        raise HTTPException(status_code=413, detail=str(e))
    finally:
        await file.close()
    return {"ok": True, "file_id": file_id}


@router.get("/files/{room_id}/{file_id}")
async def download_file(room_id: str, file_id: str, request: Request):
    check_room_id(room_id)
    check_file_id(file_id)
    try:
        path = await request.app.state.blobs.get_path(room_id, file_id)
    except BlobNotFound:
        raise HTTPException(status_code=404, detail="File not found")
    except BlobForbidden:
        raise HTTPException(status_code=403, detail="File belongs to another room")
    return FileResponse(path, media_type="application/octet-stream")


@router.get("/files/{room_id}/{file_id}/meta", response_model=StoredFileMeta)
async def download_file_meta(room_id: str, file_id: str, request: Request):
    check_room_id(room_id)
    check_file_id(file_id)
    try:
        return await request.app.state.blobs.get_meta(room_id, file_id)
    except BlobNotFound:
        raise HTTPException(status_code=404, detail="File not found")
    except BlobForbidden:
        raise HTTPException(status_code=403, detail="File belongs to another room")


@router.websocket("/ws")
async def websocket_room(websocket: WebSocket):
    hub: RoomHub = websocket.app.state.hub
    config: Settings = websocket.app.state.settings

    await websocket.accept()
    session = RoomSession(hub, websocket)
    awaiting_pong = False

    try:
        while True:
            timeout = config.WS_PONG_TIMEOUT_SECONDS if awaiting_pong else config.WS_IDLE_TIMEOUT_SECONDS
            try:
                message = await asyncio.wait_for(websocket.receive(), timeout=timeout)
            except asyncio.TimeoutError:
                if awaiting_pong:
                    logger.warning(f"WebSocket {session.connection_id} missed pong, closing")
                    await websocket.close(code=4002)
                    break
                await websocket.send_json({"type": "ping"})
                awaiting_pong = True
                continue

            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            # Any inbound frame proves the peer is alive
            awaiting_pong = False
            text = message.get("text")
            if text is None:
                await session.send_error("Binary frames are not supported")
                continue
            await session.handle(text)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        logger.error(traceback.format_exc())
        await websocket.close(code=1011) # Internal Error
    finally:
        # Presence must be released even when the handler task is cancelled
        with anyio.CancelScope(shield=True):
            await session.leave()


def create_app(config: Settings = default_settings) -> FastAPI:
    app = FastAPI(title="Cipher Relay", description="Relay for end-to-end encrypted chat rooms")

    data_dir = Path(config.DATA_DIR)
    app.state.settings = config
    app.state.hub = RoomHub(
        ConnectionManager(),
        PersistenceLog(data_dir / "chats"),
        SnapshotFile(data_dir / "likes.json"),
        SnapshotFile(data_dir / "pins.json"),
        max_message_bytes=config.WS_MAX_MESSAGE_BYTES,
    )
    app.state.blobs = BlobStore(data_dir / "files", max_bytes=config.MAX_UPLOAD_BYTES)
    app.state.accounts = AccountStore(SnapshotFile(data_dir / "accounts.json"))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "x-file-meta"],
    )
    app.include_router(router)

    @app.on_event("startup")
    async def startup():
        for sub in ("chats", "files"):
            (data_dir / sub).mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(app.state.hub.load)
        logger.info(f"Relay data directory: {data_dir.resolve()}")

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.hub.close()

    @app.exception_handler(Exception)
    async def internal_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception at {request.method} {request.url.path}")
        logger.error("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning(f"HTTPException: {exc.status_code} - {exc.detail} at {request.method} {request.url.path}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host=default_settings.HOST, port=default_settings.PORT)
