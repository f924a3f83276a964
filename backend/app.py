import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from config import Settings, load_settings
from db import make_engine, make_session_factory
from schemas import ChatMessageOut
from store import MessageStore, StoreError
from ws import Hub

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    # basicConfig is a no-op once the root logger has handlers (e.g. under uvicorn --log-config)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def create_app(settings: Optional[Settings] = None, store: Optional[MessageStore] = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    if store is None:
        store = MessageStore(make_session_factory(make_engine(settings.database_url)))
    hub = Hub(store, reject_notices=settings.reject_notices, outbox_size=settings.outbox_size)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.create_all()
        logger.info("chat hub listening on %s", settings.ws_path)
        yield
        await hub.close_all()

    app = FastAPI(title="Fan hub live chat", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.hub = hub
    app.add_middleware(CORSMiddleware, allow_origins=settings.cors_origins, allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

    def history(request: Request, room_id: Optional[str], limit: Optional[int]) -> List[ChatMessageOut]:
        s: Settings = request.app.state.settings
        try:
            return request.app.state.store.fetch(room_id, limit or s.history_limit)
        except StoreError:
            logger.exception("error fetching chat messages")
            raise HTTPException(status_code=500, detail="Failed to fetch messages")

    # Plain def routes run in the threadpool, so blocking queries stay off the event loop
    @app.get("/api/chat", response_model=List[ChatMessageOut], response_model_by_alias=True)
    def list_global_chat(request: Request, limit: Optional[int] = Query(None, ge=1, le=settings.history_max)):
        """Recent messages across every room, oldest first."""
        return history(request, None, limit)

    @app.get("/api/chat/{room_id}", response_model=List[ChatMessageOut], response_model_by_alias=True)
    def list_room_chat(room_id: str, request: Request, limit: Optional[int] = Query(None, ge=1, le=settings.history_max)):
        """Recent messages for one game, oldest first."""
        return history(request, room_id, limit)

    @app.websocket(settings.ws_path)
    async def ws_endpoint(ws: WebSocket):
        await ws.app.state.hub.serve(ws)

    return app


app = create_app()
