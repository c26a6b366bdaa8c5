from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI

from backend.content import DEFAULT_ITEMS, STARTING_INVENTORY
from backend.routes import router
from qmud.auth import AuthContext
from qmud.books import BookReader
from qmud.config import Settings, load_settings
from qmud.events import AternaPublisher
from qmud.llm import LLMClient, Transport
from qmud.models import PlayerState
from qmud.presentation import OutputLog
from qmud.scheduler import RequestScheduler
from qmud.storage import SessionStore


@dataclass
class Runtime:
    """Everything one running client needs, shared by all routes."""

    settings: Settings
    auth: AuthContext
    scheduler: RequestScheduler
    client: LLMClient
    sink: OutputLog
    store: SessionStore
    reader: BookReader


def build_runtime(settings: Settings) -> Runtime:
    sink = OutputLog()
    auth = AuthContext(lambda: settings.api_key, lambda: settings.api_base)
    scheduler = RequestScheduler(
        auth,
        text_interval=settings.text_interval,
        image_interval=settings.image_interval,
        image_interval_cap=settings.image_interval_cap,
        rate_limit_window=settings.rate_limit_window,
        on_status=sink.update_status,
    )
    client = LLMClient(
        auth,
        scheduler,
        Transport(timeout=settings.request_timeout),
        text_model=settings.text_model,
        image_model=settings.image_model,
    )
    publisher = None
    if settings.aterna_base:
        publisher = AternaPublisher(
            settings.aterna_base,
            token=settings.aterna_token,
            mirror_audit=settings.aterna_mirror_audit,
        )
    store = SessionStore(settings.data_dir, settings.player_id)
    player = PlayerState(player_id=settings.player_id, inventory=list(STARTING_INVENTORY))
    reader = BookReader(
        player,
        DEFAULT_ITEMS,
        client if auth.has_credential else None,
        sink,
        publisher=publisher,
        store=store,
        room="The Library Entrance",
    )
    return Runtime(settings, auth, scheduler, client, sink, store, reader)


def create_app(data_dir: Path | None = None) -> FastAPI:
    runtime = build_runtime(load_settings(data_dir))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await runtime.scheduler.aclose()

    app = FastAPI(title="QMUD Librarian", lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
