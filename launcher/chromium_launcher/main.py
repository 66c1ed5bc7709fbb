"""Application factory for the Chromium launcher service."""

from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from shared import __version__

from .config import LauncherSettings, load_settings
from .errors import ConfigurationError, HandshakeError, SpawnError
from .manager import ServerManager
from .metrics import LauncherMetrics
from .models import (
    HealthResponse,
    RevisionResponse,
    ServerCreateRequest,
    ServerDeleteResponse,
    ServerDetail,
)
from .server import ChromiumLauncher

LOGGER = logging.getLogger(__name__)


class AppState:
    def __init__(self, settings: LauncherSettings, launcher: ChromiumLauncher | None = None) -> None:
        self.settings = settings
        self.launcher = launcher or ChromiumLauncher(settings)
        self.metrics = LauncherMetrics()
        self.manager: ServerManager | None = None

    async def startup(self) -> None:
        LOGGER.info("Starting Chromium launcher (revision r%s)", self.settings.revision)
        manager = ServerManager(self.settings, self.launcher, metrics=self.metrics)
        await manager.start()
        self.manager = manager

    async def shutdown(self) -> None:
        LOGGER.info("Shutting down Chromium launcher")
        if self.manager:
            await self.manager.close()
            self.manager = None


def get_app_state(app: FastAPI) -> AppState:
    """Return the launcher application state."""

    state = getattr(app.state, "app_state", None)
    if not isinstance(state, AppState):  # pragma: no cover
        raise RuntimeError("Launcher app state is not initialised")
    return state


def create_app(
    settings: LauncherSettings | None = None,
    *,
    launcher: ChromiumLauncher | None = None,
) -> FastAPI:
    cfg = settings or load_settings()
    app = FastAPI(title="Chromium Launcher", version=__version__)
    allow_origins = cfg.cors_origins or ["*"]
    allow_all_origins = "*" in allow_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all_origins else allow_origins,
        allow_credentials=not allow_all_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    state = AppState(cfg, launcher)
    app.state.app_state = state

    @app.on_event("startup")
    async def _startup() -> None:
        await get_app_state(app).startup()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await get_app_state(app).shutdown()

    def get_state(request: Request) -> AppState:
        return get_app_state(request.app)

    def get_manager(state: AppState = Depends(get_state)) -> ServerManager:
        if not state.manager:
            raise HTTPException(status_code=503, detail="Launcher initialising")
        return state.manager

    @app.get("/health", response_model=HealthResponse)
    async def health(state: AppState = Depends(get_state)) -> HealthResponse:
        try:
            binary = "ok" if state.launcher.revision_info().local else "missing"
        except ConfigurationError:
            binary = "unsupported"
        checks = {"manager": "ok" if state.manager else "starting", "binary": binary}
        return HealthResponse(status="ok", version=app.version, checks=checks)

    @app.get("/servers", response_model=list[ServerDetail])
    async def list_servers(manager: ServerManager = Depends(get_manager)) -> list[ServerDetail]:
        return await manager.list_details()

    @app.post("/servers", response_model=ServerDetail, status_code=status.HTTP_201_CREATED)
    async def create_server(
        request: ServerCreateRequest,
        manager: ServerManager = Depends(get_manager),
    ) -> ServerDetail:
        try:
            handle = await manager.create(request)
        except ConfigurationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except (HandshakeError, SpawnError) as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
        return handle.detail()

    @app.get("/servers/{server_id}", response_model=ServerDetail)
    async def get_server(server_id: str, manager: ServerManager = Depends(get_manager)) -> ServerDetail:
        handle = await manager.get(server_id)
        if not handle:
            raise HTTPException(status_code=404, detail="Server not found")
        return handle.detail()

    @app.delete("/servers/{server_id}", response_model=ServerDeleteResponse)
    async def delete_server(
        server_id: str,
        manager: ServerManager = Depends(get_manager),
    ) -> ServerDeleteResponse:
        handle = await manager.delete(server_id)
        if not handle:
            raise HTTPException(status_code=404, detail="Server not found")
        return ServerDeleteResponse(id=handle.id, status=handle.status)

    @app.post("/servers/{server_id}/touch", response_model=ServerDetail)
    async def touch_server(server_id: str, manager: ServerManager = Depends(get_manager)) -> ServerDetail:
        handle = await manager.touch(server_id)
        if not handle:
            raise HTTPException(status_code=404, detail="Server not found")
        return handle.detail()

    @app.get("/revisions/{revision}", response_model=RevisionResponse)
    async def get_revision(revision: str, state: AppState = Depends(get_state)) -> RevisionResponse:
        try:
            info = state.launcher.revision_info(revision)
        except ConfigurationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return RevisionResponse(**info.asdict())

    @app.get(cfg.metrics_endpoint)
    async def metrics(state: AppState = Depends(get_state)) -> Response:
        data = generate_latest(state.metrics.registry)
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["AppState", "create_app"]
