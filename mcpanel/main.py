"""
mcpanel - FastAPI Application
===============================
Creates and configures the FastAPI web application that serves as the
management console for local Minecraft server instances.

Responsibilities:
    - Create the FastAPI app instance with CORS and metadata
    - Mount static file serving for CSS/JS assets (web/css, web/js)
    - Configure Jinja2 template rendering for HTML pages
    - Register the login, API and WebSocket endpoints
    - Render every mcpanel.errors failure as {"error": message}
    - Initialize all manager instances (auth, registry, files, processes)
    - Stop managed processes when the application shuts down

Architecture:
    Pages (/, /login) are server-rendered and redirect to /login when no
    session is present. The browser console talks to /api/* with the
    session cookie and listens on /ws for process status and console lines.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from mcpanel.auth import SESSION_COOKIE, AuthManager, UserStore
from mcpanel.config import ConfigManager
from mcpanel.errors import PanelError
from mcpanel.files import FileGateway
from mcpanel.process import LocalProcessBackend
from mcpanel.registry import ServerRegistry
from mcpanel.routes import create_auth_router, create_router
from mcpanel.supervisor import ProcessSupervisor
from mcpanel.websocket import WebSocketManager

logger = logging.getLogger(__name__)

WEB_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "web")

# WebSocket close code for a missing or revoked session
WS_UNAUTHORIZED = 4401


def create_app(project_dir: str | None = None,
               backend: LocalProcessBackend | None = None) -> FastAPI:
    """
    Application factory: create and configure the FastAPI instance.

    Args:
        project_dir: Installation root holding config.yaml, .env and the
                     servers/backups/data directories. If None,
                     $MCPANEL_PROJECT_DIR or the directory above this
                     package is used.
        backend:     Process backend to use. A LocalProcessBackend is
                     created when omitted.

    Returns:
        Configured FastAPI application ready to run with uvicorn.
    """
    # -- Resolve directories ---------------------------------------------------
    if project_dir is None:
        project_dir = os.environ.get("MCPANEL_PROJECT_DIR") or os.path.dirname(
            os.path.dirname(os.path.abspath(__file__))
        )

    config_manager = ConfigManager(project_dir)
    config = config_manager.load()
    if config.get("_config_error"):
        logger.warning("Running with default configuration")

    data_dir = config_manager.path(config, "data_dir")
    servers_dir = config_manager.path(config, "servers_dir")
    backups_dir = config_manager.path(config, "backups_dir")
    for directory in (data_dir, servers_dir, backups_dir):
        os.makedirs(directory, exist_ok=True)

    templates_dir = os.path.join(WEB_DIR, "templates")
    css_dir = os.path.join(WEB_DIR, "css")
    js_dir = os.path.join(WEB_DIR, "js")

    # -- Initialize managers ---------------------------------------------------
    web = config["web"]
    user_store = UserStore(data_dir)
    user_store.ensure_default_users(config["auth"].get("default_users") or [])
    auth_manager = AuthManager(
        user_store,
        secret=config_manager.env().get("SESSION_SECRET"),
        session_hours=float(web.get("session_hours", 24)),
    )

    ws_manager = WebSocketManager()
    backend = backend or LocalProcessBackend()
    backend.add_listener(ws_manager.send_process_event)

    registry = ServerRegistry(servers_dir, backups_dir)
    max_upload_mb = web.get("max_upload_mb") or 0
    gateway = FileGateway(max_upload_bytes=int(max_upload_mb * 1024 * 1024) or None)
    supervisor = ProcessSupervisor(backend, registry, config["minecraft"])

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("mcpanel ready (servers: %s)", servers_dir)
        yield
        await backend.shutdown()

    # -- Create FastAPI app ----------------------------------------------------
    app = FastAPI(
        title="mcpanel",
        description="Web management console for local Minecraft servers",
        version="1.0.0",
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    # -- CORS middleware -------------------------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- Jinja2 template engine ------------------------------------------------
    templates = Jinja2Templates(directory=templates_dir)

    # -- Store managers on app state -------------------------------------------
    app.state.config = config
    app.state.config_manager = config_manager
    app.state.auth_manager = auth_manager
    app.state.ws_manager = ws_manager
    app.state.backend = backend
    app.state.registry = registry
    app.state.gateway = gateway
    app.state.supervisor = supervisor
    app.state.templates = templates

    # -- Error rendering -------------------------------------------------------
    @app.exception_handler(PanelError)
    async def panel_error_handler(request: Request, exc: PanelError):
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse({"error": message}, status_code=400)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    # -- Register routes -------------------------------------------------------
    app.include_router(create_auth_router(
        auth_manager, templates, cookie_secure=bool(web.get("cookie_secure")),
    ))
    app.include_router(create_router(
        auth_manager=auth_manager,
        registry=registry,
        gateway=gateway,
        supervisor=supervisor,
    ))

    # -- WebSocket endpoint ----------------------------------------------------
    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        Live process events for the browser console. Requires the session
        cookie; unauthenticated clients are closed with code 4401.
        """
        if auth_manager.verify(websocket.cookies.get(SESSION_COOKIE)) is None:
            await websocket.close(code=WS_UNAUTHORIZED)
            return
        await ws_manager.connect(websocket)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            ws_manager.disconnect(websocket)

    # -- Mount static assets ---------------------------------------------------
    if os.path.isdir(css_dir):
        app.mount("/css", StaticFiles(directory=css_dir), name="css")
    if os.path.isdir(js_dir):
        app.mount("/js", StaticFiles(directory=js_dir), name="js")

    # -- Page routes -----------------------------------------------------------

    @app.get("/")
    async def index(request: Request):
        """Console page; anonymous visitors are sent to the login page."""
        session = auth_manager.current(request)
        if session is None:
            return RedirectResponse(url="/login", status_code=303)
        return templates.TemplateResponse(request, "index.html", {"username": session.username})

    @app.get("/login")
    async def login_page(request: Request):
        if auth_manager.current(request) is not None:
            return RedirectResponse(url="/", status_code=303)
        return templates.TemplateResponse(request, "login.html", {"error": None})

    return app
