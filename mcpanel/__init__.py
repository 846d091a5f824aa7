"""
mcpanel - Minecraft Server Panel
==================================
A web management console for Minecraft server instances on one host.

This package provides:
- FastAPI web application serving the console UI
- REST API endpoints for instances, files, archives and process control
- WebSocket endpoint for live console lines and status updates
- Session login with bcrypt-hashed operator accounts

Architecture:
    main.py       -> FastAPI app creation, error rendering, page routes
    auth.py       -> Operator accounts, sessions, route protection
    config.py     -> Read config.yaml and .env
    routes.py     -> All REST API endpoint handlers
    websocket.py  -> WebSocket connection manager and broadcasting
    errors.py     -> Error taxonomy and HTTP status mapping
    paths.py      -> Containment of client paths inside a server root
    files.py      -> Scoped file operations with per-path locking
    archive.py    -> Zip extraction and tree archiving
    registry.py   -> Server instance directories, seeding and backups
    process.py    -> Long-lived asyncio subprocess backend
    supervisor.py -> Start/stop/restart/status/console facade
"""

__version__ = "1.0.0"
