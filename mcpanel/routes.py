"""
mcpanel - HTTP Routes
=======================
All HTTP endpoints of the management console.

Route groups:
    /login, /logout                      - Session login / logout (no auth)
    /api/me, /api/me/password            - Current operator, password change
    /api/servers                         - Instance list / create / delete
    /api/servers/{name}/files...         - File browser (list, read, write, delete)
    /api/servers/{name}/directories      - mkdir
    /api/servers/{name}/upload|extract   - Upload files, unzip archives
    /api/servers/{name}/move|copy|rename - Relocate entries
    /api/servers/{name}/download...      - Stream a file or the whole tree
    /api/servers/{name}/status|start|... - Process lifecycle and console

Every /api route requires a session (see auth.py). Failures are raised as
mcpanel.errors types and rendered by the handlers registered in main.py.
"""

import logging
import os

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, ConfigDict, Field
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool

from mcpanel import paths
from mcpanel.auth import SESSION_COOKIE, AuthManager, SessionInfo, require_auth
from mcpanel.errors import Conflict, InvalidArgument, Unauthorized
from mcpanel.files import FileGateway
from mcpanel.registry import ServerRegistry
from mcpanel.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


# =============================================================================
# Request Models (Pydantic)
# =============================================================================

class _CamelModel(BaseModel):
    """Accepts the camelCase field names the browser sends."""
    model_config = ConfigDict(populate_by_name=True)


class CreateServerRequest(BaseModel):
    name: str = Field(..., description="Instance name")


class FileContentRequest(BaseModel):
    content: str = Field("", description="New file content")


class DirectoryRequest(BaseModel):
    name: str = Field(..., description="New directory name")
    path: str = Field("", description="Parent directory, relative to the server root")


class ExtractRequest(_CamelModel):
    path: str = Field("", description="Directory containing the archive")
    target_path: str | None = Field(None, alias="targetPath",
                                    description="Extraction directory (defaults to path)")


class RelocateRequest(_CamelModel):
    """Move or copy one entry between directories of the same server."""
    filename: str
    current_path: str = Field("", alias="currentPath")
    destination_path: str = Field("", alias="destinationPath")


class MoveManyRequest(_CamelModel):
    filenames: list[str] = Field(..., min_length=1)
    current_path: str = Field("", alias="currentPath")
    destination_path: str = Field("", alias="destinationPath")


class RenameRequest(_CamelModel):
    old_name: str = Field(..., alias="oldName")
    new_name: str = Field(..., alias="newName")
    current_path: str = Field("", alias="currentPath")


class CommandRequest(BaseModel):
    command: str = Field("", description="Console command, without a leading slash")


class PasswordChangeRequest(_CamelModel):
    """Change the logged-in operator's password."""
    current_password: str = Field(..., alias="currentPassword")
    new_password: str = Field(..., alias="newPassword")


# =============================================================================
# Auth Router
# =============================================================================

def create_auth_router(auth_manager: AuthManager, templates: Jinja2Templates,
                       cookie_secure: bool = False) -> APIRouter:
    """
    Login/logout endpoints. POST /login accepts a form post (browser) or a
    JSON body (API client).
    """
    router = APIRouter()

    @router.post("/login")
    async def login(request: Request):
        is_json = request.headers.get("content-type", "").startswith("application/json")
        if is_json:
            try:
                body = await request.json()
            except ValueError:
                raise InvalidArgument("Invalid JSON body")
            if not isinstance(body, dict):
                raise InvalidArgument("Invalid JSON body")
        else:
            body = dict(await request.form())

        result = await run_in_threadpool(
            auth_manager.login, str(body.get("username", "")), str(body.get("password", ""))
        )
        if result is None:
            if is_json:
                return JSONResponse({"error": "Invalid credentials"}, status_code=401)
            return templates.TemplateResponse(
                request, "login.html", {"error": "Invalid credentials"}, status_code=401
            )

        token, session = result
        if is_json:
            response = JSONResponse({"message": "Login successful",
                                     "username": session.username, "token": token})
        else:
            response = RedirectResponse(url="/", status_code=303)
        response.set_cookie(
            SESSION_COOKIE, token,
            max_age=int(auth_manager.session_hours * 3600),
            httponly=True, samesite="lax", secure=cookie_secure,
        )
        return response

    @router.get("/logout")
    async def logout(request: Request):
        auth_manager.logout(auth_manager.token_from_request(request))
        response = RedirectResponse(url="/login", status_code=303)
        response.delete_cookie(SESSION_COOKIE)
        return response

    return router


# =============================================================================
# API Router
# =============================================================================

def create_router(
    auth_manager: AuthManager,
    registry: ServerRegistry,
    gateway: FileGateway,
    supervisor: ProcessSupervisor,
) -> APIRouter:
    """
    Create the /api router.

    Args:
        auth_manager: Session verification.
        registry:     Server instance directories.
        gateway:      Scoped file operations.
        supervisor:   Process lifecycle facade.

    Returns:
        Configured APIRouter with all endpoints registered.
    """
    router = APIRouter(prefix="/api")
    auth = Depends(require_auth(auth_manager))

    @router.get("/me")
    async def me(session: SessionInfo = auth):
        return {"id": session.user_id, "username": session.username,
                "expires_at": session.expires_at.isoformat()}

    @router.post("/me/password")
    async def change_password(req: PasswordChangeRequest, session: SessionInfo = auth):
        """Other sessions of the same operator stay valid until they expire."""
        store = auth_manager.store
        if await run_in_threadpool(store.authenticate, session.username,
                                   req.current_password) is None:
            raise InvalidArgument("Current password is incorrect")
        try:
            await run_in_threadpool(store.set_password, session.username, req.new_password)
        except ValueError as e:
            raise InvalidArgument(str(e))
        except KeyError:
            raise Unauthorized()
        return {"message": "Password changed successfully"}

    # =========================================================================
    # SERVER INSTANCES
    # =========================================================================

    @router.get("/servers", dependencies=[auth])
    async def list_servers():
        return await registry.list()

    @router.post("/servers", dependencies=[auth])
    async def create_server(req: CreateServerRequest):
        created = await registry.create(req.name)
        return {"message": "Server created successfully", **created}

    @router.delete("/servers/{name}", dependencies=[auth])
    async def delete_server(name: str):
        """Delete an instance. Refused while its process is running."""
        status = await supervisor.status(name)
        if status["status"] in ("starting", "online", "stopping"):
            raise Conflict("Stop the server before deleting it")
        await registry.delete(name)
        return {"message": "Server deleted successfully"}

    # =========================================================================
    # FILE BROWSER
    # =========================================================================

    @router.get("/servers/{name}/files", dependencies=[auth])
    async def list_files(name: str, path: str = Query("")):
        root = await registry.get_root(name)
        entries = await gateway.list_dir(root, path)
        return {
            "server": name,
            "path": paths.normalize_relative(path),
            "files": [e.to_dict() for e in entries],
        }

    @router.get("/servers/{name}/files/{filename}", dependencies=[auth])
    async def read_file(name: str, filename: str, path: str = Query("")):
        root = await registry.get_root(name)
        content = await gateway.read_file(root, paths.join(path, filename))
        return {"content": content}

    @router.post("/servers/{name}/files/{filename}", dependencies=[auth])
    async def write_file(name: str, filename: str, req: FileContentRequest,
                         path: str = Query("")):
        root = await registry.get_root(name)
        await gateway.write_file(root, paths.join(path, filename), req.content)
        return {"message": "File saved successfully"}

    @router.delete("/servers/{name}/files/{filename}", dependencies=[auth])
    async def delete_file(name: str, filename: str, path: str = Query("")):
        root = await registry.get_root(name)
        await gateway.delete_entry(root, paths.join(path, filename))
        return {"message": "Item deleted successfully"}

    @router.post("/servers/{name}/directories", dependencies=[auth])
    async def make_directory(name: str, req: DirectoryRequest):
        root = await registry.get_root(name)
        dirname = paths.validate_name(req.name, "directory name")
        await gateway.make_directory(root, paths.join(req.path, dirname))
        return {"message": "Directory created successfully"}

    @router.post("/servers/{name}/upload", dependencies=[auth])
    async def upload_files(
        name: str,
        file: list[UploadFile] | None = File(None),
        path: str = Form(""),
    ):
        root = await registry.get_root(name)
        try:
            count = await gateway.upload_many(root, path, file or [])
        finally:
            for upload in file or []:
                await upload.close()
        return {"message": f"{count} file(s) uploaded successfully", "count": count}

    @router.post("/servers/{name}/extract/{filename}", dependencies=[auth])
    async def extract_archive(name: str, filename: str, req: ExtractRequest | None = None):
        req = req or ExtractRequest()
        root = await registry.get_root(name)
        target = req.target_path if req.target_path is not None else req.path
        count = await gateway.extract_archive(root, paths.join(req.path, filename), target)
        return {"message": "ZIP file extracted successfully", "count": count}

    @router.post("/servers/{name}/move", dependencies=[auth])
    async def move_entry(name: str, req: RelocateRequest):
        root = await registry.get_root(name)
        filename = paths.validate_name(req.filename, "file name")
        await gateway.move(root, paths.join(req.current_path, filename),
                           paths.join(req.destination_path, filename))
        return {"message": "File moved successfully"}

    @router.post("/servers/{name}/move-multiple", dependencies=[auth])
    async def move_entries(name: str, req: MoveManyRequest):
        root = await registry.get_root(name)
        results = await gateway.move_many(root, req.filenames, req.current_path,
                                          req.destination_path)
        return {"message": "Files move operation completed", "results": results}

    @router.post("/servers/{name}/copy", dependencies=[auth])
    async def copy_entry(name: str, req: RelocateRequest):
        root = await registry.get_root(name)
        filename = paths.validate_name(req.filename, "file name")
        await gateway.copy(root, paths.join(req.current_path, filename),
                           paths.join(req.destination_path, filename))
        return {"message": "Item copied successfully"}

    @router.post("/servers/{name}/rename", dependencies=[auth])
    async def rename_entry(name: str, req: RenameRequest):
        root = await registry.get_root(name)
        old_name = paths.validate_name(req.old_name, "file name")
        new_name = paths.validate_name(req.new_name, "file name")
        await gateway.rename(root, paths.join(req.current_path, old_name),
                             paths.join(req.current_path, new_name))
        return {"message": "Item renamed successfully"}

    @router.get("/servers/{name}/download/{filename}", dependencies=[auth])
    async def download_file(name: str, filename: str, path: str = Query("")):
        root = await registry.get_root(name)
        abs_path = await gateway.download_path(root, paths.join(path, filename))
        return FileResponse(abs_path, filename=os.path.basename(abs_path),
                            media_type="application/octet-stream")

    # =========================================================================
    # ARCHIVES
    # =========================================================================

    @router.api_route("/servers/{name}/backup", methods=["GET", "POST"], dependencies=[auth])
    async def backup_server(name: str):
        result = await registry.backup(name)
        return {"message": "Backup created successfully", **result}

    @router.get("/servers/{name}/download-zip", dependencies=[auth])
    async def download_zip(name: str):
        tmp_path, download_name = await registry.archive_to_temp(name)
        return FileResponse(
            tmp_path,
            filename=download_name,
            media_type="application/zip",
            background=BackgroundTask(os.remove, tmp_path),
        )

    # =========================================================================
    # PROCESS CONTROL
    # =========================================================================

    @router.get("/servers/{name}/status", dependencies=[auth])
    async def server_status(name: str):
        return await supervisor.status(name)

    @router.post("/servers/{name}/start", dependencies=[auth])
    async def start_server(name: str):
        return await supervisor.start(name)

    @router.post("/servers/{name}/stop", dependencies=[auth])
    async def stop_server(name: str):
        return await supervisor.stop(name)

    @router.post("/servers/{name}/restart", dependencies=[auth])
    async def restart_server(name: str):
        return await supervisor.restart(name)

    @router.get("/servers/{name}/console", dependencies=[auth])
    async def server_console(name: str,
                             lines: int | None = Query(None, ge=1, le=5000)):
        return {"logs": await supervisor.tail_log(name, lines)}

    @router.post("/servers/{name}/command", dependencies=[auth])
    async def send_command(name: str, req: CommandRequest):
        return await supervisor.send_command(name, req.command)

    return router
