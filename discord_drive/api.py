"""
HTTP API served next to the bot with aiohttp.web.

Transfer endpoints live under ``/upload``, ``/download`` and ``/preview``;
metadata endpoints under ``/api``. Every DriveError leaving a handler is turned
into a JSON body ``{detail, error, ...}`` with the status code of its class.
"""
import json
import math
import mimetypes
from typing import Any, Dict, Optional
from urllib.parse import quote

from aiohttp import web

from .context import DriveContext
from .download import DownloadEngine
from .errors import DriveError, InvalidRequest, RateLimited, RemoteError
from .folders import FolderTree
from .log import logger as log
from .models import MB, FileRecord, FolderRecord, parse_id
from .sessions import UploadSessionManager

CONTEXT_KEY = web.AppKey("context", DriveContext)
SESSIONS_KEY = web.AppKey("sessions", UploadSessionManager)
DOWNLOADS_KEY = web.AppKey("downloads", DownloadEngine)
FOLDERS_KEY = web.AppKey("folders", FolderTree)

routes = web.RouteTableDef()


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------
@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except DriveError as e:
        if e.http_status >= 500:
            log.error(f"{request.method} {request.path} failed: {e}")
        else:
            log.info(f"{request.method} {request.path} rejected: {e}")
        headers = {}
        if isinstance(e, RateLimited):
            headers["Retry-After"] = str(max(1, math.ceil(e.retry_after)))
        return web.json_response(e.to_dict(), status=e.http_status, headers=headers)


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidRequest(f"request body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise InvalidRequest("request body must be a JSON object")
    return body


def _optional_id(value, name: str) -> Optional[int]:
    if value is None or value in ("", "root", "null"):
        return None
    parsed = parse_id(value)
    if parsed is None:
        raise InvalidRequest(f"{name} must be an integer id, got {value!r}")
    return parsed


def _path_id(request: web.Request, name: str) -> int:
    parsed = parse_id(request.match_info[name])
    if parsed is None:
        raise InvalidRequest(f"{name} must be an integer id")
    return parsed


def _optional_int(value, name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise InvalidRequest(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise InvalidRequest(f"{name} must be an integer") from e


def _flag(value) -> bool:
    return str(value or "").lower() in ("1", "true", "yes")


def file_view(record: FileRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "folder_id": record.folder_id,
        "folder_name": record.folder_name,
        "size": record.size,
        "chunks": len(record.chunks),
        "replicas": len(record.replicas),
        "method": record.method,
        "status": record.status.value,
        "checksum": record.checksum,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def folder_view(folder: FolderRecord) -> Dict[str, Any]:
    return {
        "id": folder.id,
        "name": folder.name,
        "parent_id": folder.parent_id,
        "channel_id": folder.channel_id,
        "created_at": folder.created_at,
    }


# ------------------------------------------------------------------
# Uploads
# ------------------------------------------------------------------
@routes.post("/upload/start")
async def upload_start(request: web.Request):
    body = await _json_body(request)
    session_id = await request.app[SESSIONS_KEY].start(
        body.get("name") or body.get("filename"),
        folder_id=_optional_id(body.get("folder_id"), "folder_id"),
        declared_size=_optional_int(body.get("size"), "size"),
        total_chunks=_optional_int(body.get("total_chunks"), "total_chunks"),
        client_token=body.get("client_token") or None,
    )
    return web.json_response({"session_id": session_id}, status=201)


@routes.post("/upload/stream")
async def upload_stream(request: web.Request):
    name = request.query.get("name")
    file_id = await request.app[SESSIONS_KEY].upload_stream(
        name,
        _optional_id(request.query.get("folder_id"), "folder_id"),
        request.content,
        declared_size=request.content_length,
        expected_checksum=request.query.get("checksum") or None,
    )
    return web.json_response({"file_id": file_id}, status=201)


@routes.post("/upload/{session_id}/chunk/{index}")
async def upload_chunk(request: web.Request):
    sessions = request.app[SESSIONS_KEY]
    session_id = request.match_info["session_id"]
    index = _optional_int(request.match_info["index"], "index")
    data = await request.read()
    accepted = await sessions.submit_chunk(session_id, index, data)
    status = await sessions.status(session_id)
    return web.json_response({"accepted": True, "duplicate": not accepted, "next_index": status["next_index"]})


@routes.post("/upload/{session_id}/finalize")
async def upload_finalize(request: web.Request):
    body = await _json_body(request)
    file_id = await request.app[SESSIONS_KEY].finalize(request.match_info["session_id"],
                                                        body.get("checksum") or None)
    return web.json_response({"file_id": file_id})


@routes.get("/upload/{session_id}")
async def upload_status(request: web.Request):
    return web.json_response(await request.app[SESSIONS_KEY].status(request.match_info["session_id"]))


@routes.delete("/upload/{session_id}")
async def upload_cancel(request: web.Request):
    sessions = request.app[SESSIONS_KEY]
    session_id = request.match_info["session_id"]
    await sessions.cancel(session_id)
    return web.json_response(await sessions.status(session_id))


# ------------------------------------------------------------------
# Downloads
# ------------------------------------------------------------------
async def _send_file(request: web.Request, inline: bool) -> web.StreamResponse:
    stream = await request.app[DOWNLOADS_KEY].open(_path_id(request, "file_id"))
    record = stream.record
    pieces = stream.__aiter__()
    # the first chunk is fetched before headers go out so early failures still get a JSON error
    try:
        first = await pieces.__anext__()
    except StopAsyncIteration:
        first = b""

    content_type = "application/octet-stream"
    if inline:
        content_type = mimetypes.guess_type(record.name)[0] or content_type
    response = web.StreamResponse(headers={
        "Content-Type": content_type,
        "Content-Disposition": f"{'inline' if inline else 'attachment'}; filename*=UTF-8''{quote(record.name)}",
    })
    if record.size is not None:
        response.content_length = record.size
    await response.prepare(request)
    try:
        if first:
            await response.write(first)
        async for piece in pieces:
            await response.write(piece)
    except DriveError as e:
        log.error(f"Download of {record.name} ({record.id}) failed mid-stream: {e}")
        response.force_close()
        if request.transport is not None:
            request.transport.abort()
        return response
    finally:
        await stream.aclose()
    await response.write_eof()
    log.info(f"Download finished: {record.name} ({record.id})")
    return response


@routes.get("/download/{file_id}")
async def download(request: web.Request):
    return await _send_file(request, inline=False)


@routes.get("/preview/{file_id}")
async def preview(request: web.Request):
    return await _send_file(request, inline=True)


# ------------------------------------------------------------------
# Metadata
# ------------------------------------------------------------------
@routes.get("/api/health")
async def health(request: web.Request):
    ctx = request.app[CONTEXT_KEY]
    platforms = {}
    for name, sender in ctx.senders.items():
        try:
            await sender.health_check()
            platforms[name] = "ok"
        except RemoteError as e:
            platforms[name] = f"unreachable: {e.message}"
    status = "ok" if all(v == "ok" for v in platforms.values()) else "degraded"
    return web.json_response({
        "status": status,
        "platforms": platforms,
        "backup_enabled": ctx.config.backup_enabled,
        "encryption": ctx.config.encryption_enabled,
    })


@routes.get("/api/stats")
async def stats(request: web.Request):
    ctx = request.app[CONTEXT_KEY]
    body = await ctx.registry.stats()
    body["chunk_size"] = ctx.config.chunk_size
    body["total_size_mb"] = round(body["total_size"] / MB, 2)
    return web.json_response(body)


@routes.get("/api/search")
async def search(request: web.Request):
    limit = _optional_int(request.query.get("limit"), "limit") or 100
    hits = await request.app[CONTEXT_KEY].registry.search(request.query.get("q", ""), limit=limit)
    return web.json_response({"results": [file_view(r) for r in hits]})


@routes.get("/api/folders")
async def list_folders(request: web.Request):
    folders = await request.app[CONTEXT_KEY].registry.folders()
    parent = request.query.get("parent_id")
    if parent is not None:
        parent_id = _optional_id(parent, "parent_id")
        folders = [f for f in folders if f.parent_id == parent_id]
    folders.sort(key=lambda f: f.name.lower())
    return web.json_response({"folders": [folder_view(f) for f in folders]})


@routes.post("/api/folders")
async def create_folder(request: web.Request):
    body = await _json_body(request)
    folder = await request.app[FOLDERS_KEY].create(body.get("name"),
                                                   _optional_id(body.get("parent_id"), "parent_id"))
    return web.json_response(folder_view(folder), status=201)


@routes.patch("/api/folders/{folder_id}")
async def update_folder(request: web.Request):
    tree = request.app[FOLDERS_KEY]
    folder_id = _path_id(request, "folder_id")
    body = await _json_body(request)
    folder = await request.app[CONTEXT_KEY].registry.get_folder(folder_id)
    if "name" in body:
        folder = await tree.rename(folder_id, body["name"])
    if "parent_id" in body:
        folder = await tree.move(folder_id, _optional_id(body["parent_id"], "parent_id"))
    return web.json_response(folder_view(folder))


@routes.post("/api/folders/{folder_id}/move")
async def move_folder(request: web.Request):
    body = await _json_body(request)
    if "parent_id" not in body:
        raise InvalidRequest("parent_id is required (null moves to the root)")
    folder = await request.app[FOLDERS_KEY].move(_path_id(request, "folder_id"),
                                                 _optional_id(body["parent_id"], "parent_id"))
    return web.json_response(folder_view(folder))


@routes.delete("/api/folders/{folder_id}")
async def delete_folder(request: web.Request):
    folder_id = _path_id(request, "folder_id")
    await request.app[FOLDERS_KEY].delete(folder_id, force=_flag(request.query.get("force")))
    return web.json_response({"deleted": folder_id})


@routes.get("/api/files")
async def list_files(request: web.Request):
    tree = request.app[FOLDERS_KEY]
    folder_id = _optional_id(request.query.get("folder_id"), "folder_id")
    folders, files = await tree.list_folder(folder_id)
    path = await tree.path(folder_id)
    return web.json_response({
        "folder_id": folder_id,
        "path": [folder_view(f) for f in path],
        "folders": [folder_view(f) for f in sorted(folders, key=lambda f: f.name.lower())],
        "files": [file_view(r) for r in sorted(files, key=lambda r: r.name.lower())],
    })


@routes.get("/api/files/{file_id}")
async def get_file(request: web.Request):
    record = await request.app[CONTEXT_KEY].registry.get_file(_path_id(request, "file_id"))
    return web.json_response(file_view(record))


@routes.patch("/api/files/{file_id}")
async def update_file(request: web.Request):
    tree = request.app[FOLDERS_KEY]
    file_id = _path_id(request, "file_id")
    body = await _json_body(request)
    record = await request.app[CONTEXT_KEY].registry.get_file(file_id)
    if "name" in body:
        record = await tree.rename(file_id, body["name"])
    if "folder_id" in body:
        record = await tree.move(file_id, _optional_id(body["folder_id"], "folder_id"))
    return web.json_response(file_view(record))


@routes.post("/api/files/{file_id}/move")
async def move_file(request: web.Request):
    body = await _json_body(request)
    if "folder_id" not in body:
        raise InvalidRequest("folder_id is required (null moves to the root)")
    record = await request.app[FOLDERS_KEY].move(_path_id(request, "file_id"),
                                                 _optional_id(body["folder_id"], "folder_id"))
    return web.json_response(file_view(record))


@routes.delete("/api/files/{file_id}")
async def delete_file(request: web.Request):
    record = await request.app[FOLDERS_KEY].delete_file(_path_id(request, "file_id"))
    return web.json_response({"deleted": record.id})


# ------------------------------------------------------------------
# App
# ------------------------------------------------------------------
def create_app(ctx: DriveContext, sessions: UploadSessionManager, downloads: DownloadEngine,
               folders: FolderTree) -> web.Application:
    app = web.Application(middlewares=[error_middleware], client_max_size=ctx.config.chunk_size + MB)
    app[CONTEXT_KEY] = ctx
    app[SESSIONS_KEY] = sessions
    app[DOWNLOADS_KEY] = downloads
    app[FOLDERS_KEY] = folders
    app.add_routes(routes)
    return app


async def start_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    try:
        await site.start()
    except OSError:
        await runner.cleanup()
        raise
    log.info(f"Transfer API listening on http://{host}:{port}")
    return runner
