import asyncio
import re
import sqlite3
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from urllib.parse import quote

import uvicorn
from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from loguru import logger
from starlette.concurrency import run_in_threadpool

from label_portal.catalogue import CatalogueParseError, CatalogueStore
from label_portal.config import Settings, get_settings
from label_portal.identity import Identity, IdentityProvider, IdentityServiceError, SupabaseIdentityProvider
from label_portal.logger import configure_logging
from label_portal.models import (
    Artist,
    CreateFolderRequest,
    CreateShareRequest,
    MoveRequest,
    Release,
    SearchRequest,
    ShareLink,
    ShareLinkOut,
    SharedDownloadRequest,
    StoragePathRequest,
    StorageTargetRequest,
)
from label_portal.repository import ShareLinkRepository
from label_portal.sharing import ShareLinkError, ShareLinkService
from label_portal.storage import (
    ADMIN_CATEGORY,
    InvalidRemotePathError,
    RemoteStorageClient,
    StorageError,
    build_storage_client,
)
from label_portal.uploads import (
    DEMO_CATEGORY,
    USER_CATEGORIES,
    guess_stream_mime,
    is_allowed_demo,
    is_audio,
    unique_filename,
)


def join_remote(*parts: str) -> str:
    return re.sub(r"/+", "/", "/".join(parts))


def attachment_headers(filename: str) -> dict[str, str]:
    return {"Content-Disposition": f'attachment; filename="{quote(filename)}"'}


def create_app(
    settings: Settings | None = None,
    *,
    storage: RemoteStorageClient | None = None,
    identity: IdentityProvider | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    repository = ShareLinkRepository(settings.database_path)
    shares = ShareLinkService(repository, app_url=settings.app_url)
    storage = storage or build_storage_client(settings)
    identity = identity or SupabaseIdentityProvider.from_settings(settings)
    catalogue = CatalogueStore(settings.artists_file, settings.releases_file)

    async def sweep_periodically() -> None:
        while True:
            await asyncio.sleep(settings.share_sweep_interval_seconds)
            await run_in_threadpool(shares.sweep_expired)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        repository.init()
        sweeper = None
        if settings.share_sweep_interval_seconds > 0:
            sweeper = asyncio.create_task(sweep_periodically())
        logger.info("{} started ({}, storage via {})", settings.app_name, settings.app_env, storage.protocol)
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with suppress(asyncio.CancelledError):
                    await sweeper
            await storage.disconnect()
            await identity.aclose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.shares = shares
    app.state.storage = storage
    app.state.catalogue = catalogue

    def error_response(status_code: int, message: str, code: str) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"error": {"code": code, "message": message}},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
        missing_fields = [
            ".".join(str(item) for item in error["loc"] if item != "body")
            for error in exc.errors()
            if error.get("type") == "missing"
        ]
        if missing_fields:
            message = f"missing parameters: {', '.join(missing_fields)}"
        else:
            message = "invalid request parameters"
        return error_response(400, message, "bad_request")

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_: Request, exc: HTTPException):
        message = str(exc.detail) if exc.detail else "request failed"
        code_map = {
            400: "bad_request",
            401: "unauthorized",
            403: "forbidden",
            404: "not_found",
            413: "payload_too_large",
            500: "internal_error",
        }
        return error_response(exc.status_code, message, code_map.get(exc.status_code, "error"))

    @app.exception_handler(InvalidRemotePathError)
    async def invalid_path_handler(_: Request, exc: InvalidRemotePathError):
        return error_response(400, str(exc), "bad_request")

    internal_messages = {
        StorageError: "Remote storage operation failed",
        CatalogueParseError: "Catalogue file could not be parsed",
        IdentityServiceError: "Identity service unavailable",
        ShareLinkError: "Share link update failed",
        sqlite3.Error: "Share link store failure",
    }

    async def internal_error_handler(request: Request, exc: Exception):
        logger.opt(exception=exc).error("{} {} failed", request.method, request.url.path)
        for exc_type, message in internal_messages.items():
            if isinstance(exc, exc_type):
                return error_response(500, message, "internal_error")
        return error_response(500, "Internal server error", "internal_error")

    for exc_type in internal_messages:
        app.add_exception_handler(exc_type, internal_error_handler)
    app.add_exception_handler(Exception, internal_error_handler)

    def bearer_token(authorization: str | None) -> str | None:
        if not authorization or not authorization.startswith("Bearer "):
            return None
        return authorization[len("Bearer "):] or None

    async def authenticate(token: str | None) -> Identity:
        if not token:
            raise HTTPException(status_code=401, detail="Unauthorized")
        user = await identity.get_user(token)
        if user is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return user

    async def authenticate_admin(token: str | None) -> Identity:
        user = await authenticate(token)
        if not await identity.is_admin(user.id):
            raise HTTPException(status_code=401, detail="Unauthorized")
        return user

    async def require_user(authorization: str | None = Header(default=None)) -> Identity:
        return await authenticate(bearer_token(authorization))

    async def require_admin(authorization: str | None = Header(default=None)) -> Identity:
        return await authenticate_admin(bearer_token(authorization))

    def share_out(link: ShareLink) -> ShareLinkOut:
        return ShareLinkOut(
            **link.model_dump(exclude={"password_hash"}),
            requires_password=bool(link.password_hash),
            url=shares.public_url(link),
        )

    @app.get("/api/health")
    def health() -> dict:
        return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}

    # share links: admin side

    @app.post("/api/share/create")
    def create_share(payload: CreateShareRequest, user: Identity = Depends(require_admin)):
        try:
            link = shares.create_link(
                file_path=payload.file_path,
                file_name=payload.file_name,
                file_size=payload.file_size,
                created_by=user.id,
                expires_in_ms=payload.expires_in,
                password=payload.password,
                max_downloads=payload.max_downloads,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"success": True, "shareLink": share_out(link)}

    @app.get("/api/share/list")
    def list_shares(user: Identity = Depends(require_admin)):
        links = shares.list_links_by_creator(user.id)
        return {"success": True, "shareLinks": [share_out(link) for link in links]}

    @app.patch("/api/share/{link_id}/deactivate")
    def deactivate_share(link_id: str, user: Identity = Depends(require_admin)):
        shares.deactivate(link_id, user.id)
        return {"success": True, "message": "Share link deactivated"}

    @app.delete("/api/share/{link_id}")
    def delete_share(link_id: str, user: Identity = Depends(require_admin)):
        shares.delete(link_id, user.id)
        return {"success": True, "message": "Share link deleted"}

    # share links: public side

    @app.get("/api/shared/{token}")
    def shared_file_info(token: str):
        link = shares.get_link(token)
        if link is None:
            raise HTTPException(status_code=404, detail="Share link not found")
        return {
            "success": True,
            "file": {
                "name": link.file_name,
                "size": link.file_size,
                "requiresPassword": bool(link.password_hash),
                "expiresAt": link.expires_at,
                "maxDownloads": link.max_downloads,
                "downloadCount": link.download_count,
                "isActive": link.is_active,
            },
        }

    @app.post("/api/shared/{token}/download")
    async def download_shared_file(token: str, payload: SharedDownloadRequest | None = None):
        password = payload.password if payload else None
        validation = await run_in_threadpool(shares.validate_link, token, password)
        if not validation.valid:
            raise HTTPException(status_code=403, detail=validation.reason or "Access denied")

        link = validation.link
        data = await storage.download_file(link.file_path)
        await run_in_threadpool(shares.increment_download_count, token)
        logger.info("Shared file {} downloaded via link {}", link.file_path, link.id)
        return Response(
            content=data,
            media_type="application/octet-stream",
            headers=attachment_headers(link.file_name),
        )

    # admin storage

    @app.post("/api/admin-storage/list")
    async def list_admin_files(payload: StoragePathRequest, _: Identity = Depends(require_admin)):
        files = await storage.list_files(payload.path)
        return {"success": True, "files": files, "currentPath": payload.path}

    @app.post("/api/admin-storage/upload")
    async def upload_admin_file(
        file: UploadFile = File(...),
        path: str = Form("/"),
        _: Identity = Depends(require_admin),
    ):
        if not file.filename:
            raise HTTPException(status_code=400, detail="No file provided")
        remote_path = join_remote(path, file.filename)
        data = await file.read()
        logger.info("Admin upload {} ({:.2f} MB)", remote_path, len(data) / 1024 / 1024)
        await storage.upload_file(data, remote_path, ADMIN_CATEGORY)
        info = await storage.file_info(remote_path)
        return {"success": True, "file": info}

    @app.get("/api/admin-storage/stream")
    async def stream_admin_file(
        path: str | None = Query(default=None),
        token: str | None = Query(default=None),
        authorization: str | None = Header(default=None),
    ):
        # media elements cannot send headers, so the token may come in the query
        await authenticate_admin(token or bearer_token(authorization))
        if not path or path == "/":
            raise HTTPException(status_code=400, detail="Path is required")
        data = await storage.download_file(path)
        return Response(
            content=data,
            media_type=guess_stream_mime(path),
            headers={"Cache-Control": "public, max-age=3600"},
        )

    @app.post("/api/admin-storage/download")
    async def download_admin_file(payload: StorageTargetRequest, _: Identity = Depends(require_admin)):
        data = await storage.download_file(payload.path)
        filename = payload.path.rstrip("/").rsplit("/", 1)[-1] or "download"
        return Response(
            content=data,
            media_type="application/octet-stream",
            headers=attachment_headers(filename),
        )

    @app.post("/api/admin-storage/delete")
    async def delete_admin_file(payload: StorageTargetRequest, _: Identity = Depends(require_admin)):
        await storage.delete_file(payload.path)
        return {"success": True}

    @app.post("/api/admin-storage/create-folder")
    async def create_admin_folder(payload: CreateFolderRequest, _: Identity = Depends(require_admin)):
        remote_path = join_remote(payload.path, payload.name)
        await storage.create_directory(remote_path)
        return {"success": True, "path": remote_path}

    @app.post("/api/admin-storage/search")
    async def search_admin_files(payload: SearchRequest, _: Identity = Depends(require_admin)):
        matches = await storage.search(payload.path, payload.query)
        return {"success": True, "files": matches}

    @app.post("/api/admin-storage/move")
    async def move_admin_file(payload: MoveRequest, _: Identity = Depends(require_admin)):
        await storage.move_file(payload.source, payload.destination)
        return {"success": True}

    # catalogue

    @app.get("/api/catalogue/artists")
    def list_artists(_: Identity = Depends(require_admin)):
        return {"success": True, "artists": catalogue.list_artists()}

    @app.get("/api/catalogue/artists/{artist_id}")
    def get_artist(artist_id: int, _: Identity = Depends(require_admin)):
        artist = catalogue.get_artist(artist_id)
        if artist is None:
            raise HTTPException(status_code=404, detail="Artist not found")
        return {"success": True, "artist": artist}

    @app.post("/api/catalogue/artists")
    def add_artist(payload: Artist, _: Identity = Depends(require_admin)):
        return {"success": True, "artist": catalogue.add_artist(payload)}

    @app.delete("/api/catalogue/artists/{artist_id}")
    def delete_artist(artist_id: int, _: Identity = Depends(require_admin)):
        if not catalogue.delete_artist(artist_id):
            raise HTTPException(status_code=404, detail="Artist not found")
        return {"success": True}

    @app.get("/api/catalogue/releases")
    def list_releases(_: Identity = Depends(require_admin)):
        return {"success": True, "releases": catalogue.list_releases()}

    @app.get("/api/catalogue/releases/{release_id}")
    def get_release(release_id: int, _: Identity = Depends(require_admin)):
        release = catalogue.get_release(release_id)
        if release is None:
            raise HTTPException(status_code=404, detail="Release not found")
        return {"success": True, "release": release}

    @app.post("/api/catalogue/releases")
    def add_release(payload: Release, _: Identity = Depends(require_admin)):
        return {"success": True, "release": catalogue.add_release(payload)}

    @app.delete("/api/catalogue/releases/{release_id}")
    def delete_release(release_id: int, _: Identity = Depends(require_admin)):
        if not catalogue.delete_release(release_id):
            raise HTTPException(status_code=404, detail="Release not found")
        return {"success": True}

    # end-user uploads

    @app.post("/api/upload")
    async def upload_user_file(
        file: UploadFile | None = File(default=None),
        upload_type: str | None = Form(default=None, alias="type"),
        user: Identity = Depends(require_user),
    ):
        if file is None:
            raise HTTPException(status_code=400, detail="No file provided")
        if upload_type not in USER_CATEGORIES:
            raise HTTPException(status_code=400, detail="Invalid upload type")

        data = await file.read()
        if len(data) > settings.max_upload_size_bytes:
            raise HTTPException(status_code=413, detail="File exceeds max upload size")

        if upload_type == DEMO_CATEGORY:
            active = await identity.count_active_submissions(user.id)
            if active >= settings.max_active_submissions:
                raise HTTPException(
                    status_code=403,
                    detail=(
                        f"Upload quota exceeded. Maximum {settings.max_active_submissions} active demo "
                        "submissions allowed. Please wait for your pending demos to be reviewed."
                    ),
                )
            if len(data) > settings.max_demo_size_bytes:
                max_mb = settings.max_demo_size_bytes // (1024 * 1024)
                raise HTTPException(status_code=400, detail=f"File too large. Maximum size is {max_mb} MB.")
            if not is_allowed_demo(data, settings.allowed_demo_mimes):
                raise HTTPException(
                    status_code=400,
                    detail="Invalid file format. Only WAV and AIFF are allowed for demos.",
                )
        else:
            if not await identity.has_studio_access(user.id):
                raise HTTPException(
                    status_code=403,
                    detail="Access denied. Studio requests are only available to authorized clients.",
                )
            if not is_audio(data):
                raise HTTPException(status_code=400, detail="Invalid file format. Only audio files are allowed.")

        filename = unique_filename(file.filename or "")
        logger.info("User {} uploading {} ({:.2f} MB)", user.id, filename, len(data) / 1024 / 1024)
        result = await storage.upload_file(data, filename, upload_type)
        return {"success": True, "url": result.locator, "filename": filename}

    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run("label_portal.main:app", host=settings.host, port=settings.port)
