"""Remote storage client: one long-lived connection per process.

The base class owns everything that does not depend on the wire protocol:
connection reuse, path resolution against the configured roots, category
mapping for uploads and the recursive search walk. Subclasses implement the
blocking primitives (``_open``, ``_list``, ``_put`` ...) on top of paramiko or
ftplib; the base runs them in a worker thread so the event loop never blocks.
"""

import asyncio
import posixpath
import stat
from abc import ABC, abstractmethod

from loguru import logger

from label_portal.config import Settings
from label_portal.models import RemoteFile, RemoteFileRights, SearchMatch, UploadResult

ADMIN_CATEGORY = "admin"
PUBLIC_CATEGORIES = ("label-submissions", "studio-requests")


class StorageError(Exception):
    """Raised for remote storage failures that are not protocol exceptions."""


class InvalidRemotePathError(ValueError):
    """Raised when a requested path falls outside its storage root."""


def normalize_root(root: str) -> str:
    cleaned = root.replace("\\", "/").strip("/")
    return posixpath.normpath("/" + cleaned) if cleaned else "/"


def resolve_path(root: str, relative: str) -> str:
    candidate = posixpath.normpath(posixpath.join(root, (relative or "").replace("\\", "/").lstrip("/")))
    prefix = root if root.endswith("/") else root + "/"
    if candidate != root and not candidate.startswith(prefix):
        raise InvalidRemotePathError(f"path escapes storage root: {relative}")
    return candidate


def rights_from_mode(mode: int | None) -> RemoteFileRights:
    if mode is None:
        return RemoteFileRights(user="", group="", other="")

    def triplet(shift: int) -> str:
        bits = (mode >> shift) & 0o7
        return "".join(flag for flag, mask in (("r", 4), ("w", 2), ("x", 1)) if bits & mask)

    return RemoteFileRights(user=triplet(6), group=triplet(3), other=triplet(0))


def type_from_mode(mode: int | None) -> str:
    return "directory" if mode is not None and stat.S_ISDIR(mode) else "file"


class RemoteStorageClient(ABC):
    protocol = "remote"
    # errors that mean the session itself is gone, not just one command
    connection_errors: tuple[type[BaseException], ...] = (EOFError, ConnectionError, TimeoutError)

    def __init__(self, settings: Settings):
        self.settings = settings
        self.admin_root = normalize_root(settings.admin_root)
        self.public_root = normalize_root(settings.public_root)
        self.public_url = settings.public_url.rstrip("/")
        self._connected = False
        self._connecting: asyncio.Task | None = None
        self._io_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._connected:
            if self._is_alive():
                logger.debug("Reusing existing {} connection", self.protocol)
                return
            logger.warning("{} session is no longer alive; reconnecting", self.protocol)
            await self._drop()

        if self._connecting is None or self._connecting.done():
            self._connecting = asyncio.ensure_future(self._establish())
            self._connecting.add_done_callback(self._clear_connecting)
        else:
            logger.debug("Waiting for ongoing {} connection", self.protocol)

        await asyncio.shield(self._connecting)

    def _clear_connecting(self, task: asyncio.Task) -> None:
        if self._connecting is task:
            self._connecting = None

    async def _establish(self) -> None:
        attempts = max(1, self.settings.connect_retries)
        delay = self.settings.connect_retry_delay_seconds
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.to_thread(self._open)
            except Exception as exc:
                self._connected = False
                if attempt == attempts:
                    logger.error("{} connection to {} failed: {}", self.protocol, self.settings.storage_host, exc)
                    raise
                logger.warning(
                    "{} connection attempt {}/{} failed: {}; retrying in {:.1f}s",
                    self.protocol,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
            else:
                self._connected = True
                logger.info("{} connection established to {}", self.protocol, self.settings.storage_host)
                return

    async def disconnect(self) -> None:
        pending = self._connecting
        if pending is not None and not pending.done():
            # let an in-flight handshake finish so its session gets closed below
            try:
                await asyncio.shield(pending)
            except Exception as exc:
                logger.debug("{} handshake pending at disconnect failed: {}", self.protocol, exc)
        if not self._connected:
            return
        async with self._io_lock:
            await asyncio.to_thread(self._close)
            self._connected = False
        logger.info("{} connection closed", self.protocol)

    async def _drop(self) -> None:
        """Forget a dead session, releasing whatever the protocol library still holds."""
        self._connected = False
        try:
            await asyncio.to_thread(self._close)
        except Exception as exc:
            logger.debug("Closing stale {} session failed: {}", self.protocol, exc)

    def _is_alive(self) -> bool:
        return True

    async def _run(self, func, *args):
        operation = func.__name__.strip("_")
        try:
            await self.connect()
        except Exception as exc:
            raise StorageError(f"{self.protocol} connection failed: {exc}") from exc

        async with self._io_lock:
            try:
                return await asyncio.to_thread(func, *args)
            except Exception as exc:
                # a dead transport often surfaces as a plain OSError
                if isinstance(exc, self.connection_errors) or not self._is_alive():
                    logger.warning("{} connection lost during {}; reconnecting on next call", self.protocol, operation)
                    await self._drop()
                    raise StorageError(f"{self.protocol} connection lost: {exc}") from exc
                raise StorageError(f"{self.protocol} {operation} failed: {exc}") from exc

    def resolve(self, relative: str) -> str:
        return resolve_path(self.admin_root, relative)

    def _resolve_mutable(self, relative: str) -> str:
        full = self.resolve(relative)
        if full == self.admin_root:
            raise InvalidRemotePathError("the storage root itself cannot be changed")
        return full

    async def upload_file(self, data: bytes, path: str, category: str) -> UploadResult:
        if category == ADMIN_CATEGORY:
            remote_path = self._resolve_mutable(path)
            url = None
        elif category in PUBLIC_CATEGORIES:
            category_root = posixpath.join(self.public_root, category)
            remote_path = resolve_path(category_root, path)
            if remote_path == category_root:
                raise InvalidRemotePathError("a file name is required")
            url = f"{self.public_url}/{category}/{posixpath.relpath(remote_path, category_root)}"
        else:
            raise InvalidRemotePathError(f"unknown upload category: {category}")

        logger.info("Uploading {} bytes to {}", len(data), remote_path)
        await self._run(self._upload_blocking, data, remote_path)
        return UploadResult(remote_path=remote_path, url=url)

    def _upload_blocking(self, data: bytes, remote_path: str) -> None:
        self._makedirs(posixpath.dirname(remote_path))
        self._put(data, remote_path)

    async def download_file(self, path: str) -> bytes:
        full = self.resolve(path)
        logger.info("Downloading {}", full)
        return await self._run(self._get, full)

    async def delete_file(self, path: str) -> None:
        full = self._resolve_mutable(path)
        logger.info("Deleting {}", full)
        await self._run(self._delete_blocking, full)

    def _delete_blocking(self, full: str) -> None:
        info = self._stat(full)
        if info.type == "directory" and not info.is_link:
            self._remove_tree(full)
        else:
            self._remove_file(full)

    async def list_files(self, path: str = "/") -> list[RemoteFile]:
        full = self.resolve(path)
        entries = await self._run(self._list, full)
        return [entry for entry in entries if entry.name not in (".", "..")]

    async def search(self, path: str, query: str) -> list[SearchMatch]:
        full = self.resolve(path)
        return await self._run(self._search_blocking, full, query)

    def _search_blocking(self, start: str, query: str) -> list[SearchMatch]:
        needle = query.lower()
        max_depth = self.settings.search_max_depth
        matches: list[SearchMatch] = []
        visited: set[str] = set()

        def walk(directory: str, depth: int) -> None:
            if directory in visited:
                return
            visited.add(directory)
            for entry in self._list(directory):
                if entry.name in (".", ".."):
                    continue
                item_path = posixpath.join(directory, entry.name)
                is_dir = entry.type == "directory"
                if needle in entry.name.lower():
                    matches.append(
                        SearchMatch(
                            name=entry.name,
                            size=entry.size,
                            type="d" if is_dir else "-",
                            path=posixpath.relpath(item_path, self.admin_root),
                        )
                    )
                # symlinks are never followed
                if is_dir and not entry.is_link and depth < max_depth:
                    walk(item_path, depth + 1)

        walk(start, 0)
        return matches

    async def create_directory(self, path: str) -> RemoteFile:
        full = self._resolve_mutable(path)
        logger.info("Creating directory {}", full)
        return await self._run(self._mkdir_blocking, full)

    def _mkdir_blocking(self, full: str) -> RemoteFile:
        self._makedirs(full)
        return self._stat(full)

    async def move_file(self, old_path: str, new_path: str) -> None:
        source = self._resolve_mutable(old_path)
        target = self._resolve_mutable(new_path)
        logger.info("Moving {} to {}", source, target)
        await self._run(self._move_blocking, source, target)

    def _move_blocking(self, source: str, target: str) -> None:
        self._makedirs(posixpath.dirname(target))
        self._rename(source, target)

    async def exists(self, path: str) -> bool:
        return await self._run(self._exists, self.resolve(path))

    async def file_info(self, path: str) -> RemoteFile:
        return await self._run(self._stat, self.resolve(path))

    @abstractmethod
    def _open(self) -> None: ...

    @abstractmethod
    def _close(self) -> None: ...

    @abstractmethod
    def _list(self, path: str) -> list[RemoteFile]: ...

    @abstractmethod
    def _stat(self, path: str) -> RemoteFile: ...

    @abstractmethod
    def _exists(self, path: str) -> bool: ...

    @abstractmethod
    def _makedirs(self, path: str) -> None: ...

    @abstractmethod
    def _put(self, data: bytes, path: str) -> None: ...

    @abstractmethod
    def _get(self, path: str) -> bytes: ...

    @abstractmethod
    def _remove_file(self, path: str) -> None: ...

    @abstractmethod
    def _remove_tree(self, path: str) -> None: ...

    @abstractmethod
    def _rename(self, old_path: str, new_path: str) -> None: ...


def build_storage_client(settings: Settings) -> RemoteStorageClient:
    if settings.storage_protocol == "sftp":
        from label_portal.sftp import SftpStorageClient

        return SftpStorageClient(settings)
    if settings.storage_protocol == "ftps":
        from label_portal.ftps import FtpsStorageClient

        return FtpsStorageClient(settings)
    raise StorageError(f"unsupported storage protocol: {settings.storage_protocol}")
