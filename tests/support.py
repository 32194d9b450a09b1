import posixpath
import time

from label_portal.config import Settings
from label_portal.identity import Identity, IdentityProvider
from label_portal.models import RemoteFile
from label_portal.storage import RemoteStorageClient

ADMIN_TOKEN = "admin-token"
OTHER_ADMIN_TOKEN = "other-admin-token"
USER_TOKEN = "user-token"
STUDIO_TOKEN = "studio-token"

WAV_BYTES = b"RIFF\x24\x00\x00\x00WAVEfmt " + b"\x00" * 64
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class MemoryStorageClient(RemoteStorageClient):
    """Storage variant backed by dictionaries; counts handshakes."""

    protocol = "memory"

    def __init__(self, settings, *, handshake_delay: float = 0.0, fail_handshakes: int = 0):
        super().__init__(settings)
        self.handshake_delay = handshake_delay
        self.fail_handshakes = fail_handshakes
        self.handshakes = 0
        self.closes = 0
        self.drop_next_call = False
        self.alive = False
        self.files: dict[str, bytes] = {}
        self.dirs: set[str] = {"/"}
        self.links: set[str] = set()

    def seed_file(self, path: str, data: bytes) -> None:
        self._makedirs(posixpath.dirname(path))
        self.files[path] = data

    def seed_link(self, path: str) -> None:
        self._makedirs(posixpath.dirname(path))
        self.links.add(path)

    def kill_session(self) -> None:
        self.alive = False

    def _check_drop(self) -> None:
        if not self.alive:
            raise OSError("Socket is closed")
        if self.drop_next_call:
            self.drop_next_call = False
            raise EOFError("connection reset by peer")

    def _open(self) -> None:
        self.handshakes += 1
        time.sleep(self.handshake_delay)
        if self.handshakes <= self.fail_handshakes:
            raise ConnectionRefusedError("connection refused")
        self.alive = True

    def _close(self) -> None:
        self.closes += 1
        self.alive = False

    def _is_alive(self) -> bool:
        return self.alive

    def _children(self, path: str) -> list[str]:
        names = set()
        for candidate in self.dirs | set(self.files) | self.links:
            if candidate != path and posixpath.dirname(candidate) == path:
                names.add(posixpath.basename(candidate))
        return sorted(names)

    def _list(self, path: str) -> list[RemoteFile]:
        self._check_drop()
        if path not in self.dirs:
            raise FileNotFoundError(path)
        entries = [RemoteFile(name=".", type="directory"), RemoteFile(name="..", type="directory")]
        for name in self._children(path):
            entries.append(self._stat(posixpath.join(path, name)))
        return entries

    def _stat(self, path: str) -> RemoteFile:
        name = posixpath.basename(path) or "/"
        if path in self.links:
            return RemoteFile(name=name, type="directory", is_link=True)
        if path in self.dirs:
            return RemoteFile(name=name, type="directory")
        if path in self.files:
            return RemoteFile(name=name, type="file", size=len(self.files[path]))
        raise FileNotFoundError(path)

    def _exists(self, path: str) -> bool:
        return path in self.dirs or path in self.files or path in self.links

    def _makedirs(self, path: str) -> None:
        current = "/"
        for part in path.strip("/").split("/"):
            if part:
                current = posixpath.join(current, part)
                self.dirs.add(current)

    def _put(self, data: bytes, path: str) -> None:
        if posixpath.dirname(path) not in self.dirs:
            raise FileNotFoundError(posixpath.dirname(path))
        self.files[path] = data

    def _get(self, path: str) -> bytes:
        self._check_drop()
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def _remove_file(self, path: str) -> None:
        self.links.discard(path)
        self.files.pop(path, None)

    def _remove_tree(self, path: str) -> None:
        prefix = path + "/"
        self.files = {key: value for key, value in self.files.items() if not key.startswith(prefix)}
        self.dirs = {key for key in self.dirs if key != path and not key.startswith(prefix)}

    def _rename(self, old_path: str, new_path: str) -> None:
        if old_path in self.files:
            self.files[new_path] = self.files.pop(old_path)
            return
        prefix = old_path + "/"
        self.dirs = {new_path + key[len(old_path):] if key == old_path or key.startswith(prefix) else key for key in self.dirs}
        self.files = {
            (new_path + key[len(old_path):] if key.startswith(prefix) else key): value
            for key, value in self.files.items()
        }


class FakeIdentityProvider(IdentityProvider):
    def __init__(self):
        self.users = {
            ADMIN_TOKEN: Identity(id="admin-1", email="admin@label.test"),
            OTHER_ADMIN_TOKEN: Identity(id="admin-2", email="second@label.test"),
            USER_TOKEN: Identity(id="user-1", email="artist@label.test"),
            STUDIO_TOKEN: Identity(id="user-2", email="studio@label.test"),
        }
        self.admins = {"admin-1", "admin-2"}
        self.studio = {"user-2"}
        self.submissions: dict[str, int] = {}

    async def get_user(self, token):
        return self.users.get(token)

    async def is_admin(self, user_id):
        return user_id in self.admins

    async def has_studio_access(self, user_id):
        return user_id in self.studio

    async def count_active_submissions(self, user_id):
        return self.submissions.get(user_id, 0)


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "database_path": str(tmp_path / "share_links.db"),
        "admin_root": "/admin",
        "public_root": "/public",
        "public_url": "https://cdn.label.test/uploads",
        "app_url": "https://label.test",
        "connect_retries": 1,
        "connect_retry_delay_seconds": 0,
        "share_sweep_interval_seconds": 0,
        "artists_file": str(tmp_path / "artists.ts"),
        "releases_file": str(tmp_path / "releases.ts"),
    }
    values.update(overrides)
    return Settings(**values)
