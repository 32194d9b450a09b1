import io
import posixpath
import stat

import paramiko
from loguru import logger

from label_portal.models import RemoteFile
from label_portal.storage import RemoteStorageClient, rights_from_mode, type_from_mode


def _to_remote_file(name: str, attrs: paramiko.SFTPAttributes) -> RemoteFile:
    mode = attrs.st_mode
    return RemoteFile(
        name=name,
        type=type_from_mode(mode),
        size=attrs.st_size or 0,
        modify_time=int((attrs.st_mtime or 0) * 1000),
        access_time=int((attrs.st_atime or 0) * 1000),
        rights=rights_from_mode(mode),
        owner=attrs.st_uid,
        group=attrs.st_gid,
        is_link=mode is not None and stat.S_ISLNK(mode),
    )


class SftpStorageClient(RemoteStorageClient):
    """Storage client over a single paramiko SSH transport."""

    protocol = "sftp"
    connection_errors = RemoteStorageClient.connection_errors + (paramiko.SSHException,)

    def __init__(self, settings):
        super().__init__(settings)
        self._ssh: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None

    def _open(self) -> None:
        if self._ssh is not None:
            try:
                self._close()
            except Exception as exc:
                logger.debug("Closing stale SFTP session failed: {}", exc)
        timeout = self.settings.storage_timeout_seconds
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.settings.storage_host,
                port=self.settings.default_storage_port,
                username=self.settings.storage_username,
                password=self.settings.storage_password or None,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                look_for_keys=not self.settings.storage_password,
                allow_agent=not self.settings.storage_password,
            )
            transport = client.get_transport()
            if transport is not None:
                transport.set_keepalive(self.settings.sftp_keepalive_seconds)
            sftp = client.open_sftp()
        except Exception:
            client.close()
            raise
        self._ssh = client
        self._sftp = sftp

    def _close(self) -> None:
        sftp, ssh = self._sftp, self._ssh
        self._sftp = None
        self._ssh = None
        try:
            if sftp is not None:
                sftp.close()
        finally:
            if ssh is not None:
                ssh.close()

    def _is_alive(self) -> bool:
        if self._ssh is None:
            return False
        transport = self._ssh.get_transport()
        return transport is not None and transport.is_active()

    def _list(self, path: str) -> list[RemoteFile]:
        return [_to_remote_file(attrs.filename, attrs) for attrs in self._sftp.listdir_attr(path)]

    def _stat(self, path: str) -> RemoteFile:
        # lstat: a link to a directory must not be treated as the directory
        return _to_remote_file(posixpath.basename(path) or "/", self._sftp.lstat(path))

    def _exists(self, path: str) -> bool:
        try:
            self._sftp.stat(path)
        except OSError:
            return False
        return True

    def _makedirs(self, path: str) -> None:
        current = "/"
        for part in path.strip("/").split("/"):
            if not part:
                continue
            current = posixpath.join(current, part)
            if not self._exists(current):
                self._sftp.mkdir(current)

    def _put(self, data: bytes, path: str) -> None:
        self._sftp.putfo(io.BytesIO(data), path)

    def _get(self, path: str) -> bytes:
        buffer = io.BytesIO()
        self._sftp.getfo(path, buffer)
        return buffer.getvalue()

    def _remove_file(self, path: str) -> None:
        self._sftp.remove(path)

    def _remove_tree(self, path: str) -> None:
        for attrs in self._sftp.listdir_attr(path):
            child = posixpath.join(path, attrs.filename)
            if attrs.st_mode is not None and stat.S_ISDIR(attrs.st_mode):
                self._remove_tree(child)
            else:
                self._sftp.remove(child)
        self._sftp.rmdir(path)

    def _rename(self, old_path: str, new_path: str) -> None:
        self._sftp.rename(old_path, new_path)
