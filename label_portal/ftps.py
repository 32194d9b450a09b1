import io
import posixpath
import ssl
from calendar import timegm
from datetime import datetime
from ftplib import FTP_TLS, all_errors, error_perm, error_reply, error_temp

from loguru import logger

from label_portal.models import RemoteFile
from label_portal.storage import RemoteStorageClient, rights_from_mode

MLSD_FACTS = ["type", "size", "modify", "unix.mode", "unix.uid", "unix.gid", "unix.owner", "unix.group"]


def parse_mlsx_line(line: str) -> tuple[str, dict[str, str]]:
    """Split an MLSD/MLST entry into (name, facts); fact keys are lowercased."""
    facts_part, _, name = line.lstrip(" ").partition(" ")
    facts = {}
    for fact in facts_part.rstrip(";").split(";"):
        key, _, value = fact.partition("=")
        if key:
            facts[key.lower()] = value
    return name, facts


def _modify_ms(value: str | None) -> int:
    if not value:
        return 0
    try:
        moment = datetime.strptime(value[:14], "%Y%m%d%H%M%S")
    except ValueError:
        return 0
    return timegm(moment.timetuple()) * 1000


def _int_fact(facts: dict[str, str], *keys: str) -> int | None:
    for key in keys:
        value = facts.get(key)
        if value is not None and value.isdigit():
            return int(value)
    return None


def _to_remote_file(name: str, facts: dict[str, str]) -> RemoteFile:
    kind = facts.get("type", "file").lower()
    mode_fact = facts.get("unix.mode")
    mode = int(mode_fact, 8) if mode_fact else None
    modified = _modify_ms(facts.get("modify"))
    return RemoteFile(
        name=posixpath.basename(name.rstrip("/")) or name,
        type="directory" if kind in ("dir", "cdir", "pdir") else "file",
        size=_int_fact(facts, "size", "sizd") or 0,
        modify_time=modified,
        access_time=modified,
        rights=rights_from_mode(mode),
        owner=_int_fact(facts, "unix.uid", "unix.owner"),
        group=_int_fact(facts, "unix.gid", "unix.group"),
        is_link="slink" in kind,
    )


class FtpsStorageClient(RemoteStorageClient):
    """Storage client over one explicit-TLS FTP control connection."""

    protocol = "ftps"
    connection_errors = RemoteStorageClient.connection_errors + (ssl.SSLError,)

    def __init__(self, settings):
        super().__init__(settings)
        self._ftp: FTP_TLS | None = None

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self.settings.ftps_verify_certificate:
            # shared hosts commonly present self-signed certificates
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _open(self) -> None:
        if self._ftp is not None:
            self._close()
        ftp = FTP_TLS(context=self._ssl_context(), timeout=self.settings.storage_timeout_seconds)
        try:
            ftp.connect(self.settings.storage_host, self.settings.default_storage_port)
            ftp.login(self.settings.storage_username, self.settings.storage_password)
            ftp.prot_p()
        except Exception:
            ftp.close()
            raise
        self._ftp = ftp

    def _close(self) -> None:
        if self._ftp is None:
            return
        try:
            self._ftp.quit()
        except all_errors as exc:
            logger.debug("FTPS QUIT failed ({}); closing socket", exc)
            self._ftp.close()
        self._ftp = None

    def _is_alive(self) -> bool:
        # server-side drops surface as EOFError; a closed FTP object has no sock
        return self._ftp is not None and self._ftp.sock is not None

    def _list(self, path: str) -> list[RemoteFile]:
        entries = []
        for name, facts in self._ftp.mlsd(path, facts=MLSD_FACTS):
            if facts.get("type", "").lower() in ("cdir", "pdir"):
                continue
            entries.append(_to_remote_file(name, facts))
        return entries

    def _stat(self, path: str) -> RemoteFile:
        response = self._ftp.sendcmd(f"MLST {path}")
        for line in response.splitlines()[1:]:
            if line.startswith(" "):
                _, facts = parse_mlsx_line(line)
                return _to_remote_file(posixpath.basename(path) or "/", facts)
        raise error_perm(f"550 no MLST facts returned for {path}")

    def _exists(self, path: str) -> bool:
        try:
            self._stat(path)
        except (error_perm, error_temp, error_reply):
            return False
        return True

    def _makedirs(self, path: str) -> None:
        current = "/"
        for part in path.strip("/").split("/"):
            if not part:
                continue
            current = posixpath.join(current, part)
            try:
                self._ftp.cwd(current)
            except error_perm:
                self._ftp.mkd(current)
        self._ftp.cwd("/")

    def _put(self, data: bytes, path: str) -> None:
        self._ftp.storbinary(f"STOR {path}", io.BytesIO(data))

    def _get(self, path: str) -> bytes:
        buffer = io.BytesIO()
        self._ftp.retrbinary(f"RETR {path}", buffer.write)
        return buffer.getvalue()

    def _remove_file(self, path: str) -> None:
        self._ftp.delete(path)

    def _remove_tree(self, path: str) -> None:
        for name, facts in list(self._ftp.mlsd(path, facts=["type"])):
            kind = facts.get("type", "").lower()
            if kind in ("cdir", "pdir"):
                continue
            child = posixpath.join(path, name)
            if kind == "dir":
                self._remove_tree(child)
            else:
                self._ftp.delete(child)
        self._ftp.rmd(path)

    def _rename(self, old_path: str, new_path: str) -> None:
        self._ftp.rename(old_path, new_path)
