"""Share-link lifecycle: issuance, access checks, download counting, expiry."""

import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from uuid import uuid4

import bcrypt
from loguru import logger

from label_portal.models import ShareLink
from label_portal.repository import ShareLinkRepository, to_iso, utc_now

TOKEN_BYTES = 16
BCRYPT_ROUNDS = 10
# bcrypt only looks at the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72


class ShareLinkError(Exception):
    """Base error for share-link operations."""


class ShareLinkNotFoundError(ShareLinkError):
    """Raised when a token does not match any stored link."""


@dataclass(frozen=True)
class LinkValidation:
    valid: bool
    reason: str | None = None
    link: ShareLink | None = None


def generate_share_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def hash_password(password: str) -> str:
    encoded = password.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    encoded = password.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, password_hash.encode("utf-8"))
    except ValueError:
        return False


class ShareLinkService:
    def __init__(
        self,
        repository: ShareLinkRepository,
        *,
        app_url: str = "http://localhost:5173",
        token_factory: Callable[[], str] = generate_share_token,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.app_url = app_url.rstrip("/")
        self._token_factory = token_factory
        self._clock = clock

    def _new_token(self) -> str:
        token = self._token_factory()
        while self.repository.token_exists(token):
            token = self._token_factory()
        return token

    def create_link(
        self,
        *,
        file_path: str,
        file_name: str,
        file_size: int,
        created_by: str,
        expires_in_ms: int | None = None,
        password: str | None = None,
        max_downloads: int | None = None,
    ) -> ShareLink:
        token = self._new_token()
        now = self._clock()

        expires_at = None
        if expires_in_ms:
            expires_at = to_iso(now + timedelta(milliseconds=expires_in_ms))

        password_hash = hash_password(password) if password else None

        row = self.repository.insert_link(
            link_id=str(uuid4()),
            file_path=file_path,
            file_name=file_name,
            file_size=file_size,
            token=token,
            created_by=created_by,
            created_at=to_iso(now),
            expires_at=expires_at,
            password_hash=password_hash,
            max_downloads=max_downloads or None,
        )
        logger.info("Share link {} created by {} for {}", row["id"], created_by, file_path)
        return ShareLink(**row)

    def get_link(self, token: str) -> ShareLink | None:
        row = self.repository.get_by_token(token)
        return ShareLink(**row) if row else None

    def validate_link(self, token: str, password: str | None = None) -> LinkValidation:
        """Run the access checks in their fixed order; the first failure wins.

        Order: existence, active flag, expiry, download limit, password.
        A deactivated link reports "deactivated" even when it has also expired.
        """
        link = self.get_link(token)
        if link is None:
            return LinkValidation(valid=False, reason="Link not found")

        if not link.is_active:
            return LinkValidation(valid=False, reason="Link has been deactivated")

        if link.expires_at is not None and link.expires_at < self._clock():
            return LinkValidation(valid=False, reason="Link has expired")

        if link.max_downloads is not None and link.download_count >= link.max_downloads:
            return LinkValidation(valid=False, reason="Download limit reached")

        if link.password_hash:
            if not password:
                return LinkValidation(valid=False, reason="Password required")
            if not verify_password(password, link.password_hash):
                return LinkValidation(valid=False, reason="Invalid password")

        return LinkValidation(valid=True, link=link)

    def increment_download_count(self, token: str) -> None:
        updated = self.repository.increment_download_count(token, to_iso(self._clock()))
        if updated == 0:
            raise ShareLinkNotFoundError(f"no share link for token {token[:6]}...")

    def list_links_by_creator(self, created_by: str) -> list[ShareLink]:
        return [ShareLink(**row) for row in self.repository.list_by_creator(created_by)]

    def deactivate(self, link_id: str, requesting_user_id: str) -> None:
        # a foreign or unknown id touches zero rows and is not reported
        self.repository.deactivate(link_id, requesting_user_id)

    def delete(self, link_id: str, requesting_user_id: str) -> None:
        self.repository.delete(link_id, requesting_user_id)

    def sweep_expired(self) -> int:
        try:
            removed = self.repository.delete_expired(to_iso(self._clock()))
        except sqlite3.Error:
            logger.exception("Expired share link sweep failed")
            return 0
        if removed:
            logger.info("Removed {} expired share links", removed)
        return removed

    def public_url(self, link: ShareLink) -> str:
        return f"{self.app_url}/shared/{link.token}"
