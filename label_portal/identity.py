"""Caller identity and role lookups against the Supabase auth and REST APIs."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from label_portal.config import Settings

ACTIVE_SUBMISSION_STATUSES = ("pending", "under_review")


class IdentityServiceError(Exception):
    """Raised when the identity service cannot answer a lookup."""


@dataclass(frozen=True)
class Identity:
    id: str
    email: str | None = None


class IdentityProvider(ABC):
    @abstractmethod
    async def get_user(self, token: str) -> Identity | None:
        """Resolve a bearer token; None when the token is not valid."""

    @abstractmethod
    async def is_admin(self, user_id: str) -> bool: ...

    @abstractmethod
    async def has_studio_access(self, user_id: str) -> bool: ...

    @abstractmethod
    async def count_active_submissions(self, user_id: str) -> int: ...

    async def aclose(self) -> None:
        return None


class SupabaseIdentityProvider(IdentityProvider):
    def __init__(
        self,
        *,
        base_url: str,
        anon_key: str,
        service_key: str,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._anon_key = anon_key
        self._service_key = service_key
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseIdentityProvider":
        return cls(
            base_url=settings.identity_url,
            anon_key=settings.identity_anon_key,
            service_key=settings.identity_service_key,
            timeout_seconds=settings.identity_timeout_seconds,
        )

    def _service_headers(self) -> dict[str, str]:
        return {"apikey": self._service_key, "Authorization": f"Bearer {self._service_key}"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise IdentityServiceError(f"identity service unreachable: {exc}") from exc

    async def get_user(self, token: str) -> Identity | None:
        response = await self._request(
            "GET",
            "/auth/v1/user",
            headers={"apikey": self._anon_key, "Authorization": f"Bearer {token}"},
        )
        if response.status_code in (401, 403, 404):
            return None
        if response.status_code >= 400:
            raise IdentityServiceError(f"user lookup failed with status {response.status_code}")
        payload = response.json()
        if not payload.get("id"):
            return None
        return Identity(id=payload["id"], email=payload.get("email"))

    async def _profile(self, user_id: str) -> dict[str, Any] | None:
        response = await self._request(
            "GET",
            "/rest/v1/profiles",
            params={"id": f"eq.{user_id}", "select": "*"},
            headers=self._service_headers(),
        )
        if response.status_code >= 400:
            raise IdentityServiceError(f"profile lookup failed with status {response.status_code}")
        rows = response.json()
        return rows[0] if rows else None

    async def is_admin(self, user_id: str) -> bool:
        profile = await self._profile(user_id)
        return bool(profile) and profile.get("role") == "admin"

    async def has_studio_access(self, user_id: str) -> bool:
        profile = await self._profile(user_id)
        return bool(profile) and profile.get("has_studio_access") is True

    async def count_active_submissions(self, user_id: str) -> int:
        statuses = ",".join(ACTIVE_SUBMISSION_STATUSES)
        response = await self._request(
            "HEAD",
            "/rest/v1/label_submissions",
            params={"user_id": f"eq.{user_id}", "status": f"in.({statuses})", "select": "*"},
            headers={**self._service_headers(), "Prefer": "count=exact"},
        )
        if response.status_code >= 400:
            raise IdentityServiceError(f"submission count failed with status {response.status_code}")
        # Content-Range: 0-2/3 or */0
        content_range = response.headers.get("content-range", "")
        total = content_range.rpartition("/")[2]
        if not total.isdigit():
            logger.warning("Unexpected Content-Range {!r} for submission count", content_range)
            raise IdentityServiceError("submission count missing from response")
        return int(total)

    async def aclose(self) -> None:
        await self._client.aclose()
