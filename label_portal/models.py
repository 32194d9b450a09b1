import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def slugify(value: str) -> str:
    ascii_value = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-z0-9]+", "-", ascii_value.lower()).strip("-")


class ShareLink(BaseModel):
    id: str
    file_path: str
    file_name: str
    file_size: int
    token: str
    created_by: str
    created_at: datetime
    expires_at: datetime | None = None
    password_hash: str | None = None
    max_downloads: int | None = None
    download_count: int = 0
    is_active: bool = True
    last_accessed_at: datetime | None = None


class ShareLinkOut(BaseModel):
    """Admin view of a link; the password hash never leaves the server."""

    id: str
    file_path: str
    file_name: str
    file_size: int
    token: str
    created_by: str
    created_at: datetime
    expires_at: datetime | None = None
    requires_password: bool
    max_downloads: int | None = None
    download_count: int
    is_active: bool
    last_accessed_at: datetime | None = None
    url: str


class CreateShareRequest(BaseModel):
    file_path: str = Field(alias="filePath", min_length=1)
    file_name: str = Field(alias="fileName", min_length=1)
    file_size: int = Field(alias="fileSize", gt=0)
    expires_in: int | None = Field(default=None, alias="expiresIn")
    password: str | None = None
    max_downloads: int | None = Field(default=None, alias="maxDownloads", ge=0)

    model_config = ConfigDict(populate_by_name=True)


class SharedDownloadRequest(BaseModel):
    password: str | None = None


class RemoteFileRights(BaseModel):
    user: str
    group: str
    other: str


class RemoteFile(BaseModel):
    name: str
    type: str
    size: int = 0
    modify_time: int = 0
    access_time: int = 0
    rights: RemoteFileRights = RemoteFileRights(user="", group="", other="")
    owner: int | None = None
    group: int | None = None
    is_link: bool = Field(default=False, exclude=True)


class SearchMatch(BaseModel):
    name: str
    size: int
    type: str
    path: str


@dataclass(frozen=True)
class UploadResult:
    remote_path: str
    url: str | None = None

    @property
    def locator(self) -> str:
        return self.url or self.remote_path


class StoragePathRequest(BaseModel):
    path: str = "/"


class StorageTargetRequest(BaseModel):
    path: str = Field(min_length=1)


class CreateFolderRequest(BaseModel):
    path: str = Field(min_length=1)
    name: str = Field(min_length=1)


class SearchRequest(BaseModel):
    path: str = "/"
    query: str = Field(min_length=1)


class MoveRequest(BaseModel):
    source: str = Field(alias="from", min_length=1)
    destination: str = Field(alias="to", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class Artist(BaseModel):
    id: int = 0
    name: str
    act: str = ""
    description: str = ""
    style: list[str] = []
    social: dict[str, str] = {}
    country: str = ""
    image_url: str = ""
    videos: list[str] = []
    slug: str = ""

    @field_validator("social", mode="before")
    @classmethod
    def drop_empty_handles(cls, value):
        if isinstance(value, dict):
            return {key: handle for key, handle in value.items() if handle}
        return value

    @model_validator(mode="after")
    def derive_slug(self):
        self.slug = slugify(self.name)
        return self


class Release(BaseModel):
    id: int = 0
    title: str
    artist: str
    type: str
    release_date: str = Field(alias="releaseDate")
    catalog_number: str | None = Field(default=None, alias="catalogNumber")
    cover_url: str = Field(default="", alias="coverUrl")
    bandcamp_url: str = Field(default="", alias="bandcampUrl")
    bandcamp_id: str = Field(default="", alias="bandcampId")
    description: str | None = None
    tracklist: list[str] | None = None

    model_config = ConfigDict(populate_by_name=True)
