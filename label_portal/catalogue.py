"""Artists and releases kept as array literals inside the site's TypeScript sources.

Every mutation re-reads the whole file, changes the list in memory and
regenerates the file from scratch, helper functions included.
"""

import json
import re
import threading
from pathlib import Path

import json5
from loguru import logger
from pydantic import BaseModel, ValidationError

from label_portal.models import Artist, Release

ARTISTS = "artists"
RELEASES = "releases"

_PATTERNS = {
    ARTISTS: re.compile(r"const artistsData = \[([\s\S]*?)\n\]"),
    RELEASES: re.compile(r"export const releases: Release\[\] = \[([\s\S]*?)\n\]"),
}
_MODELS = {ARTISTS: Artist, RELEASES: Release}
_IDENTIFIER = re.compile(r"[A-Za-z_$][\w$]*")
_ENTRIES = "__ENTRIES__"

ARTISTS_TEMPLATE = """import type { Artist } from "../types/artist"
import { slugify } from "../utils/slugify"

const artistsData = [
__ENTRIES__
]

// Add slugs to all artists
export const artists: Artist[] = artistsData.map((artist) => ({
  ...artist,
  slug: slugify(artist.name),
  videos: artist.videos || [],
}))

// Helper functions
export function getArtistBySlug(slug: string): Artist | undefined {
  return artists.find((artist) => artist.slug === slug)
}

export function getArtistById(id: number): Artist | undefined {
  return artists.find((artist) => artist.id === id)
}

export function getAllStyles(): string[] {
  const styles = new Set<string>()
  artists.forEach((artist) => {
    artist.style.forEach((s) => styles.add(s))
  })
  return Array.from(styles).sort()
}

export function getAllCountries(): string[] {
  const countries = new Set<string>()
  artists.forEach((artist) => countries.add(artist.country))
  return Array.from(countries).sort()
}
"""

RELEASES_TEMPLATE = """import type { Release } from "../types/release"

export const releases: Release[] = [
__ENTRIES__
]

// Helper functions
export function getReleaseById(id: number): Release | undefined {
  return releases.find((release) => release.id === id)
}

export function getReleasesByArtist(artistName: string): Release[] {
  return releases.filter((release) => {
    const releaseLower = release.artist.toLowerCase()
    const titleLower = release.title.toLowerCase()
    const artistLower = artistName.toLowerCase()

    // Match if artist name is in the artist field or in the title
    return releaseLower.includes(artistLower) || titleLower.includes(artistLower)
  })
}

export function getReleasesByType(type: Release["type"]): Release[] {
  return releases.filter((release) => release.type === type)
}

export function getReleasesByYear(year: string): Release[] {
  return releases.filter((release) => release.releaseDate.includes(year))
}
"""


class CatalogueParseError(Exception):
    """Raised when a catalogue source file does not contain the expected array."""


def js_string(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def js_key(key: str) -> str:
    return key if _IDENTIFIER.fullmatch(key) else js_string(key)


def js_string_list(values: list[str]) -> str:
    return "[" + ", ".join(js_string(value) for value in values) + "]"


def artist_to_ts(artist: Artist) -> str:
    lines = [
        "  {",
        f"    id: {artist.id},",
        f"    name: {js_string(artist.name)},",
        f"    act: {js_string(artist.act)},",
        f"    description: {js_string(artist.description)},",
        f"    style: {js_string_list(artist.style)},",
        "    social: {",
    ]
    lines.append(",\n".join(f"      {js_key(key)}: {js_string(handle)}" for key, handle in artist.social.items()))
    lines.extend(
        [
            "    },",
            f"    country: {js_string(artist.country)},",
            f"    image_url: {js_string(artist.image_url)},",
        ]
    )
    if artist.videos:
        lines.append("    videos: [")
        lines.append(",\n".join(f"      {js_string(video)}" for video in artist.videos))
        lines.append("    ],")
    lines.append("  }")
    return "\n".join(line for line in lines if line)


def release_to_ts(release: Release) -> str:
    lines = [
        "  {",
        f"    id: {release.id},",
        f"    title: {js_string(release.title)},",
        f"    artist: {js_string(release.artist)},",
        f"    type: {js_string(release.type)},",
        f"    releaseDate: {js_string(release.release_date)},",
    ]
    if release.catalog_number is not None:
        lines.append(f"    catalogNumber: {js_string(release.catalog_number)},")
    lines.extend(
        [
            f"    coverUrl: {js_string(release.cover_url)},",
            f"    bandcampUrl: {js_string(release.bandcamp_url)},",
            f"    bandcampId: {js_string(release.bandcamp_id)},",
        ]
    )
    if release.description is not None:
        lines.append(f"    description: {js_string(release.description)},")
    if release.tracklist is not None:
        lines.append(f"    tracklist: {js_string_list(release.tracklist)},")
    lines.append("  }")
    return "\n".join(lines)


_RENDERERS = {ARTISTS: artist_to_ts, RELEASES: release_to_ts}
_TEMPLATES = {ARTISTS: ARTISTS_TEMPLATE, RELEASES: RELEASES_TEMPLATE}


class CatalogueStore:
    def __init__(self, artists_file: str, releases_file: str):
        self._files = {ARTISTS: Path(artists_file), RELEASES: Path(releases_file)}
        # serializes read-modify-write within this process only
        self._lock = threading.RLock()

    def _path(self, kind: str) -> Path:
        try:
            return self._files[kind]
        except KeyError:
            raise ValueError(f"unknown catalogue kind: {kind}") from None

    def read_all(self, kind: str) -> list[BaseModel]:
        path = self._path(kind)
        content = path.read_text(encoding="utf-8")
        match = _PATTERNS[kind].search(content)
        if not match:
            raise CatalogueParseError(f"could not parse {kind} file {path}")
        try:
            raw_items = json5.loads(f"[{match.group(1)}]")
        except ValueError as exc:
            raise CatalogueParseError(f"invalid {kind} literal in {path}: {exc}") from exc
        try:
            return [_MODELS[kind].model_validate(item) for item in raw_items]
        except ValidationError as exc:
            raise CatalogueParseError(f"invalid {kind} entry in {path}: {exc}") from exc

    def write_all(self, kind: str, entities: list[BaseModel]) -> None:
        path = self._path(kind)
        body = ",\n".join(_RENDERERS[kind](entity) for entity in entities)
        path.write_text(_TEMPLATES[kind].replace(_ENTRIES, body), encoding="utf-8")
        logger.info("Wrote {} {} to {}", len(entities), kind, path)

    def list_artists(self) -> list[Artist]:
        return self.read_all(ARTISTS)

    def list_releases(self) -> list[Release]:
        return self.read_all(RELEASES)

    def get_artist(self, artist_id: int) -> Artist | None:
        return next((artist for artist in self.list_artists() if artist.id == artist_id), None)

    def get_release(self, release_id: int) -> Release | None:
        return next((release for release in self.list_releases() if release.id == release_id), None)

    def add_artist(self, artist: Artist) -> Artist:
        with self._lock:
            artists = self.list_artists()
            created = artist.model_copy(update={"id": _next_id(artists)})
            artists.append(created)
            self.write_all(ARTISTS, artists)
        return created

    def add_release(self, release: Release) -> Release:
        with self._lock:
            releases = self.list_releases()
            created = release.model_copy(update={"id": _next_id(releases)})
            # newest first
            releases.insert(0, created)
            self.write_all(RELEASES, releases)
        return created

    def delete_artist(self, artist_id: int) -> bool:
        return self._delete(ARTISTS, artist_id)

    def delete_release(self, release_id: int) -> bool:
        return self._delete(RELEASES, release_id)

    def _delete(self, kind: str, entity_id: int) -> bool:
        with self._lock:
            entities = self.read_all(kind)
            remaining = [entity for entity in entities if entity.id != entity_id]
            if len(remaining) == len(entities):
                return False
            self.write_all(kind, remaining)
        return True


def _next_id(entities: list[BaseModel]) -> int:
    return max((entity.id for entity in entities), default=0) + 1
