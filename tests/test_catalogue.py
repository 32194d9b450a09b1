import pytest

from label_portal.catalogue import (
    ARTISTS,
    ARTISTS_TEMPLATE,
    RELEASES,
    RELEASES_TEMPLATE,
    CatalogueParseError,
    CatalogueStore,
    js_key,
)
from label_portal.models import Artist, Release

HANDWRITTEN_ARTISTS = '''import type { Artist } from "../types/artist"
import { slugify } from "../utils/slugify"

const artistsData = [
  {
    id: 3,
    name: "Nova Drift",
    act: "DJ",
    description: 'Deep, dubby sets from the "north" side',
    style: ["Dub Techno", "Ambient",],
    social: {
      instagram: "novadrift",
      soundcloud: "",
    },
    country: "NL",
    image_url: "/images/nova.jpg",
  },
  {
    id: 7,
    name: "Zoë & The Loops",
    act: "Live",
    description: "Line one\\nline two",
    style: ["Breaks"],
    social: {},
    country: "DE",
    image_url: "/images/zoe.jpg",
    videos: ["https://youtu.be/abc"],
  },
]

export const artists: Artist[] = artistsData.map((artist) => ({ ...artist }))
'''

HANDWRITTEN_RELEASES = '''import type { Release } from "../types/release"

export const releases: Release[] = [
  {
    id: 12,
    title: "Low Tide",
    artist: "Nova Drift",
    type: "EP",
    releaseDate: "2025-11-03",
    catalogNumber: "LBL012",
    coverUrl: "/covers/low-tide.jpg",
    bandcampUrl: "https://label.bandcamp.com/album/low-tide",
    bandcampId: "123456",
    tracklist: ["Low Tide", "Undertow"],
  },
]
'''


@pytest.fixture()
def store(tmp_path):
    (tmp_path / "artists.ts").write_text(HANDWRITTEN_ARTISTS, encoding="utf-8")
    (tmp_path / "releases.ts").write_text(HANDWRITTEN_RELEASES, encoding="utf-8")
    return CatalogueStore(str(tmp_path / "artists.ts"), str(tmp_path / "releases.ts"))


def test_reads_handwritten_literals(store):
    artists = store.list_artists()

    assert [artist.id for artist in artists] == [3, 7]
    nova = artists[0]
    assert nova.description == 'Deep, dubby sets from the "north" side'
    assert nova.style == ["Dub Techno", "Ambient"]
    assert nova.social == {"instagram": "novadrift"}
    assert nova.slug == "nova-drift"
    assert nova.videos == []
    assert artists[1].description == "Line one\nline two"
    assert artists[1].slug == "zoe-the-loops"

    release = store.get_release(12)
    assert release.catalog_number == "LBL012"
    assert release.tracklist == ["Low Tide", "Undertow"]
    assert release.description is None


def test_add_artist_appends_with_next_id_and_regenerates_file(store, tmp_path):
    created = store.add_artist(
        Artist(
            name='Quote "Heavy" Unit',
            act="Live",
            description="Café sessions\nsecond line\\with backslash",
            style=["Techno"],
            social={"bandcamp": "qhu", "twitter": ""},
            country="FR",
            image_url="/images/qhu.jpg",
        )
    )

    assert created.id == 8
    assert created.slug == "quote-heavy-unit"

    artists = store.list_artists()
    assert [artist.id for artist in artists] == [3, 7, 8]
    assert artists[-1].description == "Café sessions\nsecond line\\with backslash"
    assert artists[-1].name == 'Quote "Heavy" Unit'
    assert artists[-1].social == {"bandcamp": "qhu"}

    content = (tmp_path / "artists.ts").read_text(encoding="utf-8")
    assert content.startswith(ARTISTS_TEMPLATE.split("__ENTRIES__")[0])
    assert content.endswith(ARTISTS_TEMPLATE.split("__ENTRIES__")[1])
    assert "export function getAllCountries(): string[]" in content


def test_add_release_prepends_newest_first(store, tmp_path):
    created = store.add_release(
        Release(
            title="First Light",
            artist="Zoë & The Loops",
            type="Single",
            release_date="2026-02-14",
            cover_url="/covers/first-light.jpg",
            bandcamp_url="https://label.bandcamp.com/track/first-light",
            bandcamp_id="98765",
        )
    )

    assert created.id == 13
    releases = store.list_releases()
    assert [release.id for release in releases] == [13, 12]
    assert releases[0].catalog_number is None
    assert releases[0].tracklist is None

    content = (tmp_path / "releases.ts").read_text(encoding="utf-8")
    assert "catalogNumber" not in content.split("id: 12")[0]
    assert "export function getReleasesByYear(year: string): Release[]" in content


def test_first_entity_in_empty_file_gets_id_one(tmp_path):
    (tmp_path / "artists.ts").write_text(ARTISTS_TEMPLATE.replace("__ENTRIES__", ""), encoding="utf-8")
    (tmp_path / "releases.ts").write_text(RELEASES_TEMPLATE.replace("__ENTRIES__", ""), encoding="utf-8")
    store = CatalogueStore(str(tmp_path / "artists.ts"), str(tmp_path / "releases.ts"))

    assert store.list_artists() == []
    assert store.add_artist(Artist(name="Solo")).id == 1
    assert [artist.name for artist in store.list_artists()] == ["Solo"]


def test_delete_reports_whether_anything_was_removed(store):
    assert store.delete_artist(3)
    assert [artist.id for artist in store.list_artists()] == [7]

    assert not store.delete_artist(3)
    assert not store.delete_release(999)
    assert store.delete_release(12)
    assert store.list_releases() == []


def test_missing_array_is_a_parse_error(tmp_path):
    (tmp_path / "artists.ts").write_text("export const artists = []\n", encoding="utf-8")
    (tmp_path / "releases.ts").write_text("export const releases: Release[] = [ { id: 1 ", encoding="utf-8")
    store = CatalogueStore(str(tmp_path / "artists.ts"), str(tmp_path / "releases.ts"))

    with pytest.raises(CatalogueParseError):
        store.list_artists()
    with pytest.raises(CatalogueParseError):
        store.read_all(RELEASES)


def test_invalid_entry_is_a_parse_error(tmp_path):
    broken = HANDWRITTEN_ARTISTS.replace('name: "Nova Drift",', "")
    (tmp_path / "artists.ts").write_text(broken, encoding="utf-8")
    store = CatalogueStore(str(tmp_path / "artists.ts"), str(tmp_path / "releases.ts"))

    with pytest.raises(CatalogueParseError):
        store.read_all(ARTISTS)


def test_js_key_quotes_only_when_needed():
    assert js_key("instagram") == "instagram"
    assert js_key("resident-advisor") == '"resident-advisor"'
