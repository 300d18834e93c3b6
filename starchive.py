# /// script
# dependencies = ["defusedxml", "httpx", "piexif", "pillow"]
# ///
"""
Starchive: Archive a year-partitioned photo gallery with its metadata baked in.

Usage:
    uv run --script starchive.py

Walks the gallery index year by year, normalizes each photo's metadata
document (plain-text or XML), embeds it as EXIF and writes the best
available resolution to ./img/<year>/<id>.jpg
"""

import io
import json
import re
import struct
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Callable, Iterable, Iterator, NamedTuple, Optional

import httpx
import piexif
from defusedxml import DefusedXmlException
from defusedxml import ElementTree as ET
from PIL import Image

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

INDEX_URL = "https://science.ksc.nasa.gov/gallery/photos"
IMG_DIR = Path("img")
REQUEST_TIMEOUT = 30

UNKNOWN = "UNKNOWN"
INVALID_DATE = "Invalid date"

# Size/attribution tags in the text documents; matched as prefixes ("thumbnail", "high_res")
RESERVED_TAGS = ("high", "medium", "low", "slide", "tiny", "thumb")

TEXT_DATE = "DD-MMM-YYYY"
XML_DATE = "YYYY-MM-DD"

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ArchiveError(Exception):
    """Base class for everything the archive loop reports."""


class ListingUnavailable(ArchiveError):
    """The year index could not be fetched; nothing can be archived."""


class YearSetupFailed(ArchiveError):
    """A year could not be prepared (output directory or entry listing)."""


class EntryError(ArchiveError):
    """One entry failed; carries enough context to re-run it by hand."""

    def __init__(self, year: str, identifier: str, reason, record=None):
        super().__init__(f"{year}/{identifier}: {reason}")
        self.year = year
        self.identifier = identifier
        self.record = record


class EntryFetchFailed(EntryError):
    pass


class EntryParseFailed(EntryError):
    pass


class EntryPersistFailed(EntryError):
    pass


class MetadataParseError(ValueError):
    """A metadata document is structurally unreadable."""


class NoEntries(LookupError):
    """A listing page was fetched but names no entries."""


class UnusableImage(ValueError):
    """A fetched payload is not a decodable JPEG."""


class AllAttemptsFailed(ArchiveError):
    def __init__(self, failures: list):
        super().__init__("; ".join(str(f) for f in failures) or "no attempts")
        self.failures = failures


# ---------------------------------------------------------------------------
# Step 1: Fetching
# ---------------------------------------------------------------------------

def fetch(client: httpx.Client, url: str) -> bytes:
    """GET a URL, raising HTTPStatusError (body as message) on status >= 400."""
    resp = client.get(url)
    if resp.status_code >= 400:
        raise httpx.HTTPStatusError(resp.text, request=resp.request, response=resp)
    return resp.content


def first_success(attempts: Iterable[Callable], errors: tuple):
    """Run attempts in order and return the first result that doesn't raise one of `errors`."""
    failures = []
    for attempt in attempts:
        try:
            return attempt()
        except errors as e:
            failures.append(e)
    raise AllAttemptsFailed(failures)


# ---------------------------------------------------------------------------
# Step 2: Listing pages
# ---------------------------------------------------------------------------

YEAR_LINK = re.compile(r'<a href="\d{4}/">(\d{4})/</a>')


def parse_years(html: str) -> Iterator[str]:
    """Yield year folder names from the gallery index."""
    for m in YEAR_LINK.finditer(html):
        yield m.group(1)


def parse_entries(html: str, ext: str) -> Iterator[str]:
    """Yield entry identifiers for files with the given extension."""
    ext = re.escape(ext)
    pattern = re.compile(rf'<a href=".+?\.{ext}">(.+?)\.{ext}</a>')
    for m in pattern.finditer(html):
        yield m.group(1)


def list_years(client: httpx.Client, index: str) -> Iterator[str]:
    html = fetch(client, f"{index}/").decode("utf-8", errors="replace")
    return parse_years(html)


def list_entries(client: httpx.Client, index: str, year: str, folder: str) -> tuple[str, list[str]]:
    """Return (folder, identifiers) for one of a year's metadata folders.

    Raises NoEntries when the folder lists nothing, so an empty text folder
    falls through to the XML one.
    """
    ext, _ = FORMATS[folder]
    html = fetch(client, f"{index}/{year}/{folder}/").decode("utf-8", errors="replace")
    # Listings occasionally repeat an anchor; each entry is archived once
    entries = list(dict.fromkeys(parse_entries(html, ext)))
    if not entries:
        raise NoEntries(f"{index}/{year}/{folder}/ lists no .{ext} files")
    return folder, entries


# ---------------------------------------------------------------------------
# Step 3: Metadata normalization
# ---------------------------------------------------------------------------

class Sources(NamedTuple):
    high: str
    medium: str
    low: str


class CaptureDate(NamedTuple):
    """Date text tagged with the pattern its source format uses."""
    text: str
    pattern: str


@dataclass
class CanonicalRecord:
    identifier: str
    sources: Sources
    title: str = ""
    author: Optional[str] = None
    capture_date: Optional[CaptureDate] = None
    description: Optional[str] = None
    keywords: Optional[str] = None
    extra_fields: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.identifier:
            raise ValueError("record identifier must not be empty")
        self.title = self.title or self.identifier


def sources_for(index: str, year: str, identifier: str) -> Sources:
    # high and medium are both JPEG; low is a GIF and never used as a fallback
    return Sources(
        high=f"{index}/{year}/high/{identifier}.jpg",
        medium=f"{index}/{year}/medium/{identifier}.jpg",
        low=f"{index}/{year}/low/{identifier}.gif",
    )


def is_reserved(tag: str) -> bool:
    return tag == "type" or tag.startswith(RESERVED_TAGS)


HEADER_LINE = re.compile(r"^\{\}[^\n]*(?:\n|$)")
TAG_LINE = re.compile(r"\{(.+?)\}(.*)")
END = "{end}"
LIFTED = ("title", "author", "description", "keywords")


def parse_text_fields(text: str, identifier: str) -> dict[str, str]:
    """Parse a bracket-tagged document into an ordered field dict.

    `{Tag}value` opens field "tag"; untagged lines continue the most recently
    assigned field, starting with "title" (preset to the identifier).
    Reserved tags are ignored and leave the open field unchanged.
    """
    body = HEADER_LINE.sub("", text.strip(), count=1)
    fields: dict[str, str] = {"title": identifier}
    cursor = "title"

    for line in body.splitlines():
        line = line.strip()
        if not line or line == END:
            continue

        m = TAG_LINE.match(line)
        if m:
            tag = m.group(1).lower()
            if is_reserved(tag):
                continue
            fields[tag] = m.group(2).strip()
            cursor = tag
        else:
            fields[cursor] = f"{fields[cursor]} {line}" if fields[cursor] else line

    return fields


def normalize_text(document: bytes, identifier: str, sources: Sources) -> CanonicalRecord:
    """Build a record from a plain-text metadata document."""
    fields = parse_text_fields(document.decode("utf-8", errors="replace"), identifier)
    record = CanonicalRecord(identifier, sources)
    for key, value in fields.items():
        if key == "date":
            record.capture_date = CaptureDate(value, TEXT_DATE)
        elif key in LIFTED:
            setattr(record, key, value)
        else:
            record.extra_fields[key] = value
    record.title = record.title or identifier
    return record


def _joined(nodes: list) -> Optional[str]:
    value = ", ".join(n.text or "" for n in nodes).strip()
    return value or None


def normalize_xml(document: bytes, identifier: str, sources: Sources) -> CanonicalRecord:
    """Build a record from an <asset><text>...</text></asset> document.

    Only author (org/name), date and description are available; repeated
    nodes are joined with ", ".
    """
    try:
        root = ET.fromstring(document)
    except (ET.ParseError, DefusedXmlException) as e:
        raise MetadataParseError(f"malformed XML: {e}") from e

    text = root.find("text") if root.tag == "asset" else None
    if text is None:
        raise MetadataParseError(f"expected <asset><text>, got <{root.tag}>")

    org = text.find("org")
    # an empty <date/> is still a date, and embeds as INVALID_DATE
    dates = text.findall("date")
    return CanonicalRecord(
        identifier,
        sources,
        author=_joined(org.findall("name")) if org is not None else None,
        capture_date=CaptureDate(_joined(dates) or "", XML_DATE) if dates else None,
        description=_joined(text.findall("description")),
    )


# folder -> (file extension, normalizer); tried in this order per year
FORMATS = {
    "text": ("txt", normalize_text),
    "xml": ("xml", normalize_xml),
}


# ---------------------------------------------------------------------------
# Step 4: EXIF embedding
# ---------------------------------------------------------------------------

# record attribute -> (IFD, tag, encoding). Anything not routed here goes
# into the XPComment JSON dump, which has no practical size limit.
ROUTES = {
    "author": ("0th", piexif.ImageIFD.Artist, "ascii"),
    "description": ("0th", piexif.ImageIFD.ImageDescription, "ascii"),
    "keywords": ("0th", piexif.ImageIFD.XPKeywords, "wide"),
    "capture_date": ("Exif", piexif.ExifIFD.DateTimeOriginal, "date"),
}

DATE_FORMATS = {
    TEXT_DATE: ("%d-%b-%Y", "%d-%B-%Y"),
    XML_DATE: ("%Y-%m-%d",),
}


def reformat_date(capture_date: CaptureDate) -> str:
    """Convert a tagged source date to EXIF's YYYY:MM:DD, or INVALID_DATE."""
    # repeated <date> nodes arrive joined with ", "; the first one wins
    text = capture_date.text.split(",")[0].strip()
    for fmt in DATE_FORMATS[capture_date.pattern]:
        try:
            return datetime.strptime(text, fmt).strftime("%Y:%m:%d")
        except ValueError:
            continue
    return INVALID_DATE


def wide(text: str) -> tuple:
    """UTF-16-LE bytes as the BYTE tuple piexif expects for XP* tags."""
    return tuple(text.encode("utf-16-le"))


def _encode(kind: str, value):
    if kind == "date":
        return reformat_date(value) if value else None
    value = value or UNKNOWN
    if kind == "wide":
        return wide(value)
    # piexif encodes str as latin-1; hand it bytes so any text survives
    return value.encode("utf-8")


def comment_payload(record: CanonicalRecord) -> dict:
    """Everything not routed to its own tag, in document order."""
    payload = {
        "sources": record.sources._asdict(),
        "number": record.identifier,
        "title": record.title,
    }
    payload.update(record.extra_fields)
    return payload


def build_exif(record: CanonicalRecord) -> bytes:
    ifds = {"0th": {}, "Exif": {}}
    for attr, (ifd, tag, kind) in ROUTES.items():
        value = _encode(kind, getattr(record, attr))
        if value is not None:
            ifds[ifd][tag] = value

    comment = json.dumps(comment_payload(record), ensure_ascii=False, separators=(",", ":"))
    ifds["0th"][piexif.ImageIFD.XPComment] = wide(comment)
    return piexif.dump(ifds)


def embed(exif: bytes, photo: bytes) -> bytes:
    """Insert an EXIF segment into JPEG bytes."""
    out = io.BytesIO()
    piexif.insert(exif, photo, out)
    return out.getvalue()


# ---------------------------------------------------------------------------
# Step 5: Resolution fallback
# ---------------------------------------------------------------------------

def fetch_image(client: httpx.Client, url: str) -> bytes:
    """Fetch a photo and make sure Pillow can read it as a JPEG."""
    photo = fetch(client, url)
    try:
        with Image.open(io.BytesIO(photo)) as img:
            img.verify()
            fmt = img.format
    except (OSError, SyntaxError) as e:
        raise UnusableImage(f"{url}: {e}") from e
    if fmt != "JPEG":
        raise UnusableImage(f"{url}: expected JPEG, got {fmt}")
    return photo


def resolve_image(client: httpx.Client, sources: Sources) -> bytes:
    """High resolution if it works, else medium. Low is never tried."""
    return first_success(
        [partial(fetch_image, client, sources.high), partial(fetch_image, client, sources.medium)],
        (httpx.HTTPError, UnusableImage),
    )


# ---------------------------------------------------------------------------
# Step 6: Archive loop
# ---------------------------------------------------------------------------

@dataclass
class YearReport:
    year: str
    folder: str
    archived: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.archived) + len(self.failed)

    def summary(self) -> str:
        return (f"{self.year}: {len(self.archived)}/{self.total} archived "
                f"from {self.folder}/, {len(self.failed)} failed")


def archive_entry(client: httpx.Client, index: str, year: str, identifier: str,
                  folder: str, year_dir: Path) -> Path:
    """Normalize, embed and persist one entry. Raises an EntryError subclass on failure."""
    ext, normalize = FORMATS[folder]
    url = f"{index}/{year}/{folder}/{identifier}.{ext}"
    try:
        document = fetch(client, url)
    except httpx.HTTPError as e:
        raise EntryFetchFailed(year, identifier, f"metadata {url}: {e}") from e

    try:
        record = normalize(document, identifier, sources_for(index, year, identifier))
    except ValueError as e:  # MetadataParseError, or an empty identifier
        raise EntryParseFailed(year, identifier, e) from e

    try:
        exif = build_exif(record)
    except (ValueError, struct.error) as e:
        raise EntryParseFailed(year, identifier, f"exif: {e}", record) from e

    try:
        photo = resolve_image(client, record.sources)
    except AllAttemptsFailed as e:
        raise EntryFetchFailed(year, identifier, f"no usable image: {e}", record) from e

    path = year_dir / f"{identifier}.jpg"
    try:
        path.write_bytes(embed(exif, photo))
    except (OSError, ValueError, struct.error) as e:
        raise EntryPersistFailed(year, identifier, e, record) from e
    return path


def archive_year(client: httpx.Client, index: str, year: str, img_dir: Path) -> YearReport:
    """Archive every entry of one year from whichever metadata folder it uses."""
    year_dir = img_dir / year
    try:
        year_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise YearSetupFailed(f"{year}: cannot create {year_dir}: {e}") from e

    # A year is all text or all XML: XML only when the text folder is empty or missing
    try:
        folder, entries = first_success(
            [partial(list_entries, client, index, year, f) for f in FORMATS],
            (httpx.HTTPError, NoEntries),
        )
    except AllAttemptsFailed as e:
        raise YearSetupFailed(f"{year}: no metadata listing ({e})") from e

    report = YearReport(year, folder)
    total = len(entries)
    for i, identifier in enumerate(entries):
        try:
            archive_entry(client, index, year, identifier, folder, year_dir)
        except EntryError as e:
            report.failed.append(identifier)
            print(f"  [{i+1}/{total}] FAILED {e}")
            if e.record is not None:
                print(f"      metadata: {e.record}")
            continue
        report.archived.append(identifier)

        if (i + 1) % 50 == 0 or i + 1 == total:
            print(f"  [{i+1}/{total}] processed")

    print(f"  {report.summary()}")
    return report


def archive(client: httpx.Client, index: str, img_dir: Path) -> list[YearReport]:
    """Archive every year listed at the index. Only the index fetch is fatal."""
    try:
        years = list_years(client, index)
    except httpx.HTTPError as e:
        raise ListingUnavailable(f"{index}/: {e}") from e

    reports = []
    for year in years:
        print(f"Year {year}:")
        try:
            reports.append(archive_year(client, index, year, img_dir))
        except YearSetupFailed as e:
            print(f"  SKIPPED {e}")
    return reports


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(index: str = INDEX_URL, img_dir: Path = IMG_DIR):
    print(f"Archiving {index} into {img_dir}/")
    with httpx.Client(follow_redirects=True, timeout=REQUEST_TIMEOUT) as client:
        try:
            reports = archive(client, index, img_dir)
        except ListingUnavailable as e:
            print(f"  Cannot list years: {e}")
            raise SystemExit(1)

    archived = sum(len(r.archived) for r in reports)
    failed = sum(len(r.failed) for r in reports)
    print(f"\nDone! {archived} photos archived, {failed} failed, across {len(reports)} years.")


if __name__ == "__main__":
    main()
