"""ComicInfo.xml inside comic archives.

Reads from CBZ and CBR, writes to CBZ only. CBR archives are converted to CBZ
before any write.
"""

from __future__ import annotations

import io
import os
import tempfile
import xml.etree.ElementTree as ET
import zipfile
from pathlib import Path
from typing import Any

import rarfile
import structlog
from pydantic import BaseModel, field_validator

from shelfarr.core.exceptions import ArchiveError
from shelfarr.core.utils import CBR_EXTENSIONS, CBZ_EXTENSIONS

logger = structlog.get_logger("shelfarr.comicinfo")

COMICINFO_NAME = "ComicInfo.xml"

# zipfile raises RuntimeError for encrypted entries and NotImplementedError for
# unsupported compression methods
ZIP_ERRORS = (zipfile.BadZipFile, zipfile.LargeZipFile, RuntimeError, NotImplementedError, OSError)

# Field name -> XML element, in the order elements are written
COMICINFO_TAGS: dict[str, str] = {
    "title": "Title",
    "series": "Series",
    "number": "Number",
    "count": "Count",
    "volume": "Volume",
    "alternate_series": "AlternateSeries",
    "alternate_number": "AlternateNumber",
    "alternate_count": "AlternateCount",
    "summary": "Summary",
    "notes": "Notes",
    "year": "Year",
    "month": "Month",
    "day": "Day",
    "writer": "Writer",
    "penciller": "Penciller",
    "inker": "Inker",
    "colorist": "Colorist",
    "letterer": "Letterer",
    "cover_artist": "CoverArtist",
    "editor": "Editor",
    "translator": "Translator",
    "publisher": "Publisher",
    "imprint": "Imprint",
    "genre": "Genre",
    "tags": "Tags",
    "web": "Web",
    "page_count": "PageCount",
    "language_iso": "LanguageISO",
    "format": "Format",
    "black_and_white": "BlackAndWhite",
    "manga": "Manga",
    "characters": "Characters",
    "teams": "Teams",
    "locations": "Locations",
    "scan_information": "ScanInformation",
    "story_arc": "StoryArc",
    "story_arc_number": "StoryArcNumber",
    "series_group": "SeriesGroup",
    "age_rating": "AgeRating",
    "community_rating": "CommunityRating",
    "review": "Review",
    "gtin": "GTIN",
}
_TAG_FIELDS = {tag.lower(): name for name, tag in COMICINFO_TAGS.items()}


class ComicInfo(BaseModel):
    """The editable ComicInfo vocabulary.

    Values are kept as text, the way they appear in the XML. Numbers given by
    callers are stored in their text form.
    """

    title: str | None = None
    series: str | None = None
    number: str | None = None
    count: str | None = None
    volume: str | None = None
    alternate_series: str | None = None
    alternate_number: str | None = None
    alternate_count: str | None = None
    summary: str | None = None
    notes: str | None = None
    year: str | None = None
    month: str | None = None
    day: str | None = None
    writer: str | None = None
    penciller: str | None = None
    inker: str | None = None
    colorist: str | None = None
    letterer: str | None = None
    cover_artist: str | None = None
    editor: str | None = None
    translator: str | None = None
    publisher: str | None = None
    imprint: str | None = None
    genre: str | None = None
    tags: str | None = None
    web: str | None = None
    page_count: str | None = None
    language_iso: str | None = None
    format: str | None = None
    black_and_white: str | None = None
    manga: str | None = None
    characters: str | None = None
    teams: str | None = None
    locations: str | None = None
    scan_information: str | None = None
    story_arc: str | None = None
    story_arc_number: str | None = None
    series_group: str | None = None
    age_rating: str | None = None
    community_rating: str | None = None
    review: str | None = None
    gtin: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "Yes" if value else "No"
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        if isinstance(value, (list, tuple)):
            return ", ".join(str(item) for item in value if item is not None and str(item).strip())
        return str(value)

    def populated(self) -> dict[str, str]:
        return {name: value for name, value in self.model_dump().items() if value not in (None, "")}


COMICINFO_FIELDS: tuple[str, ...] = tuple(ComicInfo.model_fields)


def is_comicinfo_field(name: str) -> bool:
    return name in ComicInfo.model_fields


def parse_comicinfo_xml(data: bytes | str) -> ComicInfo:
    """Parse ComicInfo XML, ignoring elements outside the schema."""
    root = ET.fromstring(data)
    values: dict[str, str] = {}
    for child in root:
        tag = child.tag.split("}", 1)[-1].lower()
        name = _TAG_FIELDS.get(tag)
        if name and child.text is not None and child.text.strip():
            values[name] = child.text.strip()
    return ComicInfo(**values)


def comicinfo_to_xml(info: ComicInfo) -> bytes:
    """Serialize without namespaces, as UTF-8 bytes with an XML declaration."""
    root = ET.Element("ComicInfo")
    populated = info.populated()
    for name, tag in COMICINFO_TAGS.items():
        value = populated.get(name)
        if value is not None:
            ET.SubElement(root, tag).text = value
    ET.indent(root)
    buffer = io.BytesIO()
    ET.ElementTree(root).write(buffer, encoding="utf-8", xml_declaration=True)
    return buffer.getvalue()


def _find_comicinfo(names: list[str]) -> str | None:
    """Prefer ComicInfo.xml at the archive root, then any nested one."""
    candidates = [name for name in names if name.rsplit("/", 1)[-1].lower() == COMICINFO_NAME.lower()]
    if not candidates:
        return None
    candidates.sort(key=lambda name: name.count("/"))
    return candidates[0]


def read_comicinfo(path: str | Path) -> ComicInfo | None:
    """Read embedded metadata.

    Returns:
        The parsed ComicInfo, or None when the archive has none.

    Raises:
        ArchiveError: The archive is unreadable or the XML is malformed.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    try:
        if suffix in CBZ_EXTENSIONS or zipfile.is_zipfile(path):
            with zipfile.ZipFile(path, "r") as zf:
                entry = _find_comicinfo(zf.namelist())
                if entry is None:
                    return None
                data = zf.read(entry)
        elif suffix in CBR_EXTENSIONS:
            with rarfile.RarFile(str(path), "r") as rf:
                entry = _find_comicinfo(rf.namelist())
                if entry is None:
                    return None
                data = rf.read(entry)
        else:
            raise ArchiveError(str(path), f"Unsupported archive type: {suffix or 'none'}")
    except (*ZIP_ERRORS, rarfile.Error) as exc:
        raise ArchiveError(str(path), f"Cannot read archive: {exc}") from exc

    try:
        return parse_comicinfo_xml(data)
    except ET.ParseError as exc:
        raise ArchiveError(str(path), f"Malformed {COMICINFO_NAME}: {exc}") from exc


def write_comicinfo(path: str | Path, info: ComicInfo) -> None:
    """Replace ComicInfo.xml at the root of a CBZ.

    The archive is rebuilt next to the original and swapped in with
    ``os.replace``, so a failed write leaves the original untouched. Any
    existing ComicInfo.xml, in any letter case, is dropped.
    """
    path = Path(path)
    if path.suffix.lower() not in CBZ_EXTENSIONS:
        raise ArchiveError(str(path), "Metadata can only be written to CBZ archives")

    xml_bytes = comicinfo_to_xml(info)
    temp_name: str | None = None
    try:
        fd, temp_name = tempfile.mkstemp(suffix=".cbz.tmp", dir=path.parent)
        os.close(fd)
        with zipfile.ZipFile(path, "r") as src, zipfile.ZipFile(temp_name, "w", zipfile.ZIP_DEFLATED) as dst:
            for item in src.infolist():
                if item.filename.lower() == COMICINFO_NAME.lower():
                    continue
                dst.writestr(item, src.read(item.filename))
            dst.writestr(COMICINFO_NAME, xml_bytes)
        os.replace(temp_name, path)
    except ZIP_ERRORS as exc:
        if temp_name is not None:
            Path(temp_name).unlink(missing_ok=True)
        raise ArchiveError(str(path), f"Cannot write {COMICINFO_NAME}: {exc}") from exc

    logger.debug("Wrote ComicInfo.xml", path=str(path), fields=len(info.populated()))


def merge_comicinfo(path: str | Path, updates: dict[str, Any]) -> ComicInfo:
    """Overlay ``updates`` on the archive's current metadata and write it back.

    A None value clears the field.
    """
    current = read_comicinfo(path) or ComicInfo()
    merged = current.model_copy(update=ComicInfo(**updates).model_dump(include=set(updates)))
    write_comicinfo(path, merged)
    return merged


def convert_cbr_to_cbz(path: str | Path, delete_original: bool = True) -> Path:
    """Repack a CBR as a CBZ next to it.

    RAR archives that are really zip files (a common misnaming) are renamed
    instead of repacked.

    Returns:
        Path of the new CBZ.
    """
    path = Path(path)
    target = path.with_suffix(".cbz")
    if target.exists():
        raise ArchiveError(str(path), f"Cannot convert, {target.name} already exists")

    if zipfile.is_zipfile(path):
        try:
            if delete_original:
                os.replace(path, target)
            else:
                target.write_bytes(path.read_bytes())
        except OSError as exc:
            raise ArchiveError(str(path), f"Cannot rename to {target.name}: {exc}") from exc
        logger.info("Renamed zip-based CBR to CBZ", source=str(path), target=str(target))
        return target

    temp_name: str | None = None
    try:
        fd, temp_name = tempfile.mkstemp(suffix=".cbz.tmp", dir=path.parent)
        os.close(fd)
        with rarfile.RarFile(str(path), "r") as rf, zipfile.ZipFile(temp_name, "w", zipfile.ZIP_DEFLATED) as dst:
            for item in rf.infolist():
                if item.is_dir():
                    continue
                dst.writestr(item.filename, rf.read(item))
        os.replace(temp_name, target)
    except (rarfile.Error, *ZIP_ERRORS) as exc:
        if temp_name is not None:
            Path(temp_name).unlink(missing_ok=True)
        raise ArchiveError(str(path), f"CBR conversion failed: {exc}") from exc

    if delete_original:
        try:
            path.unlink()
        except OSError as exc:
            logger.warning("Could not remove converted CBR", path=str(path), error=str(exc))
    logger.info("Converted CBR to CBZ", source=str(path), target=str(target))
    return target
