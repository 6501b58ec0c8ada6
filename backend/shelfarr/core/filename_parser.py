"""Filename parsing for comic archives.

Extracts series name, issue number, volume and year from names such as
``Batman 001 (2011) (Digital).cbz`` or ``Saga #12 (2013).cbr``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from shelfarr.core.utils import _decode_filename_fragment, _extract_year

MONTHS = (
    "january",
    "february",
    "march",
    "april",
    "may",
    "june",
    "july",
    "august",
    "september",
    "october",
    "november",
    "december",
)

# Scanner/release tags that should never end up in a series name
_TAG_WORDS = re.compile(
    r"\b(digital|webrip|web-dl|c2c|hd|hq|scan|f\d|zone-empire|minutemen|empire)\b",
    re.IGNORECASE,
)

_ISSUE_PATTERNS = (
    re.compile(r"#\s*(\d+(?:\.\d+)?[a-z]?)", re.IGNORECASE),  # #001, #1.5
    re.compile(r"\bissue\s+(\d+(?:\.\d+)?)", re.IGNORECASE),  # Issue 001
    re.compile(r"\b(?:ch|chapter)\.?\s*(\d+(?:\.\d+)?)", re.IGNORECASE),  # Chapter 12
)

# A bare number; the last one wins so "Spider-Man 2099 001" keeps 2099 in the name
_BARE_NUMBER = re.compile(r"(?:^|\s)(\d{1,4}(?:\.\d{1,2})?)(?=\s|$)")

_VOLUME_PATTERNS = (
    re.compile(r"\bv(\d{1,4})\b", re.IGNORECASE),  # v2, v2022
    re.compile(r"\bvol\.?\s*(\d+)\b", re.IGNORECASE),  # Vol. 2
    re.compile(r"\bvolume\s*(\d+)\b", re.IGNORECASE),  # Volume 2
)


@dataclass(frozen=True)
class ParsedFilename:
    """Result of parsing one archive filename."""

    filename: str
    series: str
    issue_number: str | None = None
    volume: str | None = None
    year: int | None = None
    month: str | None = None
    parse_failed: bool = False


def parse_filename(filename: str) -> ParsedFilename:
    """Parse an archive filename into its series components.

    The parser never raises. When no series name can be recovered the cleaned
    stem is used as a best-effort name and ``parse_failed`` is set, so the file
    still lands in a group.

    Args:
        filename: File name with or without directory and extension.

    Returns:
        ParsedFilename
    """
    stem = _decode_filename_fragment(Path(filename).stem).strip()

    # Year is taken from a parenthetical first, e.g. "(2011)"
    year = None
    year_match = re.search(r"\(\s*((?:19|20)\d{2})\s*\)", stem)
    if year_match:
        year = int(year_match.group(1))

    month = None
    month_match = re.search(r"\b(" + "|".join(MONTHS) + r")\b", stem, re.IGNORECASE)
    if month_match:
        month = month_match.group(1).capitalize()

    # Parentheticals and brackets hold year, scanner and format tags
    working = re.sub(r"\s*[\(\[][^\)\]]*[\)\]]", " ", stem)
    # Dots survive only between digits ("1.5")
    working = working.replace("_", " ")
    working = re.sub(r"(?<!\d)\.|\.(?!\d)", " ", working)
    working = re.sub(r"\s+", " ", working).strip()

    if year is None:
        loose_year = _extract_year(working)
        if loose_year and not re.search(rf"#\s*{loose_year}\b", working):
            year = loose_year
            working = re.sub(rf"\b{loose_year}\b", " ", working).strip()

    volume = None
    for pattern in _VOLUME_PATTERNS:
        match = pattern.search(working)
        if match:
            volume = match.group(1).lstrip("0") or "0"
            working = (working[: match.start()] + " " + working[match.end() :]).strip()
            break

    issue_number = None
    issue_span: tuple[int, int] | None = None
    for pattern in _ISSUE_PATTERNS:
        match = pattern.search(working)
        if match:
            issue_number = match.group(1)
            issue_span = match.span()
            break
    if issue_number is None:
        bare_numbers = list(_BARE_NUMBER.finditer(working))
        if bare_numbers:
            match = bare_numbers[-1]
            issue_number = match.group(1)
            issue_span = match.span()

    series = working
    if issue_span is not None:
        # Everything after the issue number is an issue title or release tag
        series = working[: issue_span[0]]
    series = _TAG_WORDS.sub(" ", series)
    series = re.sub(r"\s*[-:–]\s*$", "", series.strip())
    series = re.sub(r"\s+-\s+", " - ", series)
    series = re.sub(r"\s+", " ", series).strip(" -")

    parse_failed = False
    if len(series) < 2:
        parse_failed = True
        series = working or stem or filename

    return ParsedFilename(
        filename=Path(filename).name,
        series=series,
        issue_number=issue_number,
        volume=volume,
        year=year,
        month=month,
        parse_failed=parse_failed,
    )
