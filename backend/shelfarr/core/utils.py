"""Shared utility functions for Shelfarr."""

from __future__ import annotations

import re
from typing import Any
from urllib import parse as urllib_parse

from bs4 import BeautifulSoup

CBZ_EXTENSIONS = {".cbz", ".zip"}
CBR_EXTENSIONS = {".cbr", ".rar"}


def _decode_filename_fragment(value: str) -> str:
    """Decode URL-encoded filename fragment (``Batman_20Year_20One`` style).

    Only printable punctuation escapes (``_20`` to ``_2F``) not followed by a
    digit are decoded, so ``Batman_001`` and ``Batman_2011`` keep their numbers.
    """

    def repl(match: re.Match[str]) -> str:
        return "%" + match.group(1)

    candidate = re.sub(r"_(2[0-9A-Fa-f])(?![0-9])", repl, value)
    decoded = urllib_parse.unquote(candidate)
    return decoded.replace("_", " ")


def _extract_year(value: str | None) -> int | None:
    """Extract a 4-digit year (19xx/20xx) from a string."""
    if not value:
        return None
    match = re.search(r"(19|20)\d{2}", value)
    if match:
        return int(match.group(0))
    return None


def normalize_issue_number(value: str | None) -> float | None:
    """Normalize an issue number string to a float.

    Handles fractional issue numbers (½, ¼, ¾) and various formats.

    Args:
        value: Issue number string (e.g., "001", "1.5", "½")

    Returns:
        Normalized issue number as float, or None if invalid
    """
    if not value:
        return None
    text = _decode_filename_fragment(str(value).strip()).lower()
    if not text:
        return None
    for token, replacement in {"½": ".5", "¼": ".25", "¾": ".75"}.items():
        text = text.replace(token, replacement)
    text = text.replace(",", ".").replace("_", ".").replace("#", " ")
    text = re.sub(r"(?<=\d)[a-z]+", "", text)
    text = re.sub(r"[^0-9.\-]", " ", text)
    text = text.strip()
    if not text:
        return None
    # Some filenames include multiple numbers; take first segment that parses.
    for candidate in text.split():
        if candidate.count(".") > 1 or candidate in {"-", "--", "-.", "."}:
            continue
        try:
            return float(candidate)
        except ValueError:
            continue
    return None


def issue_numbers_match(left: str | None, right: str | None) -> bool:
    """Compare two issue numbers, treating "001" and "1" as equal."""
    left_num = normalize_issue_number(left)
    right_num = normalize_issue_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    if not left or not right:
        return False
    return left.strip().lower().lstrip("#0") == right.strip().lower().lstrip("#0")


def _extract_numeric_id(value: Any) -> int | None:
    """Extract a trailing numeric ID (e.g. "4050-123456" → 123456)."""
    if value is None:
        return None
    match = re.search(r"(\d+)$", str(value).strip())
    return int(match.group(1)) if match else None


def _simplify_label(value: str | None) -> str:
    """Simplify a label by removing special characters (except word-connected hyphens) and lowercasing.

    Preserves hyphens connected to words (e.g., "Spider-Man" → "spider-man").
    Strips hyphens with spaces around them (e.g., "Star Wars - Union" → "starwarsunion").
    Normalizes "&" to "and" and removes "and" as a connector word.
    """
    if not value:
        return ""
    normalized = value.lower().replace("&", "and")
    normalized = re.sub(r"\s+and\s+", " ", normalized)
    normalized = re.sub(r"^and\s+", "", normalized)
    normalized = re.sub(r"\s+and$", "", normalized)
    normalized = re.sub(r"\s+-\s+", "", normalized)
    normalized = re.sub(r"\s+", "", normalized)
    normalized = re.sub(r"[^a-z0-9-]+", "", normalized)
    normalized = re.sub(r"-+", "-", normalized)
    return normalized.strip("-")


def normalize_title(value: str | None) -> str:
    """Normalize a series title for similarity scoring.

    Unlike ``_simplify_label`` this keeps word boundaries, which token overlap needs.
    Leading articles and volume markers are dropped: "The Amazing Spider-Man (2018)"
    → "amazing spider man".
    """
    if not value:
        return ""
    text = value.lower().replace("&", " and ")
    text = re.sub(r"\(\s*(19|20)\d{2}\s*\)", " ", text)
    text = re.sub(r"\bvol(ume)?\.?\s*\d+\b", " ", text)
    text = re.sub(r"[^a-z0-9]+", " ", text)
    text = re.sub(r"^(the|a|an)\s+", "", text.strip())
    return re.sub(r"\s+", " ", text).strip()


def series_cache_key(name: str | None) -> str:
    """Key used by the per-folder series cache (mixed-series folders)."""
    return _simplify_label(name)


def strip_html(value: str | None) -> str | None:
    """Plain text from provider HTML descriptions, one line per block element."""
    if value is None:
        return None
    soup = BeautifulSoup(value, "html.parser")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(["p", "li", "h1", "h2", "h3", "h4", "div"]):
        block.append("\n")
    text = soup.get_text()
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def truncate(value: str | None, limit: int) -> str | None:
    if value is None or len(value) <= limit:
        return value
    return value[: limit - 3].rstrip() + "..."


def is_empty(value: Any) -> bool:
    """True for None, blank strings and empty collections."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def normalize_field_value(value: Any) -> Any:
    """Canonical form used when comparing metadata values.

    Empty values collapse to None, strings are stripped, and numbers that are
    stored as text in ComicInfo compare equal to their numeric form.
    """
    if is_empty(value):
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(int(value)) if float(value).is_integer() else str(value)
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item).strip() for item in value if not is_empty(item))
    return value
