"""Individual match criteria.

Each function compares one aspect of two records (title, publisher, year,
issue count, creators, aliases, cover date) so the scorers can combine them
with the configured weights and each criterion can be tested on its own.
"""

import re
from collections.abc import Iterable
from typing import Literal

from rapidfuzz import fuzz

from shelfarr.core.sources.models import Credit
from shelfarr.core.utils import normalize_title

YearMatch = Literal["exact", "close", "none"]

PUBLISHER_NORMALIZATIONS = {
    "dc": "dc comics",
    "dc comics": "dc comics",
    "dc comics, inc.": "dc comics",
    "dc comics inc": "dc comics",
    "marvel": "marvel comics",
    "marvel comics": "marvel comics",
    "marvel comics group": "marvel comics",
    "marvel worldwide": "marvel comics",
    "image": "image comics",
    "image comics": "image comics",
    "dark horse": "dark horse comics",
    "dark horse comics": "dark horse comics",
    "idw": "idw publishing",
    "idw publishing": "idw publishing",
    "boom": "boom! studios",
    "boom!": "boom! studios",
    "boom! studios": "boom! studios",
    "boom studios": "boom! studios",
    "dynamite": "dynamite entertainment",
    "dynamite entertainment": "dynamite entertainment",
    "valiant": "valiant entertainment",
    "valiant entertainment": "valiant entertainment",
    "oni": "oni press",
    "oni press": "oni press",
}


def title_similarity(left: str | None, right: str | None) -> float:
    """Similarity of two series titles in [0, 1].

    Exact normalized match scores 1.0. Containment scores 0.7 plus up to 0.3
    for how close the lengths are. Otherwise the better of token overlap and
    the character-level fuzz ratio.
    """
    norm_left = normalize_title(left)
    norm_right = normalize_title(right)

    if norm_left == norm_right:
        return 1.0 if norm_left else 0.0
    if not norm_left or not norm_right:
        return 0.0

    if norm_left in norm_right or norm_right in norm_left:
        length_ratio = min(len(norm_left), len(norm_right)) / max(len(norm_left), len(norm_right))
        return 0.7 + 0.3 * length_ratio

    tokens_left = norm_left.split()
    tokens_right = norm_right.split()
    matching_tokens = sum(1 for token in tokens_left if token in tokens_right)
    token_score = matching_tokens / max(len(tokens_left), len(tokens_right))

    return max(token_score, fuzz.ratio(norm_left, norm_right) / 100.0)


def normalize_publisher(publisher: str) -> str:
    lower = re.sub(r"\s+", " ", publisher.lower().strip())
    return PUBLISHER_NORMALIZATIONS.get(lower, lower)


def publishers_match(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return normalize_publisher(left) == normalize_publisher(right)


def year_match(left: int | None, right: int | None) -> YearMatch:
    if not left or not right:
        return "none"
    if left == right:
        return "exact"
    if abs(left - right) <= 1:
        return "close"
    return "none"


def issue_counts_match(left: int | None, right: int | None, tolerance: float = 0.10) -> bool:
    """Issue counts agree within ``tolerance`` of the larger count."""
    if not left or not right:
        return False
    return abs(left - right) <= max(left, right) * tolerance


def creator_overlap(left: Iterable[Credit], right: Iterable[Credit]) -> list[str]:
    """Lower-cased creator names present on both sides, in ``right`` order."""
    left_names = {credit.name.lower().strip() for credit in left}
    overlap: list[str] = []
    for credit in right:
        name = credit.name.lower().strip()
        if name in left_names and name not in overlap:
            overlap.append(name)
    return overlap


def aliases_match(aliases: Iterable[str], target_name: str | None) -> bool:
    normalized_target = normalize_title(target_name)
    if not normalized_target:
        return False
    return any(normalize_title(alias) == normalized_target for alias in aliases)


def parse_cover_date(value: str | None) -> tuple[int, int | None, int | None] | None:
    """Split "YYYY", "YYYY-MM" or "YYYY-MM-DD" into integers."""
    if not value:
        return None
    match = re.match(r"^\s*(\d{4})(?:-(\d{1,2}))?(?:-(\d{1,2}))?", value)
    if not match:
        return None
    year = int(match.group(1))
    month = int(match.group(2)) if match.group(2) else None
    day = int(match.group(3)) if match.group(3) else None
    return year, month, day


def cover_date_match(left: str | None, right: str | None) -> YearMatch:
    """Exact when year and month agree, close when the months are adjacent."""
    left_date = parse_cover_date(left)
    right_date = parse_cover_date(right)
    if not left_date or not right_date or left_date[0] != right_date[0]:
        return "none"
    left_month, right_month = left_date[1], right_date[1]
    if left_month is None or right_month is None:
        return "close"
    if left_month == right_month:
        return "exact"
    if abs(left_month - right_month) <= 1:
        return "close"
    return "none"
