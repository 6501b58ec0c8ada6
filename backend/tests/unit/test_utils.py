"""Tests for shared utility functions."""

from __future__ import annotations

from shelfarr.core.utils import (
    _decode_filename_fragment,
    _extract_numeric_id,
    _simplify_label,
    is_empty,
    issue_numbers_match,
    normalize_field_value,
    normalize_issue_number,
    normalize_title,
    series_cache_key,
    strip_html,
    truncate,
)


class TestSimplifyLabel:
    """Test _simplify_label normalization function."""

    def test_basic_normalization(self):
        """Test basic normalization (lowercase, remove spaces)."""
        assert _simplify_label("Batman") == "batman"
        assert _simplify_label("Star Wars") == "starwars"
        assert _simplify_label("Spider-Man") == "spider-man"

    def test_space_hyphen_space_removal(self):
        """Test that space-enclosed hyphens are removed."""
        assert _simplify_label("Star Wars - Union") == "starwarsunion"
        assert _simplify_label("Batman - Gotham by Gaslight") == "batmangothambygaslight"

    def test_ampersand_and_connector(self):
        """Test that "&" and "and" are treated the same and dropped."""
        assert _simplify_label("Batman & Robin") == "batmanrobin"
        assert _simplify_label("Batman and Robin") == "batmanrobin"

    def test_empty_and_none(self):
        """Test handling of empty strings and None."""
        assert _simplify_label("") == ""
        assert _simplify_label(None) == ""

    def test_series_cache_key(self):
        """Test that cache keys ignore punctuation and case."""
        assert series_cache_key("Star Wars: Union") == series_cache_key("star wars union")


class TestNormalizeTitle:
    """Test normalize_title, which keeps word boundaries."""

    def test_articles_and_years_removed(self):
        assert normalize_title("The Amazing Spider-Man (2018)") == "amazing spider man"

    def test_volume_marker_removed(self):
        assert normalize_title("Batman Vol. 2") == "batman"
        assert normalize_title("Batman Volume 3") == "batman"

    def test_ampersand(self):
        assert normalize_title("Batman & Robin") == "batman and robin"

    def test_empty(self):
        assert normalize_title(None) == ""
        assert normalize_title("") == ""


class TestIssueNumbers:
    """Test issue number normalization and comparison."""

    def test_leading_zeros(self):
        assert normalize_issue_number("001") == 1.0
        assert issue_numbers_match("001", "1")

    def test_fractions(self):
        assert normalize_issue_number("1.5") == 1.5
        assert normalize_issue_number("½") == 0.5

    def test_hash_and_suffix(self):
        assert normalize_issue_number("#12") == 12.0
        assert normalize_issue_number("12a") == 12.0

    def test_invalid(self):
        assert normalize_issue_number(None) is None
        assert normalize_issue_number("") is None
        assert normalize_issue_number("abc") is None

    def test_different_numbers(self):
        assert not issue_numbers_match("1", "2")
        assert not issue_numbers_match(None, "1")

    def test_non_numeric_labels(self):
        assert issue_numbers_match("Annual", "annual")


def test_decode_filename_fragment() -> None:
    """Test URL-style escapes in filenames."""
    assert _decode_filename_fragment("Batman_20Year_20One") == "Batman Year One"
    assert _decode_filename_fragment("Batman_001") == "Batman 001"
    assert _decode_filename_fragment("Batman_2011_001") == "Batman 2011 001"


def test_strip_html() -> None:
    """Test provider HTML descriptions become plain text."""
    assert strip_html("<p>Hello <b>world</b></p><p>Next</p>") == "Hello world\nNext"
    assert strip_html("Tom &amp; Jerry") == "Tom & Jerry"
    assert strip_html(None) is None


def test_truncate() -> None:
    """Test truncation with an ellipsis."""
    assert truncate("abcdefghij", 8) == "abcde..."
    assert truncate("abc", 8) == "abc"
    assert truncate(None, 8) is None


def test_is_empty() -> None:
    """Test emptiness of metadata values."""
    for value in (None, "", "   ", [], {}):
        assert is_empty(value)
    assert not is_empty(0)
    assert not is_empty("x")


def test_normalize_field_value() -> None:
    """Test canonical forms used for comparing metadata values."""
    assert normalize_field_value(52) == "52"
    assert normalize_field_value(52.0) == "52"
    assert normalize_field_value(1.5) == "1.5"
    assert normalize_field_value(" DC ") == "DC"
    assert normalize_field_value("") is None
    assert normalize_field_value(["a", " b", ""]) == "a, b"
    assert normalize_field_value(True) is True


def test_extract_numeric_id() -> None:
    """Test extracting trailing numeric ids."""
    assert _extract_numeric_id("4050-123456") == 123456
    assert _extract_numeric_id(796) == 796
    assert _extract_numeric_id("abc") is None
    assert _extract_numeric_id(None) is None
