"""Summaries of matching results for job logs."""

from collections.abc import Mapping


def cross_source_summary(status: Mapping[str, str], primary_source: str) -> str:
    """Human readable summary such as "1/2 matched".

    The primary source and sources skipped by configuration are not counted.
    """
    searched = [
        source
        for source, state in status.items()
        if source != primary_source and state != "skipped"
    ]
    if not searched:
        return "No other sources searched"
    matched = sum(1 for source in searched if status[source] == "matched")
    if matched == 0:
        return "No matches"
    return f"{matched}/{len(searched)} matched"


def match_count_summary(matched: int, total: int) -> str:
    """Summary for file matching in one group, e.g. "3 of 4 files matched"."""
    noun = "file" if total == 1 else "files"
    return f"{matched} of {total} {noun} matched"
