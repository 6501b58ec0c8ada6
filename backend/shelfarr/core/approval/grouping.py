"""Group submitted files into series."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from pathlib import Path

import structlog

from shelfarr.core.comicinfo import read_comicinfo
from shelfarr.core.exceptions import ArchiveError
from shelfarr.core.filename_parser import ParsedFilename, parse_filename
from shelfarr.core.series_marker import read_series_cache, read_series_marker
from shelfarr.core.sources.models import SeriesQuery
from shelfarr.core.utils import normalize_title

from .models import JobFile, SeriesGroup

logger = structlog.get_logger("shelfarr.approval.grouping")

CREATOR_HINT_FILES = 3


def _existing_creators(files: Sequence[JobFile]) -> list[str]:
    """Writer and penciller names from the first files that already carry ComicInfo."""
    for file in files[:CREATOR_HINT_FILES]:
        try:
            info = read_comicinfo(file.path)
        except ArchiveError as exc:
            logger.debug("No creator hints from file", path=file.path, error=exc.message)
            continue
        if info is None:
            continue
        names = [
            name.strip()
            for value in (info.writer, info.penciller)
            if value
            for name in value.split(",")
            if name.strip()
        ]
        if names:
            return list(dict.fromkeys(names))
    return []


def _group_from_files(
    folder: str,
    members: Sequence[tuple[JobFile, ParsedFilename]],
) -> SeriesGroup:
    display_name = members[0][1].series
    year = next((parsed.year for _, parsed in members if parsed.year), None)
    return SeriesGroup(
        display_name=display_name,
        query=SeriesQuery(
            series=display_name,
            year=year,
            creators=_existing_creators([file for file, _ in members]),
        ),
        folder_path=folder,
        file_ids=[file.file_id for file, _ in members],
        filenames=[file.filename for file, _ in members],
        parse_failed_file_ids=[file.file_id for file, parsed in members if parsed.parse_failed],
    )


def _marker_group(folder: str, files: Sequence[JobFile]) -> SeriesGroup | None:
    """One group for the whole folder when it carries a series.json."""
    marker = read_series_marker(folder)
    if marker is None:
        return None

    parsed = [parse_filename(file.filename) for file in files]
    group = SeriesGroup(
        display_name=marker.series_name,
        query=SeriesQuery(
            series=marker.series_name,
            year=marker.start_year,
            publisher=marker.publisher,
            issue_count=marker.issue_count,
            creators=_existing_creators(files),
        ),
        folder_path=folder,
        file_ids=[file.file_id for file in files],
        filenames=[file.filename for file in files],
        parse_failed_file_ids=[file.file_id for file, p in zip(files, parsed, strict=True) if p.parse_failed],
    )
    series = marker.to_series()
    if series is not None:
        group.selected_series = series
        group.issue_matching_series = marker.issue_matching.to_series() if marker.issue_matching else None
        group.pre_approved_from_marker = True
        group.status = "matched"
    logger.debug(
        "Folder pinned by series marker",
        folder=folder,
        series=marker.series_name,
        pre_approved=group.pre_approved_from_marker,
    )
    return group


def group_files(files: Iterable[JobFile], mixed_series: bool = False) -> list[SeriesGroup]:
    """Cluster files into series groups.

    Without ``mixed_series`` a folder holding series.json becomes a single
    group, and other files group by folder and normalized series name. With
    ``mixed_series`` files group by folder, normalized name and year, and a
    folder's .series-cache.json pre-approves the names it knows.

    Groups come back ordered by folder, then name.
    """
    by_folder: dict[str, list[JobFile]] = {}
    for file in files:
        by_folder.setdefault(file.folder, []).append(file)

    groups: list[SeriesGroup] = []
    for folder, folder_files in by_folder.items():
        if not mixed_series:
            marker_group = _marker_group(folder, folder_files)
            if marker_group is not None:
                groups.append(marker_group)
                continue

        buckets: dict[tuple[str, int | None], list[tuple[JobFile, ParsedFilename]]] = {}
        for file in folder_files:
            parsed = parse_filename(file.filename)
            name_key = normalize_title(parsed.series) or parsed.series.casefold()
            key = (name_key, parsed.year if mixed_series else None)
            buckets.setdefault(key, []).append((file, parsed))

        cache = read_series_cache(folder) if mixed_series else None
        for members in buckets.values():
            group = _group_from_files(folder, members)
            if cache is not None:
                cached = cache.lookup(group.display_name)
                if cached is not None:
                    group.selected_series = cached.to_series()
                    group.issue_matching_series = (
                        cached.issue_matching.to_series() if cached.issue_matching else None
                    )
                    group.pre_approved_from_cache = True
                    group.status = "matched"
            groups.append(group)

    groups.sort(key=lambda group: (Path(group.folder_path).as_posix().casefold(), group.display_name.casefold()))
    logger.info(
        "Grouped files into series",
        groups=len(groups),
        files=sum(group.file_count for group in groups),
        mixed_series=mixed_series,
    )
    return groups
