"""Tests for field diffs and file-level review."""

from __future__ import annotations

import pytest

from shelfarr.core.approval import (
    ClearedToNull,
    FieldChange,
    FieldUpdate,
    FileChange,
    JobFile,
    SeriesGroup,
    SetValue,
    accept_all_files,
    accept_high_confidence,
    build_field_changes,
    build_file_change,
    find_file_change,
    issue_to_fields,
    manual_select_issue,
    reject_all_files,
    reject_file,
    restore_file,
    series_to_fields,
    update_field_approvals,
)
from shelfarr.core.comicinfo import ComicInfo
from shelfarr.core.exceptions import InvalidRequestError
from shelfarr.core.sources.models import Credit, IssueRecord, SeriesMatch, SeriesQuery


def _issues() -> list[IssueRecord]:
    return [
        IssueRecord(
            source="comicvine",
            source_id=f"cv-{n}",
            series_name="Batman",
            number=str(n),
            title=f"Chapter {n}",
            cover_date=f"2011-{n + 10:02d}-01",
            description="<p>Bruce &amp; Dick</p>",
            credits=[Credit(name="Scott Snyder", role="writer"), Credit(name="Greg Capullo", role="Cover")],
            characters=["Bruce Wayne", "bruce wayne", "Dick Grayson"],
        )
        for n in (1, 2)
    ]


@pytest.fixture
def group(batman_comicvine: SeriesMatch) -> SeriesGroup:
    return SeriesGroup(
        display_name="Batman",
        query=SeriesQuery(series="Batman", year=2011),
        folder_path="/comics/Batman",
        selected_series=batman_comicvine,
        status="matched",
    )


def _change(file_id: str, confidence: float, status: str = "matched") -> FileChange:
    return FileChange(
        file_id=file_id,
        filename=f"{file_id}.cbz",
        file_path=f"/comics/{file_id}.cbz",
        group_index=0,
        status=status,
        confidence=confidence,
        fields={
            "title": FieldChange(current=None, proposed="Chapter 1", approved=False),
            "publisher": FieldChange(current="DC", proposed="DC Comics", approved=False),
        },
    )


class TestFieldValues:
    """Decisions on a single field."""

    def test_approved_field_uses_proposal(self):
        field = FieldChange(current="DC", proposed="DC Comics")
        assert field.final_value() == "DC Comics"
        assert field.is_actionable()

    def test_unapproved_field_keeps_current(self):
        field = FieldChange(current="DC", proposed="DC Comics", approved=False)
        assert field.final_value() == "DC"
        assert not field.is_actionable()

    def test_edit_wins_over_proposal(self):
        field = FieldChange(current="DC", proposed="DC Comics", edit=SetValue(value="DC Comics, Inc."))
        assert field.edited is True
        assert field.edited_value == "DC Comics, Inc."
        assert field.final_value() == "DC Comics, Inc."

    def test_cleared_edit_empties_field(self):
        field = FieldChange(current="scanned", proposed="scanned", approved=False, edit=ClearedToNull())
        assert field.final_value() is None
        assert field.is_actionable()

    def test_edit_equal_to_current_is_not_actionable(self):
        field = FieldChange(current="52", proposed="50", edit=SetValue(value="52"))
        assert not field.is_actionable()

    def test_update_payload_shorthand(self):
        assert FieldUpdate.from_payload({"edited_value": "x"}).edit == SetValue(value="x")
        assert FieldUpdate.from_payload({"edited_value": None}).edit == ClearedToNull()
        assert FieldUpdate.from_payload({"approved": False}).edit is None


class TestProposals:
    """ComicInfo proposals built from source records."""

    def test_issue_to_fields(self, batman_comicvine: SeriesMatch):
        info = issue_to_fields(_issues()[1], batman_comicvine)

        assert info.series == "Batman"
        assert info.number == "2"
        assert info.volume == "2011"
        assert info.count == "52"
        assert (info.year, info.month, info.day) == ("2011", "12", "1")
        assert info.publisher == "DC Comics"
        assert info.summary == "Bruce & Dick"
        assert info.writer == "Scott Snyder"
        assert info.cover_artist == "Greg Capullo"
        assert info.characters == "Bruce Wayne, Dick Grayson"

    def test_series_to_fields(self, batman_comicvine: SeriesMatch):
        info = series_to_fields(batman_comicvine)
        assert info.populated() == {"series": "Batman", "volume": "2011", "count": "52", "publisher": "DC Comics"}

    def test_only_differing_fields_are_proposed(self):
        current = ComicInfo(series="Batman", count="52", publisher="DC")
        proposed = ComicInfo(series="Batman", count=52, publisher="DC Comics", number="1")

        changes = build_field_changes(current, proposed)

        assert list(changes) == ["number", "publisher"]
        assert changes["publisher"].current == "DC"
        assert changes["publisher"].proposed == "DC Comics"
        assert all(change.approved for change in changes.values())

    def test_replace_mode_clears_unproposed_fields(self):
        current = ComicInfo(series="Batman", notes="scanned")

        assert "notes" not in build_field_changes(current, ComicInfo(series="Batman"))
        changes = build_field_changes(current, ComicInfo(series="Batman"), cleanup_mode="replace")
        assert changes["notes"].proposed is None
        assert changes["notes"].final_value() is None


class TestFileChanges:
    """Per-file matching and review operations."""

    def test_file_matched_to_issue(self, group: SeriesGroup):
        file = JobFile(path="/comics/Batman/Batman 002 (2011).cbz")
        current = ComicInfo(series="Batman", publisher="DC")

        change = build_file_change(file, 0, group, _issues(), current)

        assert change.status == "matched"
        assert change.confidence == 1.0
        assert change.matched_issue.source_id == "cv-2"
        assert "series" not in change.fields
        assert change.fields["publisher"].current == "DC"
        assert change.fields["publisher"].proposed == "DC Comics"
        assert change.has_pending_changes()

    def test_unmatched_file_gets_series_fields(self, group: SeriesGroup):
        file = JobFile(path="/comics/Batman/Batman 009 (2011).cbz")

        change = build_file_change(file, 0, group, _issues(), ComicInfo())

        assert change.status == "unmatched"
        assert change.matched_issue is None
        assert set(change.fields) == {"series", "volume", "count", "publisher"}

    def test_skipped_group_rejects_files(self, group: SeriesGroup):
        group.status = "skipped"
        change = build_file_change(JobFile(path="/comics/Batman 001.cbz"), 0, group, _issues(), ComicInfo())
        assert change.status == "rejected"

    def test_user_edit_wins(self):
        change = _change("a", 0.9)

        update_field_approvals(
            change,
            {"publisher": FieldUpdate(approved=True, edit=SetValue(value="DC Comics, Inc."))},
        )

        assert change.fields["publisher"].final_value() == "DC Comics, Inc."
        assert list(change.actionable_fields()) == ["publisher"]

    def test_editing_unproposed_field(self):
        change = _change("a", 0.9)
        change.current_metadata = ComicInfo(notes="scanned")

        update_field_approvals(change, {"notes": FieldUpdate(edit=ClearedToNull())})

        assert change.fields["notes"].current == "scanned"
        assert change.fields["notes"].is_actionable()

    def test_unknown_field_rejected(self):
        with pytest.raises(InvalidRequestError, match="bogus"):
            update_field_approvals(_change("a", 0.9), {"bogus": FieldUpdate(approved=True)})

    def test_reject_and_restore(self):
        change = _change("a", 0.9)
        change.fields["publisher"].approved = True

        reject_file(change)
        assert change.status == "rejected"
        assert not change.has_pending_changes()
        assert change.fields["publisher"].approved is True

        restore_file(change)
        assert change.status == "matched"
        assert change.fields["title"].approved is False

    def test_restore_reapproves_when_nothing_approved(self):
        change = _change("a", 0.9)
        reject_file(change)

        restore_file(change)

        assert all(field.approved for field in change.fields.values())

    def test_manual_select_issue(self, group: SeriesGroup):
        change = _change("a", 0.2, status="unmatched")

        manual_select_issue(change, _issues()[0], group)

        assert change.status == "manual"
        assert change.confidence == 1.0
        assert change.fields["number"].proposed == "1"

    def test_find_file_change(self):
        changes = [_change("a", 0.9)]
        assert find_file_change(changes, "a") is changes[0]
        with pytest.raises(InvalidRequestError):
            find_file_change(changes, "missing")


class TestBatchOperations:
    def test_accept_high_confidence(self):
        changes = [_change("a", 0.95), _change("b", 0.85), _change("c", 0.5)]

        count = accept_high_confidence(changes, threshold=0.8)

        assert count == 2
        assert all(field.approved for field in changes[0].fields.values())
        assert all(field.approved for field in changes[1].fields.values())
        assert not any(field.approved for field in changes[2].fields.values())

    def test_accept_high_confidence_skips_rejected(self):
        changes = [_change("a", 0.95, status="rejected")]
        assert accept_high_confidence(changes) == 0

    def test_accept_high_confidence_file_filter(self):
        changes = [_change("a", 0.95), _change("b", 0.95)]
        assert accept_high_confidence(changes, file_ids=["b"]) == 1
        assert not changes[0].fields["title"].approved

    def test_reject_and_accept_all(self):
        changes = [_change("a", 0.9), _change("b", 0.9)]

        assert reject_all_files(changes) == 2
        assert reject_all_files(changes) == 0
        assert accept_all_files(changes) == 2
        assert all(change.status == "matched" for change in changes)
        assert all(field.approved for change in changes for field in change.fields.values())
