"""
Tests for conflict detection and resolution strategies.
"""

from __future__ import annotations

import json

import pytest


def _conflict(local, remote, local_type="update", remote_type="update"):
    from skillsync.models import Change, ChangeSource, SyncConflict

    return SyncConflict(
        item_id=local.id,
        item_type=local.type,
        local_item=local,
        remote_item=remote,
        local_change=Change(type=local_type, item=local, source=ChangeSource.LOCAL),
        remote_change=Change(type=remote_type, item=remote, source=ChangeSource.REMOTE),
    )


class TestFindConflicts:
    """Pairing of changes."""

    def test_equal_hash_is_not_a_conflict(self, make_item):
        from skillsync.models import Change, ChangeSource
        from skillsync.resolver import ConflictResolver

        local = make_item(content="converged", version=2, minutes=1)
        remote = make_item(content="converged", version=3, minutes=9)
        conflicts = ConflictResolver().find_conflicts(
            [Change(type="update", item=local, source=ChangeSource.LOCAL)],
            [Change(type="update", item=remote, source=ChangeSource.REMOTE)],
        )
        assert conflicts == []

    def test_pairs_by_item_id(self, make_item):
        from skillsync.models import Change, ChangeSource
        from skillsync.resolver import ConflictResolver

        local = [
            Change(type="update", item=make_item("a", content="l"), source=ChangeSource.LOCAL),
            Change(type="create", item=make_item("b"), source=ChangeSource.LOCAL),
        ]
        remote = [
            Change(type="update", item=make_item("a", content="r"), source=ChangeSource.REMOTE),
            Change(type="create", item=make_item("c"), source=ChangeSource.REMOTE),
        ]
        conflicts = ConflictResolver().find_conflicts(local, remote)
        assert [c.item_id for c in conflicts] == ["a"]
        assert conflicts[0].resolved is False


class TestStrategies:
    """Each strategy's outcome."""

    def test_local_and_remote_wins(self, make_item):
        from skillsync.models import ConflictStrategy, ResolutionOutcome
        from skillsync.resolver import ConflictResolver

        conflict = _conflict(make_item(content="l", version=2), make_item(content="r", version=5))
        resolver = ConflictResolver()

        local = resolver.resolve(conflict, ConflictStrategy.LOCAL_WINS)
        assert local.outcome == ResolutionOutcome.LOCAL
        assert local.item.content == "l"
        assert local.item.version == 6
        assert local.item.hash_is_valid()

        remote = resolver.resolve(conflict, ConflictStrategy.REMOTE_WINS)
        assert remote.outcome == ResolutionOutcome.REMOTE
        assert remote.item.content == "r"
        assert remote.item.version == 6

    @pytest.mark.parametrize("local_minutes, remote_minutes, expected", [
        (0, 5, "remote"),
        (5, 0, "local"),
        (3, 3, "local"),
    ])
    def test_newest_wins_is_deterministic(self, make_item, local_minutes, remote_minutes, expected):
        from skillsync.models import ConflictStrategy
        from skillsync.resolver import ConflictResolver

        conflict = _conflict(
            make_item(content="l", minutes=local_minutes),
            make_item(content="r", minutes=remote_minutes),
        )
        resolver = ConflictResolver()
        for _ in range(3):
            resolution = resolver.resolve(conflict, ConflictStrategy.NEWEST_WINS)
            assert resolution.outcome.value == expected

    def test_manual_leaves_it_open(self, make_item):
        from skillsync.models import ConflictStrategy
        from skillsync.resolver import ConflictResolver

        resolution = ConflictResolver().resolve(
            _conflict(make_item(content="l"), make_item(content="r")), ConflictStrategy.MANUAL,
        )
        assert resolution.is_manual
        assert resolution.item is None

    def test_winning_delete_has_no_item(self, make_item):
        from skillsync.models import ConflictStrategy, ResolutionOutcome
        from skillsync.resolver import ConflictResolver

        conflict = _conflict(make_item(content="l"), make_item(content="r"), remote_type="delete")
        resolution = ConflictResolver().resolve(conflict, ConflictStrategy.REMOTE_WINS)
        assert resolution.outcome == ResolutionOutcome.REMOTE
        assert resolution.item is None

    def test_history_recorded(self, make_item):
        from skillsync.models import ConflictStrategy
        from skillsync.resolver import ConflictResolver

        resolver = ConflictResolver()
        conflict = _conflict(make_item(content="l"), make_item(content="r"))
        resolver.resolve(conflict, ConflictStrategy.LOCAL_WINS)
        resolver.resolve(conflict, ConflictStrategy.MANUAL)

        assert [r.strategy for r in resolver.history] == [
            ConflictStrategy.LOCAL_WINS, ConflictStrategy.MANUAL,
        ]
        resolver.clear_history()
        assert resolver.history == []


class TestSmartMerge:
    """JSON field merge and three-way text merge."""

    def test_json_shallow_merge_newest_field_wins(self, make_item):
        from skillsync.models import ConflictStrategy, ResolutionOutcome
        from skillsync.resolver import ConflictResolver

        local = make_item(content=json.dumps({"a": 1, "shared": "local", "l": True}), minutes=1)
        remote = make_item(content=json.dumps({"a": 1, "shared": "remote", "r": True}), minutes=2)
        resolution = ConflictResolver().resolve(
            _conflict(local, remote), ConflictStrategy.SMART_MERGE,
        )

        assert resolution.outcome == ResolutionOutcome.MERGED
        assert json.loads(resolution.item.content) == {
            "a": 1, "shared": "remote", "l": True, "r": True,
        }
        assert resolution.item.version == 2

    def test_three_way_non_overlapping(self, make_item):
        from skillsync.models import ConflictStrategy, ResolutionOutcome
        from skillsync.resolver import ConflictResolver

        base = "one\ntwo\nthree\nfour\nfive\n"
        local = make_item(content="ONE\ntwo\nthree\nfour\nfive\n")
        remote = make_item(content="one\ntwo\nthree\nfour\nFIVE\nsix\n")
        resolution = ConflictResolver().resolve(
            _conflict(local, remote), ConflictStrategy.SMART_MERGE, base=base,
        )

        assert resolution.outcome == ResolutionOutcome.MERGED
        assert resolution.item.content == "ONE\ntwo\nthree\nfour\nFIVE\nsix\n"

    def test_three_way_overlap_forces_manual(self, make_item):
        from skillsync.models import ConflictStrategy
        from skillsync.resolver import ConflictResolver

        base = "one\ntwo\nthree\n"
        resolution = ConflictResolver().resolve(
            _conflict(make_item(content="one\nTWO-L\nthree\n"),
                      make_item(content="one\nTWO-R\nthree\n")),
            ConflictStrategy.SMART_MERGE,
            base=base,
        )
        assert resolution.is_manual
        assert "overlapping" in resolution.reason

    def test_text_without_base_is_manual(self, make_item):
        from skillsync.models import ConflictStrategy
        from skillsync.resolver import ConflictResolver

        resolution = ConflictResolver().resolve(
            _conflict(make_item(content="a\n"), make_item(content="b\n")),
            ConflictStrategy.SMART_MERGE,
        )
        assert resolution.is_manual

    def test_delete_side_cannot_merge(self, make_item):
        from skillsync.models import ConflictStrategy
        from skillsync.resolver import ConflictResolver

        resolution = ConflictResolver().resolve(
            _conflict(make_item(content="{}"), make_item(content='{"a": 1}'), local_type="delete"),
            ConflictStrategy.SMART_MERGE,
        )
        assert resolution.is_manual


class TestThreeWayMerge:
    """Line merge edge cases."""

    def test_identical_edits_applied_once(self):
        from skillsync.resolver import three_way_merge

        base = "a\nb\nc\n"
        edited = "a\nB\nc\n"
        assert three_way_merge(base, edited, edited) == edited

    def test_insertions_at_different_points(self):
        from skillsync.resolver import three_way_merge

        base = "a\nb\nc\n"
        merged = three_way_merge(base, "top\na\nb\nc\n", "a\nb\nc\nbottom\n")
        assert merged == "top\na\nb\nc\nbottom\n"

    def test_competing_insertions_conflict(self):
        from skillsync.resolver import MergeConflictError, three_way_merge

        with pytest.raises(MergeConflictError):
            three_way_merge("a\nb\n", "a\nx\nb\n", "a\ny\nb\n")


class TestMergeContents:
    """Direct merges of two items."""

    def test_header_cannot_be_merged(self, make_item):
        from skillsync.models import SyncableItem
        from skillsync.resolver import MergeConflictError, merge_contents

        local = make_item(content='{"a": 1}')
        header = SyncableItem.from_side_channel(make_item(content='{"b": 2}').side_channel())
        with pytest.raises(MergeConflictError, match="content not available"):
            merge_contents(local, header, None)


class TestDiffContents:
    """Key and line diffs of two contents."""

    def test_json_keys_with_dotted_paths(self):
        from skillsync.resolver import diff_contents

        local = json.dumps({"name": "x", "old": 1, "env": {"A": "1", "B": "2"}})
        remote = json.dumps({"name": "y", "new": 2, "env": {"A": "1", "C": "3"}})
        diff = diff_contents(local, remote)

        assert diff.kind == "json"
        assert diff.additions == ["new", "env.C"]
        assert diff.deletions == ["env.B", "old"]
        assert diff.modifications == ["name"]
        assert diff.summary == "+2 addition(s), -2 deletion(s), ~1 modification(s)"

    def test_text_lines(self):
        from skillsync.resolver import diff_contents

        diff = diff_contents("one\ntwo\nthree\n", "one\nTWO\nthree\nfour\n")

        assert diff.kind == "text"
        assert diff.deletions == ["two"]
        assert diff.additions == ["TWO", "four"]
        assert diff.modifications == []

    def test_identical_contents(self):
        from skillsync.resolver import diff_contents

        assert diff_contents('{"a": 1}', '{"a": 1}').summary == "no changes"
        assert diff_contents("same\n", "same\n").summary == "no changes"


class TestPreview:
    """Every strategy tried without committing to one."""

    def test_outcome_per_strategy(self, make_item):
        from skillsync.models import ConflictStrategy, ResolutionOutcome
        from skillsync.resolver import ConflictResolver

        local = make_item(content=json.dumps({"a": 1, "l": True}), minutes=5)
        remote = make_item(content=json.dumps({"a": 2, "r": True}), minutes=1)
        resolver = ConflictResolver()
        preview = resolver.preview(_conflict(local, remote))

        assert preview.diff.summary == "+1 addition(s), -1 deletion(s), ~1 modification(s)"
        outcomes = preview.outcomes
        assert outcomes[ConflictStrategy.LOCAL_WINS].outcome == ResolutionOutcome.LOCAL
        assert outcomes[ConflictStrategy.REMOTE_WINS].outcome == ResolutionOutcome.REMOTE
        assert outcomes[ConflictStrategy.NEWEST_WINS].outcome == ResolutionOutcome.LOCAL
        merged = outcomes[ConflictStrategy.SMART_MERGE]
        assert merged.outcome == ResolutionOutcome.MERGED
        assert json.loads(merged.item.content) == {"a": 1, "l": True, "r": True}
        assert resolver.history == []

    def test_deleted_side_diffs_against_nothing(self, make_item):
        from skillsync.models import ConflictStrategy
        from skillsync.resolver import ConflictResolver

        local = make_item(content="kept\n")
        remote = make_item(content="old\n")
        preview = ConflictResolver().preview(_conflict(local, remote, remote_type="delete"))

        assert preview.diff.kind == "text"
        assert preview.diff.deletions == ["kept"]
        assert preview.diff.additions == []
        assert preview.outcomes[ConflictStrategy.REMOTE_WINS].item is None
        assert preview.outcomes[ConflictStrategy.SMART_MERGE].is_manual

    def test_header_has_no_diff(self, make_item):
        from skillsync.models import SyncableItem
        from skillsync.resolver import ConflictResolver

        local = make_item(content="local\n")
        header = SyncableItem.from_side_channel(make_item(content="remote\n").side_channel())
        preview = ConflictResolver().preview(_conflict(local, header))

        assert preview.diff is None
        assert preview.outcomes
