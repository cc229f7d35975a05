"""
Tests for the content filter.
"""

from reposync.filters import is_included, partition_changes
from reposync.models import ChangeKind, ChangeRecord


def _record(path, kind=ChangeKind.MODIFIED):
    return ChangeRecord(repository="acme/docs", path=path, kind=kind, content="text")


class TestIsIncluded:
    def test_allowed_extension(self):
        assert is_included("docs/guide.md", [".md"], [])

    def test_disallowed_extension(self):
        assert not is_included("assets/logo.png", [".md"], [])

    def test_empty_allow_list_admits_everything(self):
        assert is_included("Makefile", [], [])
        assert is_included("assets/logo.png", (), ())

    def test_exclude_is_a_substring_match(self):
        assert not is_included("web/node_modules/pkg/README.md", [".md"], ["node_modules"])
        assert not is_included("docs/draft-notes.md", [".md"], ["draft"])

    def test_exclude_is_not_a_glob(self):
        assert is_included("docs/guide.md", [".md"], ["*.md"])

    def test_empty_pattern_is_ignored(self):
        assert is_included("docs/guide.md", [".md"], [""])


class TestPartitionChanges:
    def test_partition(self):
        records = [
            _record("a.md"),
            _record("b.png"),
            _record("node_modules/c.md"),
            _record("d.md", ChangeKind.REMOVED),
            _record("e.png", ChangeKind.REMOVED),
        ]

        result = partition_changes(records, [".md"], ["node_modules"])

        assert [r.path for r in result.valid] == ["a.md"]
        assert [r.path for r in result.excluded] == ["b.png", "node_modules/c.md"]
        # removals bypass the rules
        assert [r.path for r in result.removed] == ["d.md", "e.png"]

    def test_empty_input(self):
        result = partition_changes([], [".md"], [])
        assert result.valid == [] and result.removed == [] and result.excluded == []
