"""Unit tests for the file cache."""

import pytest

from backlogmd.cache import FileCache
from backlogmd.errors import NotFoundError, ValidationError

from conftest import LOGIN


class TestFileCache:
    """Test cases for FileCache."""

    def test_get_reads_disk_on_miss(self, backlog_dir):
        cache = FileCache(backlog_dir)
        assert LOGIN not in cache

        content = cache.get(LOGIN)

        assert content == (backlog_dir / LOGIN).read_text(encoding="utf-8")
        assert LOGIN in cache
        assert cache.cached_paths() == [LOGIN]

    def test_get_serves_cached_content(self, backlog_dir):
        cache = FileCache(backlog_dir)
        cache.get(LOGIN)
        (backlog_dir / LOGIN).write_text("changed on disk", encoding="utf-8")

        assert cache.get(LOGIN) != "changed on disk"

    def test_invalidate_one_path(self, backlog_dir):
        cache = FileCache(backlog_dir)
        cache.get(LOGIN)
        (backlog_dir / LOGIN).write_text("changed on disk", encoding="utf-8")

        cache.invalidate(LOGIN)

        assert LOGIN not in cache
        assert cache.get(LOGIN) == "changed on disk"

    def test_invalidate_all(self, backlog_dir):
        cache = FileCache(backlog_dir)
        cache.get(LOGIN)
        cache.get("manifest.json")

        cache.invalidate()

        assert len(cache) == 0

    def test_set_overrides_content(self, backlog_dir):
        cache = FileCache(backlog_dir)
        cache.set(LOGIN, "status: in-progress")

        assert cache.get(LOGIN) == "status: in-progress"
        assert cache.peek(LOGIN) == "status: in-progress"

    def test_missing_file_raises_not_found(self, backlog_dir):
        cache = FileCache(backlog_dir)

        with pytest.raises(NotFoundError) as excinfo:
            cache.get("work/nope/index.md")

        assert excinfo.value.kind == "not_found"
        assert excinfo.value.source == "work/nope/index.md"

    def test_directory_is_not_a_file(self, backlog_dir):
        cache = FileCache(backlog_dir)
        with pytest.raises(NotFoundError):
            cache.get("work")

    def test_undecodable_file_raises_validation(self, backlog_dir):
        (backlog_dir / LOGIN).write_bytes(b"\xff\xfe broken \x80")
        cache = FileCache(backlog_dir)

        with pytest.raises(ValidationError) as excinfo:
            cache.get(LOGIN)

        assert excinfo.value.kind == "validation"
        assert excinfo.value.source == LOGIN
        assert LOGIN not in cache

    @pytest.mark.parametrize("path", ["/etc/passwd", "../outside.md", "work/../../x.md", ""])
    def test_rejects_paths_outside_root(self, backlog_dir, path):
        cache = FileCache(backlog_dir)
        with pytest.raises(ValidationError):
            cache.get(path)

    def test_normalizes_separators(self, backlog_dir):
        cache = FileCache(backlog_dir)
        assert cache.normalize("work\\a\\index.md") == "work/a/index.md"
        assert cache.normalize("./work/a/index.md") == "work/a/index.md"

    def test_list_dir_and_exists(self, backlog_dir):
        cache = FileCache(backlog_dir)

        assert cache.list_dir("work") == ["001-feat-user-auth", "002-fix-typo", "003-chore-docs"]
        assert cache.list_dir("work/missing") == []
        assert cache.exists("manifest.json")
        assert not cache.exists("work/missing/index.md")
        assert cache.is_dir("work")

    def test_caches_are_independent(self, backlog_dir):
        first = FileCache(backlog_dir)
        second = FileCache(backlog_dir)
        first.set(LOGIN, "only in first")

        assert second.get(LOGIN) != "only in first"
