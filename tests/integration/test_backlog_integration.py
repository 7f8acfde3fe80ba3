"""
Integration tests for the Backlog facade.

These tests drive queued mutations against a real backlog tree on disk and
verify files, the cached model and emitted events together.
"""

import asyncio
import json

import pytest

from backlogmd import Backlog
from backlogmd.backlog import resolve_backlog_dir
from backlogmd.backlog_logging import observability_hooks
from backlogmd.changeset import SetTaskStatus
from backlogmd.errors import ConflictError, NotFoundError, ValidationError
from backlogmd.models import ItemStatus, TaskStatus
from backlogmd.writer import apply_changeset

from conftest import AUTH_SLUG, DOCS_SLUG, FIX, FIX_SLUG, LOGIN, LOGIN_TASK, README

LOGIN_REF = f"{AUTH_SLUG}/002"


@pytest.fixture
def events():
    """Collect changeset_applied and structure events."""
    received = []
    names = [
        "changeset_applied",
        "item_created",
        "task_created",
        "task_removed",
        "item_removed",
        "file_invalidated",
        "file_overwritten",
    ]
    callbacks = {}
    for name in names:
        callbacks[name] = lambda _name=name, **data: received.append((_name, data))
        observability_hooks.register_hook(name, callbacks[name])
    yield received
    for name, callback in callbacks.items():
        observability_hooks.unregister_hook(name, callback)


def read(backlog_dir, path):
    return (backlog_dir / path).read_text(encoding="utf-8")


class TestBacklogReads:
    """Integration tests for reading through the facade."""

    def test_root_resolution(self, project_dir, backlog_dir):
        assert resolve_backlog_dir(project_dir) == backlog_dir.resolve()
        assert resolve_backlog_dir(backlog_dir) == backlog_dir.resolve()
        assert Backlog(project_dir).root == backlog_dir.resolve()

    def test_document_and_lookups(self, project_dir):
        backlog = Backlog(project_dir)

        document = backlog.document()
        assert document["protocol"] == "backlogmd/v4"
        assert [item["slug"] for item in document["work"]] == [AUTH_SLUG, FIX_SLUG, DOCS_SLUG]
        assert [item["slug"] for item in backlog.pending_work()] == [DOCS_SLUG]
        assert backlog.get_item("002").slug == FIX_SLUG
        assert backlog.get_task(LOGIN_REF).source == LOGIN
        assert backlog.get_task_content(LOGIN_REF)["acceptanceCriteria"][1] == {
            "text": "Password is hashed",
            "checked": True,
        }

    def test_lookups_raise_not_found(self, project_dir):
        backlog = Backlog(project_dir)

        with pytest.raises(NotFoundError):
            backlog.get_item("999")
        with pytest.raises(NotFoundError):
            backlog.get_task(f"{AUTH_SLUG}/099")
        with pytest.raises(NotFoundError):
            backlog.get_file_content("work/none.md")

    def test_invalidate_picks_up_external_edit(self, project_dir, backlog_dir, events):
        """
        Given: a backlog whose model has been read
        When: a task file is edited outside the engine and invalidated
        Then: the next read reflects the edit
        """
        backlog = Backlog(project_dir)
        assert backlog.get_task(LOGIN_REF).status is TaskStatus.OPEN

        (backlog_dir / LOGIN).write_text(read(backlog_dir, LOGIN).replace("status: open", "status: review"), encoding="utf-8")
        assert backlog.get_task(LOGIN_REF).status is TaskStatus.OPEN

        backlog.invalidate(LOGIN)

        assert backlog.get_task(LOGIN_REF).status is TaskStatus.REVIEW
        assert events[-1][0] == "file_invalidated"
        assert events[-1][1]["path"] == LOGIN

    def test_stale_plan_is_rejected(self, project_dir, backlog_dir):
        """
        Given: a dry-run changeset planned from the cached model
        When: the cached task file changes before the changeset is written
        Then: writing it fails with ConflictError
        """
        backlog = Backlog(project_dir)
        changeset = backlog.plan(SetTaskStatus(LOGIN_REF, "done"))
        backlog.cache.set(LOGIN, backlog.cache.get(LOGIN).replace("status: open", "status: review"))

        with pytest.raises(ConflictError):
            apply_changeset(changeset, backlog.cache)
        assert "status: open" in read(backlog_dir, LOGIN)


class TestBacklogMutations:
    """Integration tests for queued mutations."""

    @pytest.mark.asyncio
    async def test_set_task_status_writes_files_and_model(self, project_dir, backlog_dir, events):
        """
        Given: the sample backlog
        When: the login task is closed
        Then: the task file, the manifest and the cached model agree and one event is emitted
        """
        backlog = Backlog(project_dir)

        changeset = await backlog.close_task(LOGIN_REF)

        assert changeset.touched_files == [LOGIN, "manifest.json"]
        assert "status: done" in read(backlog_dir, LOGIN)
        manifest = json.loads(read(backlog_dir, "manifest.json"))
        assert manifest["items"][0]["status"] == "done"
        assert manifest["items"][0]["tasks"][1]["status"] == "done"
        assert backlog.get_item(AUTH_SLUG).status is ItemStatus.DONE
        assert backlog.model.warnings == []

        applied = [data for name, data in events if name == "changeset_applied"]
        assert len(applied) == 1
        assert applied[0]["operation"] == "SetTaskStatus"
        assert applied[0]["files"] == [LOGIN, "manifest.json"]

    @pytest.mark.asyncio
    async def test_no_op_writes_nothing(self, project_dir, backlog_dir, events):
        backlog = Backlog(project_dir)
        before = read(backlog_dir, LOGIN)

        changeset = await backlog.set_task_status(LOGIN_REF, "open")

        assert changeset.is_empty
        assert read(backlog_dir, LOGIN) == before
        assert events == []

    @pytest.mark.asyncio
    async def test_start_task_respects_human_review(self, project_dir):
        backlog = Backlog(project_dir)

        await backlog.start_task(LOGIN_REF)
        await backlog.start_task(FIX)

        assert backlog.get_task(LOGIN_REF).status is TaskStatus.IN_PROGRESS
        assert backlog.get_task(FIX).status is TaskStatus.REVIEW

    @pytest.mark.asyncio
    async def test_invalid_status_is_rejected(self, project_dir, backlog_dir):
        backlog = Backlog(project_dir)

        with pytest.raises(ValidationError):
            await backlog.set_task_status(LOGIN_REF, "finished")
        assert "status: open" in read(backlog_dir, LOGIN)

    @pytest.mark.asyncio
    async def test_concurrent_mutations_apply_in_order(self, project_dir):
        """
        Given: five status changes on one task issued concurrently
        When: they all settle
        Then: none conflicts and the last one enqueued wins
        """
        backlog = Backlog(project_dir)
        statuses = ["in-progress", "review", "ready-to-test", "block", "done"]

        changesets = await asyncio.gather(*(backlog.set_task_status(LOGIN_REF, s) for s in statuses))

        assert [c.model_after.find_task(LOGIN).status.value for c in changesets] == statuses
        assert backlog.get_task(LOGIN_REF).status is TaskStatus.DONE

    @pytest.mark.asyncio
    async def test_failed_operation_does_not_block_queue(self, project_dir):
        backlog = Backlog(project_dir)

        results = await asyncio.gather(
            backlog.set_task_status(f"{AUTH_SLUG}/099", "done"),
            backlog.set_task_status(LOGIN_REF, "review"),
            return_exceptions=True,
        )

        assert isinstance(results[0], NotFoundError)
        assert results[1].model_after.find_task(LOGIN).status is TaskStatus.REVIEW

    @pytest.mark.asyncio
    async def test_mutation_plans_against_cached_content(self, project_dir, backlog_dir):
        """
        Given: a task file rewritten on disk after it was cached
        When: the cache is told about the new content and a mutation runs
        Then: the mutation plans against the new content
        """
        backlog = Backlog(project_dir)
        assert backlog.get_task(LOGIN_REF).status is TaskStatus.OPEN
        edited = read(backlog_dir, LOGIN).replace("status: open", "status: block")
        (backlog_dir / LOGIN).write_text(edited, encoding="utf-8")
        backlog.cache.set(LOGIN, edited)

        changeset = await backlog.set_task_status(LOGIN_REF, "done")

        assert changeset.patches[0].original == "status: block"
        assert backlog.model.warnings == []

    @pytest.mark.asyncio
    async def test_toggle_and_assign(self, project_dir, backlog_dir):
        backlog = Backlog(project_dir)

        await backlog.toggle_criterion(LOGIN_REF, 1)
        await backlog.toggle_criterion(LOGIN_REF, 0, checked=True)
        await backlog.assign_task(LOGIN_REF, "bob")
        await backlog.assign_item(FIX_SLUG, None)

        content = read(backlog_dir, LOGIN)
        assert "- [x] Login form renders" in content
        assert "- [ ] Password is hashed" in content
        assert "assignee: bob" in content
        assert backlog.get_item(FIX_SLUG).assignee is None

        with pytest.raises(ValidationError):
            await backlog.toggle_criterion(LOGIN_REF, 7)

    @pytest.mark.asyncio
    async def test_update_task_content(self, project_dir):
        backlog = Backlog(project_dir)
        criteria = backlog.get_task_content(LOGIN_REF)["acceptanceCriteria"]
        criteria[0]["checked"] = True

        changesets = await backlog.update_task_content(
            LOGIN_REF, title="Add login page", description="Use the new form.", acceptance_criteria=criteria
        )

        assert len(changesets) == 3
        task = backlog.get_task(LOGIN_REF)
        assert task.title == "Add login page"
        assert task.description == "Use the new form."
        assert [c.checked for c in task.acceptance_criteria] == [True, True, False]

    @pytest.mark.asyncio
    async def test_update_task_content_rejects_criterion_text_change(self, project_dir, backlog_dir):
        backlog = Backlog(project_dir)
        criteria = backlog.get_task_content(LOGIN_REF)["acceptanceCriteria"]
        criteria[0]["text"] = "Something else"

        with pytest.raises(ValidationError):
            await backlog.update_task_content(LOGIN_REF, title="Renamed", acceptance_criteria=criteria)
        assert "task: Add login\n" in read(backlog_dir, LOGIN)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "criteria",
        [
            [{"checked": True}],
            ["Login form renders"],
            [{"text": "Login form renders", "checked": "yes"}],
        ],
    )
    async def test_update_task_content_rejects_malformed_criteria(self, project_dir, backlog_dir, criteria):
        backlog = Backlog(project_dir)

        with pytest.raises(ValidationError):
            await backlog.update_task_content(LOGIN_REF, acceptance_criteria=criteria)
        assert read(backlog_dir, LOGIN) == LOGIN_TASK

    @pytest.mark.asyncio
    async def test_reset_item_tasks(self, project_dir):
        backlog = Backlog(project_dir)
        await backlog.set_task_status(LOGIN_REF, "block")

        changesets = await backlog.reset_item_tasks(AUTH_SLUG)

        assert len(changesets) == 1
        assert backlog.get_task(LOGIN_REF).status is TaskStatus.OPEN
        assert backlog.get_task(f"{AUTH_SLUG}/001").status is TaskStatus.DONE


class TestBacklogStructure:
    """Integration tests for creating and removing items and tasks."""

    @pytest.mark.asyncio
    async def test_add_item_and_task_update_manifest(self, project_dir, backlog_dir, events):
        """
        Given: the sample backlog with a manifest
        When: an item and a task are added
        Then: both files exist, the index references the task and the manifest lists them
        """
        backlog = Backlog(project_dir)

        slug = await backlog.add_item("Search page", "feat", "Find things.")
        source = await backlog.add_task(slug, "Build index", acceptance_criteria=["Index builds"])

        assert slug == "004-feat-search-page"
        assert source == f"work/{slug}/001-build-index.md"
        assert (backlog_dir / source).exists()
        manifest = json.loads(read(backlog_dir, "manifest.json"))
        assert manifest["items"][-1]["slug"] == slug
        assert manifest["items"][-1]["tasks"][0]["file"] == "001-build-index.md"
        assert backlog.model.errors == []
        assert backlog.model.warnings == []
        assert [name for name, _ in events] == ["item_created", "task_created"]

    @pytest.mark.asyncio
    async def test_remove_task_and_item(self, project_dir, backlog_dir):
        backlog = Backlog(project_dir)

        await backlog.remove_task(README)
        await backlog.remove_item(FIX_SLUG)

        assert not (backlog_dir / README).exists()
        assert not (backlog_dir / "work" / FIX_SLUG).exists()
        manifest = json.loads(read(backlog_dir, "manifest.json"))
        assert [item["slug"] for item in manifest["items"]] == [AUTH_SLUG, DOCS_SLUG]
        assert manifest["items"][1]["tasks"] == []
        assert backlog.get_item(DOCS_SLUG).tasks == []

        with pytest.raises(NotFoundError):
            await backlog.remove_item(FIX_SLUG)

    @pytest.mark.asyncio
    async def test_sync_manifest_without_existing_manifest(self, bare_backlog_dir):
        backlog = Backlog(bare_backlog_dir)

        content = await backlog.sync_manifest(updated_at="2026-02-02T00:00:00Z")

        data = json.loads(content)
        assert data["updatedAt"] == "2026-02-02T00:00:00Z"
        assert [item["status"] for item in data["items"]] == ["in-progress", "in-progress", "open"]
        assert backlog.model.manifest is not None

    @pytest.mark.asyncio
    async def test_update_file_content(self, project_dir, backlog_dir, events):
        """
        Given: the sample backlog with a manifest
        When: the login task file is replaced as a whole with status done
        Then: the file holds the new text, the model is re-parsed and the manifest follows
        """
        backlog = Backlog(project_dir)
        content = read(backlog_dir, LOGIN).replace("status: open", "status: done")

        path = await backlog.update_file_content(LOGIN_REF, content)

        assert path == LOGIN
        assert read(backlog_dir, LOGIN) == content
        assert backlog.get_task(LOGIN_REF).status is TaskStatus.DONE
        assert backlog.get_item(AUTH_SLUG).status is ItemStatus.DONE
        manifest = json.loads(read(backlog_dir, "manifest.json"))
        assert manifest["items"][0]["status"] == "done"
        assert backlog.model.warnings == []
        assert [name for name, _ in events] == ["file_overwritten"]
        assert events[0][1]["path"] == LOGIN

    @pytest.mark.asyncio
    async def test_update_file_content_unknown_target(self, project_dir):
        backlog = Backlog(project_dir)

        with pytest.raises(NotFoundError):
            await backlog.update_file_content("999-feat-nothing", "x")
