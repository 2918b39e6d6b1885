"""Tests for leading-tag extraction and tag resolution."""

import pytest

from calhours.models import StoredEvent
from calhours.tags import MissingGenericTaskError, TagCache, TagResolver
from calhours.tasks import TaskConflictError, TaskNotFoundError


class TestExtraction:

    @pytest.mark.parametrize("text,expected", [
        ("#ACCIO_PROJETO standup", "#ACCIO_PROJETO"),
        ("   #acme-42 kickoff", "#acme-42"),
        ("#ação_1 review", "#ação_1"),
        ("#ACME", "#ACME"),
        ("standup #ACME", None),
        ("# not a tag", None),
        ("", None),
        (None, None),
    ])
    def test_extract_leading_tag(self, text, expected):
        assert TagResolver.extract_leading_tag(text) == expected

    @pytest.mark.parametrize("tag,expected", [
        (" ACME ", "#ACME"),
        ("#Acme", "#Acme"),
        ("   ", None),
        (None, None),
    ])
    def test_normalize_preserves_case(self, tag, expected):
        assert TagResolver.normalize(tag) == expected


class TestResolution:

    def test_resolve_known_tag(self, resolver, acme_task):
        assert resolver.resolve("#ACME").id == acme_task.id
        assert resolver.resolve("ACME").id == acme_task.id
        assert resolver.resolve("#ACME weekly sync").id == acme_task.id

    def test_resolve_falls_back_to_generic(self, resolver, generic_task):
        assert resolver.resolve("#NOPE").id == generic_task.id
        assert resolver.resolve(None).id == generic_task.id
        assert resolver.resolve("  ").id == generic_task.id

    def test_resolve_populates_cache_on_store_hit(self, task_store, generic_task, acme_task):
        resolver = TagResolver(task_store, TagCache())

        resolver.resolve("#ACME")

        assert "#ACME" in resolver.cache

    def test_resolve_bulk_single_lookup(self, task_store, generic_task, acme_task, monkeypatch):
        resolver = TagResolver(task_store, TagCache())
        calls = []
        original = task_store.find_by_tags
        monkeypatch.setattr(task_store, 'find_by_tags', lambda tags: calls.append(list(tags)) or original(tags))

        result = resolver.resolve_bulk(["ACME", "#ACME", "#MISSING", None, " "])

        assert calls == [["#ACME", "#MISSING"]]
        assert set(result) == {"#ACME"}
        assert result["#ACME"].id == acme_task.id

        resolver.resolve_bulk(["#ACME"])
        assert len(calls) == 1

    def test_resolve_bulk_empty(self, resolver):
        assert resolver.resolve_bulk([]) == {}
        assert resolver.resolve_bulk(None) == {}

    def test_load_requires_generic_task(self, task_store, acme_task):
        resolver = TagResolver(task_store, TagCache())

        with pytest.raises(MissingGenericTaskError):
            resolver.load()

    def test_load_fills_cache(self, task_store, generic_task, acme_task):
        cache = TagCache()
        resolver = TagResolver(task_store, cache)

        assert resolver.load() == 2
        assert set(cache.snapshot()) == {"#GENERICO", "#ACME"}

    def test_empty_generic_tag_rejected(self, task_store):
        with pytest.raises(ValueError):
            TagResolver(task_store, TagCache(), "  ")


class TestCacheConsistency:

    def test_retag_drops_old_entry(self, resolver, task_service, acme_task, generic_task):
        task_service.update_task(acme_task.id, tag="ACME_NEW")

        assert "#ACME" not in resolver.cache
        assert resolver.resolve("#ACME_NEW").id == acme_task.id
        assert resolver.resolve("#ACME").id == generic_task.id

    def test_delete_drops_entry(self, resolver, task_service, acme_task, generic_task):
        task_service.delete_task(acme_task.id)

        assert "#ACME" not in resolver.cache
        assert resolver.resolve("#ACME").id == generic_task.id

    def test_task_with_events_cannot_be_deleted(self, resolver, task_service, task_store, event_store, acme_task):
        event_store.upsert(StoredEvent(user_email='alice@example.com', calendar_id='primary',
                                       event_id='e1', summary='#ACME standup', task_id=acme_task.id))

        with pytest.raises(TaskConflictError):
            task_service.delete_task(acme_task.id)

        assert task_store.get(acme_task.id) is not None
        assert "#ACME" in resolver.cache
        assert resolver.resolve("#ACME").id == acme_task.id

    def test_duplicate_tag_rejected(self, task_service, acme_task, project_id):
        with pytest.raises(TaskConflictError):
            task_service.create_task(name="Other", tag="ACME", project_id=project_id)

    def test_generic_task_is_protected(self, task_service, generic_task):
        with pytest.raises(TaskConflictError):
            task_service.delete_task(generic_task.id)
        with pytest.raises(TaskConflictError):
            task_service.update_task(generic_task.id, tag="#OTHER")

    def test_unknown_task(self, task_service):
        with pytest.raises(TaskNotFoundError):
            task_service.update_task(999, name="x")

    def test_ensure_generic_task_is_idempotent(self, task_service, generic_task):
        again = task_service.ensure_generic_task()
        assert again.id == generic_task.id
        assert again.tag == "#GENERICO"
