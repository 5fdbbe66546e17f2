"""Tests for the script repository."""

import asyncio

import pytest

from conftest import START_MS, FakeClock, MemoryStore, YieldingStore, make_script
from scriptflow.scripts import ScriptRepository, ScriptValidationError
from scriptflow.scripts.repository import SCRIPTS_KEY


@pytest.fixture
def repo(store, clock):
    return ScriptRepository(store, clock)


class TestSave:
    """Tests for save and get."""

    def test_insert_sets_timestamps(self, repo, store):
        saved = asyncio.run(repo.save(make_script()))
        assert saved.created_at == START_MS
        assert saved.updated_at == START_MS
        assert store.data[SCRIPTS_KEY]["hello"]["name"] == "Hello"

    def test_replace_keeps_created_and_counters(self, repo, clock):
        async def scenario():
            await repo.save(make_script())
            await repo.record_execution("hello")
            clock.advance(1000)
            replaced = await repo.save(make_script(name="Hello v2"))
            assert replaced.name == "Hello v2"
            assert replaced.created_at == START_MS
            assert replaced.updated_at == START_MS + 1000
            assert replaced.execution_count == 1
            assert replaced.last_executed == START_MS

        asyncio.run(scenario())

    def test_invalid_id(self, repo, store):
        with pytest.raises(ScriptValidationError):
            asyncio.run(repo.save(make_script(id="Not Valid")))
        assert SCRIPTS_KEY not in store.data

    def test_get_missing(self, repo):
        assert asyncio.run(repo.get("missing")) is None

    def test_list_sorted(self, repo):
        async def scenario():
            for script_id in ["zeta", "alpha", "mid"]:
                await repo.save(make_script(id=script_id))
            return [s.id for s in await repo.list()]

        assert asyncio.run(scenario()) == ["alpha", "mid", "zeta"]

    def test_unreadable_entry_skipped(self, clock):
        store = MemoryStore()
        store.data[SCRIPTS_KEY] = {
            "broken": {"name": "no id"},
            "hello": make_script().to_dict(),
        }
        repo = ScriptRepository(store, clock)
        assert [s.id for s in asyncio.run(repo.list())] == ["hello"]


class TestUpdates:
    """Tests for delete, set_enabled and record_execution."""

    def test_delete(self, repo):
        async def scenario():
            await repo.save(make_script())
            assert await repo.delete("hello")
            assert not await repo.delete("hello")
            assert await repo.get("hello") is None

        asyncio.run(scenario())

    def test_set_enabled(self, repo):
        async def scenario():
            await repo.save(make_script())
            disabled = await repo.set_enabled("hello", False)
            assert disabled.enabled is False
            assert (await repo.get("hello")).enabled is False
            assert await repo.set_enabled("missing", True) is None

        asyncio.run(scenario())

    def test_record_execution(self):
        clock = FakeClock()
        repo = ScriptRepository(MemoryStore(), clock)

        async def scenario():
            await repo.save(make_script())
            clock.advance(500)
            await repo.record_execution("hello")
            return await repo.record_execution("hello")

        script = asyncio.run(scenario())
        assert script.execution_count == 2
        assert script.last_executed == START_MS + 500
        assert asyncio.run(repo.record_execution("missing")) is None

    def test_concurrent_updates_are_not_lost(self):
        repo = ScriptRepository(YieldingStore(), FakeClock())

        async def scenario():
            await repo.save(make_script())
            await asyncio.gather(
                repo.record_execution("hello"),
                repo.record_execution("hello"),
                repo.set_enabled("hello", False),
            )
            return await repo.get("hello")

        script = asyncio.run(scenario())
        assert script.execution_count == 2
        assert script.enabled is False
