"""Tests for the ScriptFlowService facade and its Response envelope."""

import asyncio
from datetime import datetime

from conftest import HELLO_CODE, START_MS, make_script
from scriptflow.config import Config, merge_config
from scriptflow.service import ApiError, Response, ScriptFlowService
from scriptflow.store import JsonFileStore

URL = "https://example.com/page"

USERSCRIPT = f"""// ==UserScript==
// @name   Hello
// @match  https://example.com/*
// ==/UserScript==
{HELLO_CODE}
"""


def _interval(**overrides):
    config = {"script_id": "hello", "name": "Tick", "mode": "interval", "trigger": {"interval_ms": 60_000}}
    config.update(overrides)
    return config


async def _started(service, tab=True):
    await service.start()
    await service.add_script(code=USERSCRIPT)
    if tab:
        await service.update_tab_state(1, URL, "complete", ready=True)
    return service


class TestResponse:
    """Tests for the response envelope."""

    def test_to_dict(self):
        assert Response(ok=True, data=[1]).to_dict() == {"ok": True, "data": [1]}
        failure = Response(ok=False, error=ApiError("SCRIPT_NOT_FOUND", "nope"))
        assert failure.to_dict() == {
            "ok": False,
            "data": None,
            "error": {"code": "SCRIPT_NOT_FOUND", "message": "nope", "details": {}},
        }


class TestBuild:
    """Tests for ScriptFlowService.build."""

    def test_config_flows_into_components(self, build_service):
        config = Config(sections=merge_config({
            "matcher": {"cache_size": 7},
            "executor": {"default_max_retries": 1},
            "scheduler": {"max_schedules": 3},
            "context": {"idle_delay_ms": 0},
        }))
        service = build_service(config=config)
        assert service.executor.matcher.cache_size == 7
        assert service.executor.default_max_retries == 1
        assert service.scheduler.limits.max_schedules == 3
        assert service.contexts.limits.idle_delay_ms == 0

    def test_defaults_use_file_store(self, tmp_path, host, events, timers):
        config = Config(sections=merge_config({"paths": {"store": str(tmp_path / "data")}}))
        service = ScriptFlowService.build(config, host=host, event_client=events, timers=timers)
        assert isinstance(service.scripts.store, JsonFileStore)
        assert service.scripts.store.root == tmp_path / "data"


class TestScripts:
    """Tests for script operations."""

    def test_add_get_list(self, service):
        async def scenario():
            added = await service.add_script(code=USERSCRIPT)
            assert added.ok
            assert added.data["id"] == "hello"
            assert (await service.get_script("hello")).data["name"] == "Hello"
            assert [s["id"] for s in (await service.list_scripts()).data] == ["hello"]

        asyncio.run(scenario())

    def test_add_from_path(self, service, tmp_path):
        path = tmp_path / "hello.user.js"
        path.write_text(USERSCRIPT)
        response = asyncio.run(service.add_script(path=path, script_id="greeter"))
        assert response.ok
        assert response.data["id"] == "greeter"

    def test_add_invalid(self, service):
        response = asyncio.run(service.add_script(code="alert(1)"))
        assert not response.ok
        assert response.error.code == "INVALID_SCRIPT"

    def test_get_missing(self, service):
        response = asyncio.run(service.get_script("nope"))
        assert response.error.code == "SCRIPT_NOT_FOUND"

    def test_enable_disable(self, service):
        async def scenario():
            await service.add_script(code=USERSCRIPT)
            assert (await service.set_script_enabled("hello", False)).data["enabled"] is False
            missing = await service.set_script_enabled("nope", True)
            assert missing.error.code == "SCRIPT_NOT_FOUND"

        asyncio.run(scenario())

    def test_remove_cascades_to_schedules(self, service, timers):
        async def scenario():
            await _started(service)
            created = await service.create_schedule(_interval())
            removed = await service.remove_script("hello")
            assert removed.data == {"script_id": "hello", "schedules_removed": [created.data["id"]]}
            assert service.list_schedules().data == []
            assert timers.armed == {}
            assert (await service.remove_script("hello")).error.code == "SCRIPT_NOT_FOUND"

        asyncio.run(scenario())

    def test_validate_script(self, service):
        data = service.validate_script(make_script(code="eval('x')")).data
        assert data["ok"] is False
        assert data["security_level"] == "dangerous"
        assert data["csp_compliant"] is False


class TestExecution:
    """Tests for execution operations."""

    def test_execute_script(self, service, host):
        async def scenario():
            await _started(service)
            response = await service.execute_script("hello", 1, URL)
            assert response.ok
            assert response.data["status"] == "succeeded"
            assert response.data["result"] == "ok"
            assert len(host.calls) == 1

        asyncio.run(scenario())

    def test_failed_execution_is_still_ok_response(self, service):
        """Script-level failures are results, not API errors."""

        async def scenario():
            await _started(service)
            response = await service.execute_script("nope", 1, URL)
            assert response.ok
            assert response.data["status"] == "rejected"

        asyncio.run(scenario())

    def test_tab_update_runs_queued(self, service, host, sleeps):
        async def scenario():
            await _started(service, tab=False)
            await service.update_tab_state(1, URL, "loading")
            queued = await service.execute_script("hello", 1, URL)
            assert queued.data["status"] == "queued"

            ran = await service.update_tab_state(1, URL, "complete", ready=True)
            assert [r["status"] for r in ran.data] == ["succeeded"]
            assert sleeps.delays == [2.0]

        asyncio.run(scenario())

    def test_execute_for_tab_and_statistics(self, service):
        async def scenario():
            await _started(service)
            results = await service.execute_scripts_for_tab(1, URL)
            assert [r["script_id"] for r in results.data] == ["hello"]
            stats = service.get_execution_statistics().data
            assert stats["successful_executions"] == 1

        asyncio.run(scenario())

    def test_close_tab(self, service):
        async def scenario():
            await _started(service)
            assert service.close_tab(1).data == {"tab_id": 1}
            assert service.contexts.get_tab(1) is None

        asyncio.run(scenario())

    def test_maintenance(self, service, clock):
        async def scenario():
            await _started(service)
            clock.advance(2 * 3600 * 1000)
            return service.maintenance()

        swept = asyncio.run(scenario())
        assert swept["tabs"] == 1
        assert set(swept) == {"contexts", "queued", "tabs", "errors", "metrics"}


class TestSchedules:
    """Tests for schedule operations and error codes."""

    def test_lifecycle(self, service):
        async def scenario():
            await _started(service)
            created = await service.create_schedule(_interval())
            schedule_id = created.data["id"]
            assert created.data["next_execution"] == START_MS + 60_000

            assert (await service.update_schedule(schedule_id, {"priority": 2})).data["priority"] == 2
            assert (await service.pause_schedule(schedule_id)).data["status"] == "paused"
            assert (await service.resume_schedule(schedule_id)).data["status"] == "active"

            run = await service.execute_schedule(schedule_id)
            assert run.data["success"] is True
            assert len(service.schedule_history(schedule_id).data) == 1
            assert service.get_scheduler_stats().data["total_executions"] == 1

            assert (await service.delete_schedule(schedule_id)).data == {"schedule_id": schedule_id}

        asyncio.run(scenario())

    def test_error_codes(self, service):
        async def scenario():
            assert (await service.create_schedule(_interval())).error.code == "SCHEDULER_NOT_STARTED"
            await _started(service)
            bad = await service.create_schedule(_interval(mode="cron", trigger={"expression": "nope"}))
            assert bad.error.code == "INVALID_CRON_EXPRESSION"
            assert bad.error.details["errors"][0]["field"] == "trigger.expression"
            assert (await service.pause_schedule("nope")).error.code == "SCHEDULE_NOT_FOUND"
            assert service.schedule_history("nope").error.code == "SCHEDULE_NOT_FOUND"

        asyncio.run(scenario())

    def test_badly_typed_trigger_is_a_config_error(self, service):
        async def scenario():
            await _started(service)
            response = await service.create_schedule(_interval(trigger={"interval_ms": "5000"}))
            assert response.error.code == "INVALID_SCHEDULE_CONFIG"
            assert "interval_ms" in response.error.message
            assert service.list_schedules().data == []

        asyncio.run(scenario())

    def test_datetime_execute_at(self, service):
        async def scenario():
            await _started(service)
            response = await service.create_schedule(
                _interval(mode="once", trigger={"execute_at": datetime(2026, 1, 1, 0, 5)})
            )
            assert response.ok
            assert response.data["next_execution"] == START_MS + 5 * 60_000

        asyncio.run(scenario())

    def test_storage_error(self, service, store):
        async def scenario():
            await _started(service)
            store.fail_keys.add("schedules")
            response = await service.create_schedule(_interval())
            assert response.error.code == "STORAGE_ERROR"

        asyncio.run(scenario())

    def test_list_filters(self, service):
        async def scenario():
            await _started(service)
            await service.create_schedule(_interval(name="a", tags=["x"]))
            await service.create_schedule(_interval(name="b", mode="event", trigger={"events": ["go"]}))
            assert len(service.list_schedules({"mode": "event"}).data) == 1
            assert len(service.list_schedules({"status": "active", "tags": ["x"]}).data) == 1
            assert service.list_schedules({"status": "sleeping"}).error.code == "INVALID_SCHEDULE_CONFIG"
            assert service.list_schedules({"colour": "red"}).error.code == "INVALID_SCHEDULE_CONFIG"

        asyncio.run(scenario())

    def test_validate_config(self, service):
        async def scenario():
            await _started(service)
            report = await service.validate_schedule_config(_interval(name=""))
            assert report.ok
            assert report.data["valid"] is False

        asyncio.run(scenario())

    def test_deliver_event(self, service, host):
        async def scenario():
            await _started(service)
            await service.create_schedule(_interval(mode="event", trigger={"events": ["go"]}))
            response = await service.deliver_event("go", tab_id=1)
            assert [r["success"] for r in response.data] == [True]
            assert len(host.calls) == 1

        asyncio.run(scenario())

    def test_start_skips_unreadable_schedules(self, service, store):
        store.data["schedules"] = {"s": {"mode": "interval"}}
        assert asyncio.run(service.start()).ok
        assert service.list_schedules().data == []
