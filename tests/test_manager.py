"""
End-to-end tests for TaskManager driving a scripted fake nuclei.
"""

import asyncio
import json
from pathlib import Path

import pytest

from pocscan.errors import TaskNotFoundError, TaskStateError
from pocscan.models import TaskConfig
from pocscan.store import TaskStore
from pocscan.tasks import TaskManager


VULN_A = {
    "template-id": "tpl-a",
    "info": {"name": "Template A", "severity": "high"},
    "host": "http://a.test",
    "matched-at": "http://a.test/admin",
    "type": "http",
}

EXCHANGE_LINES = [
    "[DBG] [tpl-a] Dumped HTTP request for http://a.test/admin",
    "GET /admin HTTP/1.1",
    "Host: a.test",
    "",
    "[DBG] [tpl-a] Dumped HTTP response for http://a.test/admin",
    "HTTP/1.1 200 OK",
    "Content-Type: text/html; charset=utf-8",
    "Server: test",
    "",
]


def make_task(manager, n_templates=3, n_targets=2, templates=None):
    templates = templates or [f"tpl-{chr(ord('a') + i)}" for i in range(n_templates)]
    targets = [f"http://{chr(ord('a') + i)}.test" for i in range(n_targets)]
    return manager.create_task(templates, targets)


class TestCrud:

    @pytest.fixture
    def manager(self, engine_config):
        return TaskManager(engine_config)

    def test_create_task_defaults(self, manager):
        task = make_task(manager)
        assert task.id == 1
        assert task.name == "Task-1"
        assert task.status == "pending"
        assert task.total_requests == 6
        assert task.output_file.endswith("results/task_1/nuclei_output.jsonl")
        assert task.log_file.endswith("logs/task_1.log")
        assert manager.get_task(1) == task

    def test_ids_increase(self, manager):
        assert make_task(manager).id == 1
        assert make_task(manager).id == 2
        assert [t.id for t in manager.get_all_tasks()] == [1, 2]

    def test_update_recomputes_total(self, manager):
        task = make_task(manager)
        updated = manager.update_task(task.id, targets=["http://only.test"], name="renamed")
        assert updated.total_requests == 3
        assert updated.name == "renamed"
        assert manager.get_task(task.id).targets == ["http://only.test"]

    def test_unknown_task(self, manager):
        with pytest.raises(TaskNotFoundError):
            manager.get_task(99)
        with pytest.raises(TaskNotFoundError):
            manager.delete_task(99)

    @pytest.mark.asyncio
    async def test_rescan_requires_finished_task(self, manager):
        task = make_task(manager)
        with pytest.raises(TaskStateError):
            await manager.rescan_task(task.id)
        assert manager.get_task(task.id).status == "pending"


class TestRecovery:

    def test_running_tasks_from_previous_process_marked_failed(self, engine_config):
        store = TaskStore(engine_config.data_dir)
        store.save_task(TaskConfig(id=4, name="stale", status="running"))
        store.save_task(TaskConfig(id=5, name="done", status="completed"))

        manager = TaskManager(engine_config)

        stale = manager.get_task(4)
        assert stale.status == "failed"
        assert stale.error == "interrupted"
        assert stale.end_time
        assert manager.get_task(5).status == "completed"


class TestScenarios:

    @pytest.mark.asyncio
    async def test_stats_and_vulnerability(self, manager, engine_config, fake_nuclei):
        engine_config.nuclei_path = fake_nuclei(
            stdout=['{"requests":"6","total":"6","matched":"1"}', json.dumps(VULN_A)],
            findings=[VULN_A],
        )
        task = make_task(manager)
        events = []
        manager.register_handler(task.id, events.append)

        started = await manager.start_task(task.id)
        assert started.status == "running"
        assert started.completed_requests == 0
        result = await manager.wait_for_task(task.id, timeout=20)

        assert result.status == "completed"
        assert result.found_vulns == 1
        assert result.completed_requests == 6
        assert result.total_requests == 6
        assert result.success_rate == 100.0
        assert len(result.vulnerabilities) == 1
        assert result.vulnerabilities[0]["template-id"] == "tpl-a"

        stored = manager.get_task(task.id)
        assert stored.status == "completed"
        assert stored.found_vulns == 1
        assert stored.end_time

        types = [e.event_type for e in events]
        assert types[0] == "progress"
        assert events[0].data["completed_requests"] == 0
        assert "vuln_found" in types
        assert types[-1] == "completed"
        assert events[-1].data["percentage"] == 100.0
        assert types.count("completed") == 1

        assert [r.task_id for r in manager.get_all_task_results()] == [task.id]

    @pytest.mark.asyncio
    async def test_lagging_subscriber_still_gets_completion(self, manager, engine_config, fake_nuclei):
        findings = [dict(VULN_A, host=f"http://h{i}.test", **{"matched-at": f"http://h{i}.test/"}) for i in range(20)]
        engine_config.nuclei_path = fake_nuclei(
            stdout=[json.dumps(v) for v in findings],
            findings=findings,
        )
        task = make_task(manager)
        received = []

        async def lagging(event):
            received.append(event.event_type)
            await asyncio.sleep(0.3)

        manager.register_handler(task.id, lagging)
        await manager.start_task(task.id)
        result = await manager.wait_for_task(task.id, timeout=20)

        assert result.found_vulns == 20
        assert received[-1] == "completed"
        assert received.count("completed") == 1


    @pytest.mark.asyncio
    async def test_missing_output_file_is_clean_completion(self, manager, engine_config, fake_nuclei):
        engine_config.nuclei_path = fake_nuclei(stdout=["[INF] No results found. Better luck next time!"])
        task = make_task(manager)

        await manager.start_task(task.id)
        result = await manager.wait_for_task(task.id, timeout=20)

        assert result.status == "completed"
        assert result.found_vulns == 0
        assert result.vulnerabilities == []
        assert result.error == ""
        assert manager.get_all_task_results() == []

    @pytest.mark.asyncio
    async def test_large_selection_is_staged_and_removed(
        self, manager, engine_config, fake_nuclei, make_templates, recorded_args,
    ):
        engine_config.nuclei_path = fake_nuclei()
        templates = make_templates(150)
        task = manager.create_task(templates, ["http://a.test"])

        await manager.start_task(task.id)
        result = await manager.wait_for_task(task.id, timeout=20)

        invocation = recorded_args()
        argv = invocation["argv"]
        t_values = [argv[i + 1] for i, arg in enumerate(argv) if arg == "-t"]
        assert len(t_values) == 1
        staged = t_values[0]
        assert invocation["template_dirs"] == {staged: 150}
        assert Path(staged).name.startswith(f"task_{task.id}_")
        assert not Path(staged).exists()
        assert result.status == "completed"
        assert result.skipped_templates == 150

    @pytest.mark.asyncio
    async def test_timeout_fails_task_and_cleans_up(
        self, manager, engine_config, fake_nuclei, make_templates,
    ):
        engine_config.nuclei_path = fake_nuclei(
            stdout=['{"requests":"1","total":"2","matched":"0"}'],
            sleep=30,
        )
        engine_config.scan_timeout_s = 1.0
        engine_config.staging_threshold = 1
        task = manager.create_task(make_templates(2), ["http://a.test"])

        await manager.start_task(task.id)
        result = await manager.wait_for_task(task.id, timeout=20)

        assert result.status == "failed"
        assert "timed out" in result.error
        assert result.found_vulns == 0
        assert manager.store.load_result(task.id) is not None
        assert manager.get_task(task.id).status == "failed"
        tmp_dir = Path(engine_config.tmp_dir)
        assert not list(tmp_dir.glob("task_*"))
        assert not list(tmp_dir.glob("targets_*"))


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_while_running_is_rejected(self, manager, engine_config, fake_nuclei):
        engine_config.nuclei_path = fake_nuclei(sleep=30)
        task = make_task(manager)
        await manager.start_task(task.id)

        with pytest.raises(TaskStateError):
            await manager.start_task(task.id)
        with pytest.raises(TaskStateError):
            manager.update_task(task.id, name="nope")
        with pytest.raises(TaskStateError):
            manager.delete_task(task.id)
        assert manager.get_task(task.id).status == "running"

        assert await manager.stop_task(task.id) is True

    @pytest.mark.asyncio
    async def test_stop_marks_task_cancelled(self, manager, engine_config, fake_nuclei):
        engine_config.nuclei_path = fake_nuclei(sleep=30)
        task = make_task(manager)
        events = []
        manager.register_handler(task.id, events.append)

        await manager.start_task(task.id)
        await asyncio.sleep(0.5)
        assert await manager.stop_task(task.id) is True

        result = manager.get_task_result(task.id)
        assert result.status == "failed"
        assert result.error == "cancelled"
        assert not manager.is_running(task.id)
        types = [e.event_type for e in events]
        assert "error" in types
        assert types[-1] == "completed"

    @pytest.mark.asyncio
    async def test_stop_idle_task_is_rejected(self, manager):
        task = make_task(manager)
        with pytest.raises(TaskStateError):
            await manager.stop_task(task.id)

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails_task(self, manager, engine_config, fake_nuclei):
        engine_config.nuclei_path = fake_nuclei(exit_code=2)
        task = make_task(manager)
        await manager.start_task(task.id)
        result = await manager.wait_for_task(task.id, timeout=20)
        assert result.status == "failed"
        assert result.error == "nuclei exited with code 2"

    @pytest.mark.asyncio
    async def test_missing_binary_fails_task(self, manager, engine_config, tmp_path):
        engine_config.nuclei_path = str(tmp_path / "does-not-exist")
        task = make_task(manager)
        events = []
        manager.register_handler(task.id, events.append)

        await manager.start_task(task.id)
        result = await manager.wait_for_task(task.id, timeout=20)

        assert result.status == "failed"
        assert "failed to start nuclei" in result.error
        assert events[-1].event_type == "completed"

    @pytest.mark.asyncio
    async def test_rescan_resets_counters(self, manager, engine_config, fake_nuclei):
        engine_config.nuclei_path = fake_nuclei(
            stdout=['{"requests":"6","total":"6","matched":"1"}', json.dumps(VULN_A)],
            findings=[VULN_A],
        )
        task = make_task(manager)
        await manager.start_task(task.id)
        await manager.wait_for_task(task.id, timeout=20)

        engine_config.nuclei_path = fake_nuclei()
        rescanned = await manager.rescan_task(task.id)
        assert rescanned.found_vulns == 0
        assert rescanned.end_time is None
        result = await manager.wait_for_task(task.id, timeout=20)

        assert result.status == "completed"
        assert result.found_vulns == 0
        assert manager.get_task(task.id).found_vulns == 0

    @pytest.mark.asyncio
    async def test_delete_finished_task(self, manager, engine_config, fake_nuclei):
        engine_config.nuclei_path = fake_nuclei()
        task = make_task(manager)
        await manager.start_task(task.id)
        await manager.wait_for_task(task.id, timeout=20)

        manager.delete_task(task.id)

        with pytest.raises(TaskNotFoundError):
            manager.get_task(task.id)
        assert not manager.store.result_path(task.id).exists()
        assert not manager.store.log_path(task.id).exists()


class TestArtifacts:

    @pytest.mark.asyncio
    async def test_http_exchanges_captured_and_tagged(self, manager, engine_config, fake_nuclei):
        engine_config.nuclei_path = fake_nuclei(
            stdout=[json.dumps(VULN_A)],
            stderr=EXCHANGE_LINES,
            findings=[VULN_A],
        )
        task = make_task(manager)
        events = []
        manager.register_handler(task.id, events.append)

        await manager.start_task(task.id)
        result = await manager.wait_for_task(task.id, timeout=20)

        logs = manager.get_http_logs(task.id)
        assert len(logs) == 1
        entry = logs[0]
        assert entry.template_id == "tpl-a"
        assert entry.target == "http://a.test/admin"
        assert entry.status_code == 200
        assert entry.is_vuln_found is True
        assert entry.severity == "high"
        assert result.http_requests == 1

        http_events = [e for e in events if e.event_type == "http"]
        assert len(http_events) == 1
        assert "request" not in http_events[0].data

    @pytest.mark.asyncio
    async def test_json_in_dumped_response_body_is_not_counted(self, manager, engine_config, fake_nuclei):
        engine_config.nuclei_path = fake_nuclei(
            stderr=[
                "[DBG] [tpl-a] Dumped HTTP request for http://a.test/api",
                "GET /api HTTP/1.1",
                "Host: a.test",
                "",
                "[DBG] [tpl-a] Dumped HTTP response for http://a.test/api",
                "HTTP/1.1 200 OK",
                "Content-Type: application/json; charset=utf-8",
                "",
                '{"requests":900,"total":1000,"matched":7}',
                json.dumps({"template-id": "evil", "host": "http://evil.test", "matched-at": "http://evil.test/"}),
                "",
            ],
        )
        task = make_task(manager)
        await manager.start_task(task.id)
        result = await manager.wait_for_task(task.id, timeout=20)

        assert result.status == "completed"
        assert result.found_vulns == 0
        assert result.total_requests == 6
        assert result.completed_requests == 0
        assert result.scanned_template_ids == ["tpl-a"]
        assert result.http_requests == 1


    @pytest.mark.asyncio
    async def test_transcript_written(self, manager, engine_config, fake_nuclei):
        engine_config.nuclei_path = fake_nuclei(stdout=["hello from stdout"], stderr=["hello from stderr"])
        task = make_task(manager)
        await manager.start_task(task.id)
        await manager.wait_for_task(task.id, timeout=20)

        transcript = Path(manager.get_task(task.id).log_file).read_text()
        assert "[STDOUT] hello from stdout" in transcript
        assert "[STDERR] hello from stderr" in transcript
        assert "[ENGINE] command:" in transcript

        lines = manager.get_task_log(task.id)
        assert any(line.endswith("[STDOUT] hello from stdout") for line in lines)
        assert manager.get_task_log(task.id, tail=1) == lines[-1:]

    def test_task_log_before_first_run_is_empty(self, engine_config):
        manager = TaskManager(engine_config)
        task = make_task(manager)
        assert manager.get_task_log(task.id) == []
        with pytest.raises(TaskNotFoundError):
            manager.get_task_log(99)

    @pytest.mark.asyncio
    async def test_export_bundles_result_and_http_logs(self, manager, engine_config, fake_nuclei):
        engine_config.nuclei_path = fake_nuclei(
            stdout=[json.dumps(VULN_A)],
            stderr=EXCHANGE_LINES,
            findings=[VULN_A],
        )
        task = make_task(manager)
        assert manager.export_task(task.id) is None

        await manager.start_task(task.id)
        await manager.wait_for_task(task.id, timeout=20)

        exported = manager.export_task(task.id)
        assert exported["export_version"] == "1.0"
        assert exported["exported_at"]
        assert exported["task_result"]["task_id"] == task.id
        assert exported["task_result"]["found_vulns"] == 1
        assert [entry["template_id"] for entry in exported["http_logs"]] == ["tpl-a"]
        json.dumps(exported)


    @pytest.mark.asyncio
    async def test_progress_view_after_finish(self, manager, engine_config, fake_nuclei):
        engine_config.nuclei_path = fake_nuclei(
            stdout=['{"requests":"6","total":"6","matched":"0"}', "[INF] [tpl-a] Finished execution"],
        )
        task = make_task(manager)
        await manager.start_task(task.id)
        await manager.wait_for_task(task.id, timeout=20)

        progress = manager.get_progress(task.id)
        assert progress.status == "completed"
        assert progress.percentage == 100.0
        assert progress.scanned_template_ids == ["tpl-a"]
        assert progress.skipped_template_ids == ["tpl-b", "tpl-c"]
