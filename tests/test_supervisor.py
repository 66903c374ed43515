"""Tests for the run supervisor and branch supersession."""

import pytest
import threading
import time

from stagegate.core.errors import ConfigurationError
from stagegate.core.interfaces import (
    PipelineRun, RunStatus, StageDefinition, StageRole, StageStatus, StepSpec, Trigger, TriggerKind
)
from stagegate.core.orchestrator import PipelineOrchestrator
from stagegate.core.supervisor import RunSupervisor
from stagegate.execution.runner import CommandResult, ProcessRunner
from stagegate.notifications import NotificationManager
from stagegate.notifications.notifier import EventType, TERMINAL_EVENTS


class SlowRunner(ProcessRunner):
    """Blocks on 'build' steps until cancelled or released."""

    def __init__(self, build_seconds=10.0):
        self.build_seconds = build_seconds
        self.calls = []
        self.started = threading.Event()
        self._lock = threading.Lock()

    def run(self, spec, cancel_event=None):
        with self._lock:
            self.calls.append((spec.name, spec.env.get("BUILD_NUMBER")))
        if spec.name == "build":
            self.started.set()
            if cancel_event is not None and cancel_event.wait(self.build_seconds):
                return CommandResult(exit_code=-9, cancelled=True)
        return CommandResult(exit_code=0)


def simple_pipeline():
    return [
        StageDefinition("Build", [StepSpec("build", "docker build .")], role=StageRole.BUILD),
        StageDefinition("Push", [StepSpec("push", "docker push app")], role=StageRole.PUSH),
        StageDefinition("Cleanup", [StepSpec("cleanup", "docker rmi app")], role=StageRole.CLEANUP,
                        always_run=True),
    ]


class TestRunSupervisor:
    """Test run submission and supersession."""

    def setup_method(self):
        self.runner = SlowRunner()
        self.notifier = NotificationManager()
        self.orchestrator = PipelineOrchestrator(runner=self.runner, notifier=self.notifier)
        self.finished = []
        self.supervisor = RunSupervisor(
            self.orchestrator,
            simple_pipeline(),
            supersede_log_interval=10.0,
            logs_url_template="https://ci.example.com/job/{branch}/{build_number}",
            image_repository="registry.example.com/app",
            on_finished=self.finished.append,
        )

    def teardown_method(self):
        self.supervisor.shutdown(cancel_active=True)

    def test_submit_assigns_run_identity(self):
        self.runner.build_seconds = 0.0
        run = self.supervisor.submit(Trigger(TriggerKind.PUSH, "develop", "abc1234def", build_number=7))
        run = self.supervisor.wait(run, timeout=10)

        assert run.run_id == "7-abc1234"
        assert run.image == "registry.example.com/app:7-abc1234"
        assert run.logs_url == "https://ci.example.com/job/develop/7"
        assert run.status is RunStatus.SUCCESS
        assert self.finished == [run]

    def test_build_numbers_are_assigned_when_missing(self):
        self.runner.build_seconds = 0.0
        first = self.supervisor.submit(Trigger(TriggerKind.PUSH, "feature/a", "1111111aaa"))
        second = self.supervisor.submit(Trigger(TriggerKind.PUSH, "feature/b", "2222222bbb"))
        self.supervisor.wait(first, timeout=10)
        self.supervisor.wait(second, timeout=10)

        assert first.build_number != second.build_number

    def test_newer_run_supersedes_older_on_same_branch(self):
        first = self.supervisor.submit(Trigger(TriggerKind.PUSH, "develop", "aaaaaaa111", build_number=1))
        assert self.runner.started.wait(5)

        self.runner.build_seconds = 0.0
        start = time.time()
        second = self.supervisor.submit(Trigger(TriggerKind.PUSH, "develop", "bbbbbbb222", build_number=2))

        # The older run must be terminal before the newer one is accepted.
        assert first.status is RunStatus.CANCELLED
        assert time.time() - start < 5
        assert len(self.supervisor.active_runs("develop")) <= 1
        assert all(run is not first for run in self.supervisor.active_runs("develop"))

        second = self.supervisor.wait(second, timeout=10)
        assert second.status is RunStatus.SUCCESS

        assert first.result_for("Build").status is StageStatus.CANCELLED
        assert first.result_for("Push").status is StageStatus.CANCELLED
        assert first.result_for("Cleanup").status is StageStatus.SUCCESS
        assert first.termination_reason == "SupersededByNewerRun"

        superseded = self.notifier.get_history(run_id=first.run_id)
        terminal = [event for event in superseded if event.event_type in TERMINAL_EVENTS]
        assert [event.event_type for event in terminal] == [EventType.BUILD_SUPERSEDED]

    def test_runs_on_different_branches_are_independent(self):
        first = self.supervisor.submit(Trigger(TriggerKind.PUSH, "develop", "aaaaaaa111", build_number=1))
        assert self.runner.started.wait(5)

        self.runner.build_seconds = 0.0
        other = self.supervisor.submit(Trigger(TriggerKind.PUSH, "main", "ccccccc333", build_number=2))
        other = self.supervisor.wait(other, timeout=10)

        assert other.status is RunStatus.SUCCESS
        assert first in self.supervisor.active_runs("develop")

        assert self.supervisor.cancel("develop") is True
        assert first.status is RunStatus.CANCELLED
        assert self.supervisor.active_runs("develop") == []

    def test_cancel_without_active_run(self):
        assert self.supervisor.cancel("nothing-here") is False

    def test_wait_for_unknown_run(self):
        with pytest.raises(KeyError):
            self.supervisor.wait(PipelineRun(build_number=99, commit="deadbeef", branch="x"))

    def test_invalid_definitions_rejected(self):
        definitions = [StageDefinition("Deploy", [StepSpec("deploy", "true")], role=StageRole.PRODUCTION)]

        with pytest.raises(ConfigurationError):
            RunSupervisor(self.orchestrator, definitions)


class SlowCleanupRunner(ProcessRunner):
    """Builds block until cancelled while ``block_builds`` is set; cleanup always takes a while."""

    def __init__(self, cleanup_seconds=1.0):
        self.cleanup_seconds = cleanup_seconds
        self.block_builds = True
        self.build_started = threading.Event()
        self.in_flight = {}
        self.max_in_flight = {}
        self._lock = threading.Lock()

    def run(self, spec, cancel_event=None):
        branch = spec.env.get("BRANCH_NAME")
        with self._lock:
            self.in_flight[branch] = self.in_flight.get(branch, 0) + 1
            self.max_in_flight[branch] = max(self.max_in_flight.get(branch, 0), self.in_flight[branch])
        try:
            if spec.name == "build" and self.block_builds:
                self.build_started.set()
                if cancel_event is not None and cancel_event.wait(10.0):
                    return CommandResult(exit_code=-9, cancelled=True)
            elif spec.name == "cleanup":
                time.sleep(self.cleanup_seconds)
            return CommandResult(exit_code=0)
        finally:
            with self._lock:
                self.in_flight[branch] -= 1


class TestSupersessionWithSlowCleanup:
    """Test that a superseded run's cleanup finishes before the newer run starts."""

    def setup_method(self):
        self.runner = SlowCleanupRunner(cleanup_seconds=1.0)
        self.orchestrator = PipelineOrchestrator(runner=self.runner)
        self.supervisor = RunSupervisor(self.orchestrator, simple_pipeline(), supersede_log_interval=0.2)

    def teardown_method(self):
        self.supervisor.shutdown(cancel_active=True)

    def test_newer_run_waits_for_cleanup(self):
        first = self.supervisor.submit(Trigger(TriggerKind.PUSH, "develop", "aaaaaaa111", build_number=1))
        assert self.runner.build_started.wait(5)

        self.runner.block_builds = False
        second = self.supervisor.submit(Trigger(TriggerKind.PUSH, "develop", "bbbbbbb222", build_number=2))

        assert first.status is RunStatus.CANCELLED
        assert first.result_for("Cleanup").status is StageStatus.SUCCESS

        second = self.supervisor.wait(second, timeout=10)
        assert second.status is RunStatus.SUCCESS
        assert self.runner.max_in_flight["develop"] == 1

    def test_other_branches_are_not_held_up(self):
        first = self.supervisor.submit(Trigger(TriggerKind.PUSH, "develop", "aaaaaaa111", build_number=1))
        assert self.runner.build_started.wait(5)

        self.runner.block_builds = False
        submitted = []
        submitter = threading.Thread(target=lambda: submitted.append(
            self.supervisor.submit(Trigger(TriggerKind.PUSH, "develop", "bbbbbbb222", build_number=2))))
        submitter.start()
        assert first.cancel_event.wait(5)

        start = time.time()
        other = self.supervisor.submit(Trigger(TriggerKind.PUSH, "main", "ccccccc333", build_number=3))
        assert time.time() - start < 0.5

        submitter.join(10)
        assert self.supervisor.wait(other, timeout=10).status is RunStatus.SUCCESS
        assert self.supervisor.wait(submitted[0], timeout=10).status is RunStatus.SUCCESS
        assert first.status is RunStatus.CANCELLED
