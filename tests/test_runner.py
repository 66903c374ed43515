"""Tests for the subprocess process runner."""

import os
import sys
import threading
import time

import pytest

from stagegate.core.interfaces import PipelineRun, RunStatus, StageDefinition, StepSpec
from stagegate.core.orchestrator import PipelineOrchestrator
from stagegate.execution.runner import CommandSpec, SubprocessRunner, substitute_variables


posix_only = pytest.mark.skipif(os.name != "posix", reason="requires a POSIX shell")


class TestSubstituteVariables:
    """Test run context placeholder substitution."""

    def test_known_variables_replaced(self):
        result = substitute_variables("docker build -t ${IMAGE} .", {"IMAGE": "app:42-abc1234"})
        assert result == "docker build -t app:42-abc1234 ."

    def test_unknown_variables_kept(self):
        result = substitute_variables("ssh ${STAGING_HOST} ${IMAGE_TAG}", {"IMAGE_TAG": "7-1234567"})
        assert result == "ssh ${STAGING_HOST} 7-1234567"

    def test_empty_value(self):
        assert substitute_variables("docker build ${BUILD_CACHE_FLAG} .", {"BUILD_CACHE_FLAG": ""}) == \
            "docker build  ."

    def test_shell_keeps_safe_values_inline(self):
        result = substitute_variables("docker push ${IMAGE} ${BUILD_CACHE_FLAG}",
                                      {"IMAGE": "app:42-abc1234", "BUILD_CACHE_FLAG": "--no-cache"},
                                      shell=True)
        assert result == "docker push app:42-abc1234 --no-cache"

    def test_shell_leaves_unsafe_values_to_environment(self):
        variables = {"BRANCH_NAME": "feat$(touch pwned)", "COMMIT_MESSAGE": "Fix; rm -rf /"}

        result = substitute_variables("echo ${BRANCH_NAME} \"${COMMIT_MESSAGE}\"", variables, shell=True)

        assert result == "echo ${BRANCH_NAME} \"${COMMIT_MESSAGE}\""

    def test_argv_values_spliced_verbatim(self):
        assert substitute_variables("${BRANCH_NAME}", {"BRANCH_NAME": "feat$(x)"}) == "feat$(x)"


@posix_only
class TestSubprocessRunner:
    """Test running real commands."""

    def setup_method(self):
        self.runner = SubprocessRunner(default_timeout=10, poll_interval=0.05)

    def test_successful_command(self):
        result = self.runner.run(CommandSpec("echo hello", name="echo"))

        assert result.success
        assert result.exit_code == 0
        assert result.stdout.strip() == "hello"
        assert result.attempts == 1

    def test_argv_command(self):
        result = self.runner.run(CommandSpec([sys.executable, "-c", "print('argv')"]))

        assert result.success
        assert result.stdout.strip() == "argv"

    def test_failing_command(self):
        result = self.runner.run(CommandSpec("echo broken >&2; exit 3"))

        assert not result.success
        assert result.exit_code == 3
        assert "broken" in result.stderr

    def test_environment_passed(self):
        result = self.runner.run(CommandSpec("echo $IMAGE_TAG", env={"IMAGE_TAG": "42-abc1234"}))
        assert result.stdout.strip() == "42-abc1234"

    def test_working_directory(self, tmp_path):
        result = self.runner.run(CommandSpec("pwd", cwd=str(tmp_path)))
        assert os.path.realpath(result.stdout.strip()) == os.path.realpath(str(tmp_path))

    def test_missing_executable(self):
        result = self.runner.run(CommandSpec(["definitely-not-a-real-binary-xyz"]))

        assert not result.success
        assert result.exit_code == 127

    def test_timeout_kills_process(self):
        start = time.time()
        result = self.runner.run(CommandSpec("sleep 30", timeout=0.3))

        assert result.timed_out
        assert not result.success
        assert time.time() - start < 5

    def test_timeout_kills_process_group(self):
        start = time.time()
        result = self.runner.run(CommandSpec("sleep 30 & sleep 30; wait", timeout=0.3))

        assert result.timed_out
        assert time.time() - start < 5

    def test_cancellation_kills_process(self):
        cancel_event = threading.Event()
        timer = threading.Timer(0.2, cancel_event.set)
        timer.start()

        start = time.time()
        result = self.runner.run(CommandSpec("sleep 30"), cancel_event)
        timer.cancel()

        assert result.cancelled
        assert not result.timed_out
        assert time.time() - start < 5

    def test_retries_failed_commands(self, tmp_path):
        marker = tmp_path / "attempts"
        runner = SubprocessRunner(retries=2, retry_delay=0.01, poll_interval=0.05)

        result = runner.run(CommandSpec(f"echo x >> {marker}; [ $(wc -l < {marker}) -ge 2 ]"))

        assert result.success
        assert result.attempts == 2

    def test_timeouts_are_not_retried(self):
        runner = SubprocessRunner(retries=3, retry_delay=0.01, poll_interval=0.05)

        result = runner.run(CommandSpec("sleep 30", timeout=0.2))

        assert result.timed_out
        assert result.attempts == 1

    def test_output_truncated(self):
        runner = SubprocessRunner(max_output_chars=10, poll_interval=0.05)

        result = runner.run(CommandSpec("printf '0123456789abcdef'"))

        assert result.stdout == "6789abcdef"


@posix_only
class TestShellCommandsFromRunContext:
    """Test that run context values reach the shell as data."""

    def setup_method(self):
        self.orchestrator = PipelineOrchestrator(runner=SubprocessRunner(default_timeout=10, poll_interval=0.05))

    def test_hostile_branch_name_is_not_executed(self, tmp_path):
        marker = tmp_path / "pwned"
        branch = f"feat$(touch${{IFS}}{marker})"
        definitions = [StageDefinition("Tag", [StepSpec("tag", "echo building ${BRANCH_NAME}")])]

        run = self.orchestrator.run(definitions, PipelineRun(build_number=3, commit="abc1234def", branch=branch))

        assert run.status is RunStatus.SUCCESS
        assert not marker.exists()
        assert run.result_for("Tag").steps[0].output.strip() == f"building {branch}"

    def test_quoted_commit_message_is_not_executed(self, tmp_path):
        marker = tmp_path / "pwned"
        definitions = [StageDefinition("Notify", [StepSpec("say", "echo \"${COMMIT_MESSAGE}\"")])]
        pipeline_run = PipelineRun(build_number=4, commit="abc1234def", branch="develop")
        pipeline_run.variables["COMMIT_MESSAGE"] = f"fix `touch {marker}`"

        run = self.orchestrator.run(definitions, pipeline_run)

        assert run.status is RunStatus.SUCCESS
        assert not marker.exists()
