"""Pipeline orchestrator: stage gating, execution and promotion."""

import json
import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import (
    ApprovalRejectedOrTimedOut,
    ConfigurationError,
    ErrorCategory,
    ErrorHandler,
    PipelineError,
    StepFailed,
    StepTimedOut,
    SupersededByNewerRun,
)
from .interfaces import (
    ApprovalGateSpec,
    ApprovalRequest,
    FailurePolicy,
    PipelineRun,
    RunStatus,
    StageDefinition,
    StageResult,
    StageRole,
    StageStatus,
    StepResult,
    StepSpec,
)
from ..approval.channels import ApprovalChannel
from ..execution.runner import CommandSpec, ProcessRunner, substitute_variables
from ..notifications.notifier import EventType, NotificationManager


class EnvironmentLocks:
    """Allows at most one in-flight stage per named environment."""

    def __init__(self, poll_interval: float = 0.1):
        self.poll_interval = poll_interval
        self._locks: Dict[str, threading.Lock] = {}
        self._holders: Dict[str, str] = {}
        self._guard = threading.Lock()

    def _lock_for(self, environment: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(environment, threading.Lock())

    def acquire(self, environment: str, owner: str,
                cancel_event: Optional[threading.Event] = None) -> bool:
        """Block until the environment is free. Returns False if cancelled while waiting."""
        lock = self._lock_for(environment)
        while not lock.acquire(timeout=self.poll_interval):
            if cancel_event is not None and cancel_event.is_set():
                return False
        with self._guard:
            self._holders[environment] = owner
        return True

    def release(self, environment: str) -> None:
        with self._guard:
            self._holders.pop(environment, None)
            lock = self._locks[environment]
        lock.release()

    def holder(self, environment: str) -> Optional[str]:
        with self._guard:
            return self._holders.get(environment)


def aggregate_status(definitions: Sequence[StageDefinition], results: Sequence[StageResult]) -> RunStatus:
    """Overall status from stage results.

    Skipped stages and always-run stages never count. An approval failure is
    fatal regardless of the stage's own policy.
    """
    policies = {stage.name: stage for stage in definitions}
    unstable = False

    for result in results:
        if result.status is StageStatus.CANCELLED:
            return RunStatus.CANCELLED

    for result in results:
        stage = policies.get(result.stage_name)
        if stage is None or stage.always_run or result.status is not StageStatus.FAILED:
            continue
        if stage.failure_policy is FailurePolicy.FAIL_PIPELINE or result.error_kind == ErrorCategory.APPROVAL.value:
            return RunStatus.FAILED
        if stage.failure_policy is FailurePolicy.MARK_UNSTABLE:
            unstable = True

    return RunStatus.UNSTABLE if unstable else RunStatus.SUCCESS


class PipelineOrchestrator:
    """Runs ordered stage definitions against a pipeline run.

    Each stage is gated by its predicate, executed through the process runner
    (sub-steps concurrently for parallel stages) and its failure handled by the
    stage's failure policy. Production stages wait on the approval channel
    first. Every run ends with exactly one terminal notification.
    """

    def __init__(self, runner: ProcessRunner, approval_channel: Optional[ApprovalChannel] = None,
                 notifier: Optional[NotificationManager] = None, max_workers: int = 4,
                 environment_locks: Optional[EnvironmentLocks] = None,
                 error_log_path: Optional[str] = None):
        self.runner = runner
        self.approval_channel = approval_channel
        self.notifier = notifier or NotificationManager()
        self.max_workers = max_workers
        self.environment_locks = environment_locks or EnvironmentLocks()
        self.logger = self._setup_structured_logger()
        self.error_handler = ErrorHandler(error_log_path)
        self._execution_history: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def _setup_structured_logger(self) -> logging.Logger:
        """Setup structured logger with correlation ID support."""
        logger = logging.getLogger(self.__class__.__name__)

        class CorrelationFormatter(logging.Formatter):
            def format(self, record):
                correlation_id = getattr(threading.current_thread(), 'correlation_id', None)
                record.correlation_id = correlation_id or 'N/A'
                return super().format(record)

        formatter = CorrelationFormatter(
            '%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] - %(message)s'
        )

        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)

        return logger

    def run(self, definitions: Sequence[StageDefinition], run: PipelineRun) -> PipelineRun:
        """Execute all stages in order, mutating and returning ``run``."""
        errors = self.validate_pipeline_stages(definitions)
        if errors:
            raise ConfigurationError("; ".join(errors), {"run_id": run.run_id})

        threading.current_thread().correlation_id = run.run_id
        run.status = RunStatus.RUNNING
        run.started_at = time.time()
        run.variables = {**run.base_variables(), **run.variables}

        record = {
            "run_id": run.run_id,
            "branch": run.branch,
            "start_time": run.started_at,
            "status": run.status.value,
            "stages": [stage.name for stage in definitions],
        }
        with self._lock:
            self._execution_history.append(record)

        self.logger.info(f"Starting run {run.run_id} on {run.branch} ({run.event.value})")
        self.notifier.notify(EventType.BUILD_STARTED, run)

        try:
            self._run_stages(definitions, run)
            run.status = aggregate_status(definitions, run.results)
        except Exception as e:
            error_context = self.error_handler.classify_error(e, {
                'stage_name': 'orchestrator', 'run_id': run.run_id, 'branch': run.branch,
            })
            run.termination_reason = f"{error_context.exception_type}: {e}"
            run.status = RunStatus.FAILED

        if run.status is RunStatus.CANCELLED and not run.termination_reason:
            run.termination_reason = ErrorCategory.SUPERSEDED.value

        run.finished_at = time.time()
        self._finalize(run)

        with self._lock:
            record["status"] = run.status.value
            record["end_time"] = run.finished_at
            record["results"] = [result.to_dict() for result in run.results]

        return run

    def _run_stages(self, definitions: Sequence[StageDefinition], run: PipelineRun) -> None:
        aborted_by: Optional[str] = None
        production_done = False

        for stage in definitions:
            if run.is_cancelled and not stage.always_run:
                self._record(run, self._cancelled_result(stage))
                continue

            if aborted_by and not stage.always_run:
                self._record(run, self._skipped_result(
                    stage, f"Pipeline aborted after stage '{aborted_by}' failed"))
                continue

            if stage.when is not None and not stage.when.evaluate(run):
                self._record(run, self._skipped_result(
                    stage, f"Gating predicate not met: {stage.when.describe()}"))
                continue

            if stage.is_production:
                if production_done:
                    self._record(run, self._skipped_result(
                        stage, "Production deployment already executed in this run"))
                    continue
                if not self._push_succeeded(run):
                    self._record(run, self._skipped_result(
                        stage, "No successful push stage in this run"))
                    continue

            result, delta = self.execute_stage(stage, run)
            self._record(run, result)
            run.variables.update(delta)

            if stage.is_production and result.status is StageStatus.SUCCESS:
                production_done = True

            if result.status is StageStatus.FAILED:
                if stage.always_run:
                    self.logger.warning(f"Always-run stage {stage.name} failed: {result.failure_reason}")
                elif (stage.failure_policy is FailurePolicy.FAIL_PIPELINE
                      or result.error_kind == ErrorCategory.APPROVAL.value):
                    aborted_by = stage.name
                    self.logger.error(f"Stage {stage.name} failed, aborting remaining stages")
                elif stage.failure_policy is FailurePolicy.MARK_UNSTABLE:
                    self.logger.warning(f"Stage {stage.name} failed, marking run unstable")
                else:
                    self.logger.warning(f"Stage {stage.name} failed, continuing")

    def _record(self, run: PipelineRun, result: StageResult) -> None:
        run.results.append(result)
        self.logger.info(f"Stage {result.stage_name}: {result.status.value}"
                         + (f" ({result.failure_reason})" if result.failure_reason else ""))

    def _skipped_result(self, stage: StageDefinition, reason: str) -> StageResult:
        now = time.time()
        return StageResult(stage_name=stage.name, status=StageStatus.SKIPPED, role=stage.role,
                           started_at=now, finished_at=now, failure_reason=reason,
                           error_kind=ErrorCategory.GATE_UNMET.value)

    def _cancelled_result(self, stage: StageDefinition) -> StageResult:
        now = time.time()
        return StageResult(stage_name=stage.name, status=StageStatus.CANCELLED, role=stage.role,
                           started_at=now, finished_at=now,
                           failure_reason="Run superseded by a newer run",
                           error_kind=ErrorCategory.SUPERSEDED.value)

    def _push_succeeded(self, run: PipelineRun) -> bool:
        return any(result.role is StageRole.PUSH and result.status is StageStatus.SUCCESS
                   for result in run.results)

    def execute_stage(self, stage: StageDefinition, run: PipelineRun) -> Tuple[StageResult, Dict[str, str]]:
        """Execute one stage, returning its result and the context delta it produced."""
        self.logger.info(f"Executing stage: {stage.name}")
        result = StageResult(stage_name=stage.name, status=StageStatus.SUCCESS, role=stage.role)
        delta: Dict[str, str] = {}
        # Always-run stages are forced cleanup: they ignore cancellation.
        cancel_event = None if stage.always_run else run.cancel_event
        locked_environment: Optional[str] = None

        try:
            if stage.approval is not None or stage.is_production:
                delta.update(self._await_approval(stage, run, cancel_event))

            if stage.environment:
                if not self.environment_locks.acquire(stage.environment, run.run_id, cancel_event):
                    raise SupersededByNewerRun(run.run_id, run.branch)
                locked_environment = stage.environment

            variables = {**run.variables, **delta}
            if stage.parallel and len(stage.steps) > 1:
                step_results = self._execute_steps_parallel(stage.steps, variables, cancel_event, run.run_id)
            else:
                step_results = self._execute_steps_sequential(stage.steps, variables, cancel_event)

            result.steps = step_results
            for step_result in step_results:
                delta.update(step_result.outputs)
            self._raise_for_steps(step_results, stage, run)

        except PipelineError as e:
            self.error_handler.classify_error(e, {
                'stage_name': stage.name, 'run_id': run.run_id, 'branch': run.branch,
                'step_name': getattr(e, 'step_name', None),
            })
            result.status = (StageStatus.CANCELLED if e.category is ErrorCategory.SUPERSEDED
                             else StageStatus.FAILED)
            result.failure_reason = e.message
            result.error_kind = e.kind
        finally:
            if locked_environment:
                self.environment_locks.release(locked_environment)
            result.finished_at = time.time()

        if result.status is StageStatus.SUCCESS and stage.is_production and run.approval:
            run.description.append(f"Deployed by: {run.approval.approver}")
            run.description.append(f"Image: {run.image or run.image_tag}")

        return result, delta

    def _await_approval(self, stage: StageDefinition, run: PipelineRun,
                        cancel_event: Optional[threading.Event]) -> Dict[str, str]:
        """Block on the approval gate; returns the approval's context delta."""
        spec = stage.approval or ApprovalGateSpec()
        if self.approval_channel is None:
            raise ApprovalRejectedOrTimedOut(f"No approval channel configured for stage '{stage.name}'")

        request = ApprovalRequest(
            run_id=run.run_id,
            branch=run.branch,
            stage_name=stage.name,
            prompt=spec.prompt,
            choices=spec.choices,
            form=spec.form(),
            timeout=spec.timeout,
            submitter_parameter=spec.submitter_parameter,
        )
        self.notifier.notify(EventType.APPROVAL_REQUESTED, run, extra={"stage": stage.name})
        self.logger.info(f"Stage {stage.name} waiting for approval (timeout {spec.timeout}s)")

        decision = self.approval_channel.request(request, cancel_event)

        if cancel_event is not None and cancel_event.is_set():
            raise SupersededByNewerRun(run.run_id, run.branch)
        if not decision.approved:
            who = f" by {decision.approver}" if decision.approver else ""
            reason = "timed out" if decision.reason == "timeout" else f"rejected{who} ({decision.reason or 'no reason'})"
            raise ApprovalRejectedOrTimedOut(f"Approval for stage '{stage.name}' {reason}")

        try:
            values = spec.validate(decision.approver, decision.values)
        except ValueError as e:
            raise ApprovalRejectedOrTimedOut(f"Approval for stage '{stage.name}' rejected: {e}") from e

        decision.values = values
        run.approval = decision
        run.parameters.update(values)
        run.parameters[spec.submitter_parameter] = decision.approver
        self.logger.info(f"Stage {stage.name} approved by {decision.approver}")

        return {
            spec.submitter_parameter.upper(): decision.approver,
            "DEPLOYMENT_STRATEGY": values["deployment_strategy"],
            "BACKUP_BEFORE_DEPLOY": str(values["backup_before_deploy"]).lower(),
        }

    def _execute_steps_sequential(self, steps: List[StepSpec], variables: Dict[str, str],
                                  cancel_event: Optional[threading.Event]) -> List[StepResult]:
        """Execute steps in order, stopping at the first failure."""
        results = []
        local_variables = dict(variables)
        for step in steps:
            result = self._execute_step(step, local_variables, cancel_event)
            results.append(result)
            if not result.success:
                break
            local_variables.update(result.outputs)
        return results

    def _execute_steps_parallel(self, steps: List[StepSpec], variables: Dict[str, str],
                                cancel_event: Optional[threading.Event], correlation_id: str) -> List[StepResult]:
        """Execute steps concurrently; returns once every step is terminal."""
        def worker(step: StepSpec) -> StepResult:
            threading.current_thread().correlation_id = correlation_id
            return self._execute_step(step, variables, cancel_event)

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(steps))) as executor:
            futures = [executor.submit(worker, step) for step in steps]

        results = []
        for step, future in zip(steps, futures):
            try:
                results.append(future.result())
            except Exception as e:
                self.logger.error(f"Step {step.name} failed: {str(e)}")
                results.append(StepResult(step_name=step.name, success=False, error_output=str(e)))
        return results

    def _execute_step(self, step: StepSpec, variables: Dict[str, str],
                      cancel_event: Optional[threading.Event]) -> StepResult:
        if isinstance(step.command, str):
            command = substitute_variables(step.command, variables, shell=True)
        else:
            command = [substitute_variables(arg, variables) for arg in step.command]

        spec = CommandSpec(
            command=command,
            name=step.name,
            cwd=step.cwd,
            timeout=step.timeout,
            env={**variables, **{k: substitute_variables(str(v), variables) for k, v in step.env.items()}},
        )

        try:
            outcome = self.runner.run(spec, cancel_event)
        except Exception as e:
            self.logger.error(f"Process runner error in step {step.name}: {str(e)}")
            return StepResult(step_name=step.name, success=False, error_output=str(e))

        result = StepResult(
            step_name=step.name,
            success=outcome.success,
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            cancelled=outcome.cancelled,
            output=outcome.stdout,
            error_output=outcome.stderr,
            duration=outcome.duration,
        )
        if result.success and step.capture:
            result.outputs[step.capture] = outcome.stdout.strip()

        return result

    def _raise_for_steps(self, step_results: List[StepResult], stage: StageDefinition,
                         run: PipelineRun) -> None:
        """Turn the first unsuccessful step into the matching pipeline error."""
        failures = [result for result in step_results if not result.success]
        if not failures:
            return

        if any(result.cancelled for result in failures):
            raise SupersededByNewerRun(run.run_id, run.branch)

        first = failures[0]
        step = next((s for s in stage.steps if s.name == first.step_name), None)
        if first.timed_out:
            timeout = step.timeout if step and step.timeout is not None else getattr(
                self.runner, 'default_timeout', 0)
            error: PipelineError = StepTimedOut(first.step_name, timeout)
        else:
            error = StepFailed(first.step_name, first.exit_code if first.exit_code is not None else -1,
                               first.error_output)

        if len(failures) > 1:
            error.message += f" (and {len(failures) - 1} more failed step(s): " \
                             f"{', '.join(r.step_name for r in failures[1:])})"
        raise error

    def _finalize(self, run: PipelineRun) -> None:
        """Send exactly one terminal notification."""
        production = next((r for r in run.results if r.role is StageRole.PRODUCTION
                           and r.status is StageStatus.SUCCESS), None)

        if run.status is RunStatus.CANCELLED:
            event_type = EventType.BUILD_SUPERSEDED
        elif production is not None and run.status in (RunStatus.SUCCESS, RunStatus.UNSTABLE):
            event_type = EventType.DEPLOY_COMPLETED
        elif run.status is RunStatus.SUCCESS:
            event_type = EventType.BUILD_SUCCEEDED
        elif run.status is RunStatus.UNSTABLE:
            event_type = EventType.BUILD_UNSTABLE
        else:
            event_type = EventType.BUILD_FAILED

        self.logger.info(f"Run {run.run_id} finished: {run.status.value}")
        self.notifier.notify(event_type, run)

    def validate_pipeline_stages(self, definitions: Sequence[StageDefinition]) -> List[str]:
        """Validate stage definitions and return list of validation errors."""
        errors = []
        seen_names = set()
        for stage in definitions:
            if stage.name in seen_names:
                errors.append(f"Duplicate stage name: {stage.name}")
            seen_names.add(stage.name)

        production = [stage for stage in definitions if stage.is_production]
        if len(production) > 1:
            errors.append("At most one production stage is allowed, found: "
                          + ", ".join(stage.name for stage in production))

        for stage in production:
            index = list(definitions).index(stage)
            if not any(s.role is StageRole.PUSH for s in list(definitions)[:index]):
                errors.append(f"Production stage {stage.name} must come after a push stage")

        return errors

    def get_execution_history(self) -> List[Dict[str, Any]]:
        """Get the execution history."""
        with self._lock:
            return self._execution_history.copy()

    def clear_execution_history(self) -> None:
        """Clear the execution history."""
        with self._lock:
            self._execution_history.clear()

    def save_run_report(self, run: PipelineRun, report_path: str) -> None:
        """Write a JSON report of a run."""
        report_path = Path(report_path)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        with open(report_path, 'w') as f:
            json.dump(run.to_dict(), f, indent=2, default=str)
        self.logger.info(f"Run report saved: {report_path}")
