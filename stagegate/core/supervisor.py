"""
Run supervisor enforcing one active run per branch.

A new trigger for a branch cancels the in-flight run for that branch (its
child processes are killed by the process runner when the cancellation event
fires) and waits for it to reach a terminal state before starting the new one.
"""

import itertools
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from .errors import ConfigurationError
from .interfaces import PipelineRun, StageDefinition, Trigger
from .orchestrator import PipelineOrchestrator


logger = logging.getLogger(__name__)


@dataclass
class ActiveRun:
    run: PipelineRun
    future: Future


class RunSupervisor:
    """Starts runs for triggers and applies the supersession policy."""

    def __init__(self, orchestrator: PipelineOrchestrator, definitions: Sequence[StageDefinition],
                 max_concurrent_runs: int = 4, supersede_log_interval: float = 60.0,
                 logs_url_template: Optional[str] = None, image_repository: Optional[str] = None,
                 on_finished: Optional[Callable[[PipelineRun], None]] = None):
        self.orchestrator = orchestrator
        self.definitions = list(definitions)
        self.supersede_log_interval = supersede_log_interval
        self.logs_url_template = logs_url_template
        self.image_repository = image_repository
        self.on_finished = on_finished

        errors = orchestrator.validate_pipeline_stages(self.definitions)
        if errors:
            raise ConfigurationError("; ".join(errors))

        self.executor = ThreadPoolExecutor(max_workers=max_concurrent_runs,
                                           thread_name_prefix="pipeline-run")
        self._active: Dict[str, ActiveRun] = {}
        self._futures: Dict[str, Future] = {}
        self._finished: List[PipelineRun] = []
        self._build_numbers = itertools.count(1)
        self._lock = threading.Lock()
        self._branch_locks: Dict[str, threading.Lock] = {}

    def _branch_lock(self, branch: str) -> threading.Lock:
        with self._lock:
            if branch not in self._branch_locks:
                self._branch_locks[branch] = threading.Lock()
            return self._branch_locks[branch]

    def submit(self, trigger: Trigger) -> PipelineRun:
        """Start a run for ``trigger``, superseding any active run on the same branch.

        Blocks until the superseded run is terminal. Submissions for other
        branches are not held up.
        """
        with self._branch_lock(trigger.branch):
            previous = self._active_for(trigger.branch)
            if previous is not None:
                self._supersede(previous)

            with self._lock:
                build_number = trigger.build_number
                if build_number is None:
                    build_number = next(self._build_numbers)

            run = PipelineRun.from_trigger(
                trigger,
                build_number=build_number,
                logs_url_template=self.logs_url_template,
                image_repository=self.image_repository,
            )

            with self._lock:
                future = self.executor.submit(self._execute, run)
                self._active[run.branch] = ActiveRun(run=run, future=future)
                self._futures[run.run_id] = future

            logger.info(f"Submitted run {run.run_id} for {run.branch} ({trigger.kind.value})")
            return run

    def _active_for(self, branch: str) -> Optional[ActiveRun]:
        with self._lock:
            return self._active.get(branch)

    def _supersede(self, active: ActiveRun) -> None:
        """Cancel a run and wait until it is terminal, however long its cleanup takes."""
        run = active.run
        logger.warning(f"Superseding run {run.run_id} on {run.branch}")
        run.cancel_event.set()
        while True:
            done, _ = wait([active.future], timeout=self.supersede_log_interval)
            if done:
                break
            logger.warning(f"Run {run.run_id} still finishing after cancellation, "
                           f"waiting another {self.supersede_log_interval}s")
        if active.future.exception() is not None:
            logger.error(f"Superseded run {run.run_id} did not finish cleanly: {active.future.exception()}")

    def _execute(self, run: PipelineRun) -> PipelineRun:
        try:
            return self.orchestrator.run(self.definitions, run)
        finally:
            with self._lock:
                current = self._active.get(run.branch)
                if current is not None and current.run is run:
                    del self._active[run.branch]
                self._finished.append(run)
            if self.on_finished is not None:
                try:
                    self.on_finished(run)
                except Exception as e:
                    logger.error(f"on_finished callback failed for {run.run_id}: {e}")

    def cancel(self, branch: str) -> bool:
        """Cancel the active run for a branch without starting a new one."""
        with self._branch_lock(branch):
            active = self._active_for(branch)
            if active is None:
                return False
            self._supersede(active)
            return True

    def wait(self, run: PipelineRun, timeout: Optional[float] = None) -> PipelineRun:
        """Wait for a submitted run to finish."""
        with self._lock:
            future = self._futures.get(run.run_id)
        if future is None:
            raise KeyError(f"Run {run.run_id} was not submitted to this supervisor")
        return future.result(timeout=timeout)

    def active_runs(self, branch: Optional[str] = None) -> List[PipelineRun]:
        with self._lock:
            runs = [entry.run for entry in self._active.values()]
        if branch is not None:
            runs = [run for run in runs if run.branch == branch]
        return runs

    def finished_runs(self) -> List[PipelineRun]:
        with self._lock:
            return list(self._finished)

    def shutdown(self, cancel_active: bool = True) -> None:
        """Stop accepting runs, optionally cancelling those still active."""
        if cancel_active:
            for run in self.active_runs():
                run.cancel_event.set()
        self.executor.shutdown(wait=True)
        logger.info("Run supervisor stopped")
