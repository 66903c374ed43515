"""Process runner used for every build, test, docker and ssh step."""

import logging
import os
import re
import shlex
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union


logger = logging.getLogger(__name__)

_VARIABLE_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')


@dataclass
class CommandSpec:
    """Command to execute: argv list, or a shell string."""
    command: Union[str, List[str]]
    name: str = ""
    cwd: Optional[str] = None
    timeout: Optional[float] = None
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def shell(self) -> bool:
        return isinstance(self.command, str)

    def display(self) -> str:
        return self.command if isinstance(self.command, str) else " ".join(self.command)


@dataclass
class CommandResult:
    """Exit status plus captured output."""
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False
    duration: float = 0.0
    attempts: int = 1

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


def substitute_variables(value: str, variables: Dict[str, str], shell: bool = False) -> str:
    """Replace ``${NAME}`` placeholders that exist in ``variables``; keep the rest for the shell.

    For shell commands only values made of shell-safe characters are spliced
    in. Anything else stays a ``${NAME}`` reference and is expanded by the
    shell from the step environment, so its contents are never parsed as code.
    """
    def replace_match(match):
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        text = str(variables[name])
        if shell and text and shlex.quote(text) != text:
            return match.group(0)
        return text

    return _VARIABLE_PATTERN.sub(replace_match, value)


class ProcessRunner(ABC):
    """Executes external commands on behalf of the orchestrator."""

    @abstractmethod
    def run(self, spec: CommandSpec, cancel_event: Optional[threading.Event] = None) -> CommandResult:
        """Run a command to completion, timeout or cancellation."""
        pass


class SubprocessRunner(ProcessRunner):
    """Runs commands with ``subprocess`` and kills them on timeout or cancellation.

    Retries of failed commands happen here, never in the orchestrator. Timeouts
    and cancellations are not retried.
    """

    def __init__(self, default_timeout: float = 600.0, retries: int = 0, retry_delay: float = 1.0,
                 poll_interval: float = 0.2, inherit_environment: bool = True,
                 max_output_chars: int = 20000):
        self.default_timeout = default_timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval
        self.inherit_environment = inherit_environment
        self.max_output_chars = max_output_chars
        self.logger = logging.getLogger(self.__class__.__name__)

    def run(self, spec: CommandSpec, cancel_event: Optional[threading.Event] = None) -> CommandResult:
        attempt = 0
        while True:
            attempt += 1
            result = self._run_once(spec, cancel_event)
            result.attempts = attempt

            if result.success or result.timed_out or result.cancelled or attempt > self.retries:
                return result

            self.logger.warning(
                f"Command '{spec.name or spec.display()}' exited with {result.exit_code}, "
                f"retrying in {self.retry_delay}s (attempt {attempt}/{self.retries + 1})"
            )
            if cancel_event is not None and cancel_event.wait(self.retry_delay):
                result.cancelled = True
                return result
            if cancel_event is None:
                time.sleep(self.retry_delay)

    def _run_once(self, spec: CommandSpec, cancel_event: Optional[threading.Event]) -> CommandResult:
        timeout = spec.timeout if spec.timeout is not None else self.default_timeout
        env = dict(os.environ) if self.inherit_environment else {}
        env.update({key: str(value) for key, value in spec.env.items()})

        self.logger.debug(f"Running: {spec.display()}")
        start_time = time.time()

        try:
            process = subprocess.Popen(
                spec.command,
                shell=spec.shell,
                cwd=spec.cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            self.logger.error(f"Failed to start '{spec.display()}': {e}")
            return CommandResult(exit_code=127, stderr=str(e), duration=time.time() - start_time)

        deadline = start_time + timeout
        timed_out = False
        cancelled = False
        stdout, stderr = "", ""

        while True:
            try:
                stdout, stderr = process.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                elif time.time() >= deadline:
                    timed_out = True
                else:
                    continue

                self._kill(process)
                stdout, stderr = process.communicate()
                break

        duration = time.time() - start_time
        if timed_out:
            self.logger.warning(f"Command '{spec.display()}' timed out after {timeout}s")
        elif cancelled:
            self.logger.warning(f"Command '{spec.display()}' terminated by cancellation")

        return CommandResult(
            exit_code=process.returncode,
            stdout=self._truncate(stdout),
            stderr=self._truncate(stderr),
            timed_out=timed_out,
            cancelled=cancelled,
            duration=duration,
        )

    def _kill(self, process: subprocess.Popen) -> None:
        """Kill the process and, on POSIX, its whole process group."""
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except (ProcessLookupError, PermissionError):
            process.kill()

    def _truncate(self, text: Optional[str]) -> str:
        if not text:
            return ""
        if len(text) <= self.max_output_chars:
            return text
        return text[-self.max_output_chars:]
