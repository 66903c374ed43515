"""
Approval channels for gated stages.

An approval channel presents an ``ApprovalRequest`` (prompt, choices and a
sub-form with the deployment strategy and backup flag) to a human and returns
an ``ApprovalDecision``. Waiting is bounded by the request timeout and can be
interrupted through the run's cancellation event.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt

from ..core.interfaces import ApprovalDecision, ApprovalRequest


logger = logging.getLogger(__name__)


class ApprovalChannel(ABC):
    """Abstract base class for approval channels."""

    @abstractmethod
    def request(self, request: ApprovalRequest,
                cancel_event: Optional[threading.Event] = None) -> ApprovalDecision:
        """Block until approval, rejection, timeout or cancellation."""
        pass


class StaticApprovalChannel(ApprovalChannel):
    """Answers every request with a decision supplied up front.

    Used for non-interactive runs where the approver is given on the command
    line. With no approver configured every request is rejected.
    """

    def __init__(self, approver: Optional[str] = None, values: Optional[Dict[str, Any]] = None):
        self.approver = approver
        self.values = values or {}
        self.requests: List[ApprovalRequest] = []

    def request(self, request: ApprovalRequest,
                cancel_event: Optional[threading.Event] = None) -> ApprovalDecision:
        self.requests.append(request)
        if not self.approver:
            logger.warning(f"No approver supplied for {request.stage_name} of run {request.run_id}")
            return ApprovalDecision.rejected(reason="no approver supplied")

        logger.info(f"Stage {request.stage_name} of run {request.run_id} pre-approved by {self.approver}")
        return ApprovalDecision(approved=True, approver=self.approver, values=dict(self.values))


class _PendingApproval:
    def __init__(self, request: ApprovalRequest):
        self.request = request
        self.event = threading.Event()
        self.decision: Optional[ApprovalDecision] = None


class QueueApprovalChannel(ApprovalChannel):
    """Holds requests until another thread approves or rejects them."""

    def __init__(self, poll_interval: float = 0.1):
        self.poll_interval = poll_interval
        self._pending: Dict[str, _PendingApproval] = {}
        self._lock = threading.Lock()

    def request(self, request: ApprovalRequest,
                cancel_event: Optional[threading.Event] = None) -> ApprovalDecision:
        pending = _PendingApproval(request)
        with self._lock:
            self._pending[request.run_id] = pending

        logger.info(f"Waiting up to {request.timeout}s for approval of {request.stage_name} ({request.run_id})")
        deadline = time.time() + request.timeout

        try:
            while not pending.event.is_set():
                if cancel_event is not None and cancel_event.is_set():
                    return ApprovalDecision.rejected(reason="cancelled")

                remaining = deadline - time.time()
                if remaining <= 0:
                    logger.warning(f"Approval for {request.run_id} timed out")
                    return ApprovalDecision.timed_out()

                pending.event.wait(min(self.poll_interval, remaining))

            return pending.decision
        finally:
            with self._lock:
                self._pending.pop(request.run_id, None)

    def pending(self) -> List[ApprovalRequest]:
        """Requests currently waiting for a decision."""
        with self._lock:
            return [entry.request for entry in self._pending.values()]

    def wait_for_request(self, run_id: str, timeout: float = 5.0) -> bool:
        """Wait until a request for ``run_id`` is pending."""
        deadline = time.time() + timeout
        while time.time() < deadline:
            with self._lock:
                if run_id in self._pending:
                    return True
            time.sleep(self.poll_interval / 2)
        return False

    def approve(self, run_id: str, approver: str, **values: Any) -> bool:
        return self._decide(run_id, ApprovalDecision(approved=True, approver=approver, values=values))

    def reject(self, run_id: str, approver: Optional[str] = None, reason: str = "rejected") -> bool:
        return self._decide(run_id, ApprovalDecision.rejected(approver=approver, reason=reason))

    def _decide(self, run_id: str, decision: ApprovalDecision) -> bool:
        with self._lock:
            pending = self._pending.get(run_id)
        if pending is None:
            logger.warning(f"No pending approval for run {run_id}")
            return False

        pending.decision = decision
        pending.event.set()
        return True


class ConsoleApprovalChannel(ApprovalChannel):
    """Interactive approval through rich prompts on the terminal."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def request(self, request: ApprovalRequest,
                cancel_event: Optional[threading.Event] = None) -> ApprovalDecision:
        holder: Dict[str, ApprovalDecision] = {}
        worker = threading.Thread(target=self._ask, args=(request, holder), daemon=True)
        worker.start()

        deadline = time.time() + request.timeout
        while worker.is_alive():
            if cancel_event is not None and cancel_event.is_set():
                return ApprovalDecision.rejected(reason="cancelled")
            remaining = deadline - time.time()
            if remaining <= 0:
                self.console.print("\n[red]Approval timed out[/red]")
                return ApprovalDecision.timed_out()
            worker.join(min(0.2, remaining))

        return holder.get("decision", ApprovalDecision.rejected(reason="no answer"))

    def _ask(self, request: ApprovalRequest, holder: Dict[str, ApprovalDecision]) -> None:
        self.console.print(Panel(
            f"{request.prompt}\n\n"
            f"Run: {request.run_id}\nBranch: {request.branch}\nStage: {request.stage_name}",
            title="Approval required",
            border_style="yellow",
        ))

        choice = Prompt.ask("Decision", choices=request.choices, default=request.choices[-1],
                            console=self.console)
        if choice != request.choices[0]:
            holder["decision"] = ApprovalDecision.rejected(reason="rejected")
            return

        approver = Prompt.ask(request.submitter_parameter.capitalize(), console=self.console)
        values: Dict[str, Any] = {}
        for name, field_spec in request.form.items():
            label = name.replace("_", " ").capitalize()
            if field_spec.get("type") == "boolean":
                values[name] = Confirm.ask(label, default=field_spec.get("default", False),
                                           console=self.console)
            else:
                values[name] = Prompt.ask(label, choices=field_spec.get("choices"),
                                          default=field_spec.get("default"), console=self.console)

        holder["decision"] = ApprovalDecision(approved=True, approver=approver.strip(), values=values)
