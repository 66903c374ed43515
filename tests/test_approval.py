"""Tests for approval gates and channels."""

import io
import threading
import time

import pytest
from unittest.mock import patch
from rich.console import Console

from stagegate.approval import (
    ConsoleApprovalChannel, QueueApprovalChannel, StaticApprovalChannel, approval_registry
)
from stagegate.core.interfaces import ApprovalDecision, ApprovalGateSpec, ApprovalRequest


def make_request(run_id="42-abc1234", timeout=2.0):
    spec = ApprovalGateSpec(timeout=timeout)
    return ApprovalRequest(
        run_id=run_id,
        branch="main",
        stage_name="Deploy to Production",
        prompt=spec.prompt,
        choices=spec.choices,
        form=spec.form(),
        timeout=spec.timeout,
        submitter_parameter=spec.submitter_parameter,
    )


class TestApprovalGateSpec:
    """Test approval form validation."""

    def setup_method(self):
        self.spec = ApprovalGateSpec()

    def test_defaults(self):
        assert self.spec.choices == ["Deploy", "Abort"]
        form = self.spec.form()
        assert form["deployment_strategy"]["choices"] == ["rolling", "blue-green", "immediate"]
        assert form["deployment_strategy"]["default"] == "rolling"
        assert form["backup_before_deploy"]["default"] is True

    def test_validate_fills_defaults(self):
        values = self.spec.validate("alice", {})
        assert values == {"deployment_strategy": "rolling", "backup_before_deploy": True}

    def test_validate_parses_boolean_strings(self):
        values = self.spec.validate("alice", {"deployment_strategy": "immediate",
                                              "backup_before_deploy": "no"})
        assert values == {"deployment_strategy": "immediate", "backup_before_deploy": False}

    def test_validate_requires_approver(self):
        with pytest.raises(ValueError, match="approver"):
            self.spec.validate("", {})

    def test_validate_rejects_unknown_strategy(self):
        with pytest.raises(ValueError, match="deployment_strategy"):
            self.spec.validate("alice", {"deployment_strategy": "canary"})

    def test_allowed_approvers(self):
        spec = ApprovalGateSpec(allowed_approvers=["alice"])

        assert spec.validate("alice", {})["deployment_strategy"] == "rolling"
        with pytest.raises(ValueError, match="not allowed"):
            spec.validate("mallory", {})


class TestStaticApprovalChannel:
    """Test pre-supplied approvals."""

    def test_approves_with_values(self):
        channel = StaticApprovalChannel(approver="alice", values={"deployment_strategy": "blue-green"})

        decision = channel.request(make_request())

        assert decision.approved
        assert decision.approver == "alice"
        assert decision.values == {"deployment_strategy": "blue-green"}
        assert len(channel.requests) == 1

    def test_rejects_without_approver(self):
        decision = StaticApprovalChannel().request(make_request())

        assert not decision.approved
        assert decision.reason == "no approver supplied"


class TestQueueApprovalChannel:
    """Test approvals submitted from another thread."""

    def setup_method(self):
        self.channel = QueueApprovalChannel(poll_interval=0.02)
        self.decisions = []

    def _request_in_background(self, request, cancel_event=None):
        thread = threading.Thread(
            target=lambda: self.decisions.append(self.channel.request(request, cancel_event)))
        thread.start()
        assert self.channel.wait_for_request(request.run_id, timeout=2.0)
        return thread

    def test_approve(self):
        thread = self._request_in_background(make_request())
        assert [r.run_id for r in self.channel.pending()] == ["42-abc1234"]

        assert self.channel.approve("42-abc1234", "alice", deployment_strategy="rolling")
        thread.join(2.0)

        assert self.decisions[0].approved
        assert self.decisions[0].approver == "alice"
        assert self.decisions[0].values == {"deployment_strategy": "rolling"}
        assert self.channel.pending() == []

    def test_reject(self):
        thread = self._request_in_background(make_request())

        assert self.channel.reject("42-abc1234", "bob", reason="change freeze")
        thread.join(2.0)

        assert not self.decisions[0].approved
        assert self.decisions[0].approver == "bob"
        assert self.decisions[0].reason == "change freeze"

    def test_timeout(self):
        start = time.time()
        decision = self.channel.request(make_request(timeout=0.1))

        assert not decision.approved
        assert decision.reason == "timeout"
        assert time.time() - start < 2.0

    def test_cancellation(self):
        cancel_event = threading.Event()
        thread = self._request_in_background(make_request(timeout=10.0), cancel_event)

        cancel_event.set()
        thread.join(2.0)

        assert not self.decisions[0].approved
        assert self.decisions[0].reason == "cancelled"

    def test_decide_unknown_run(self):
        assert self.channel.approve("1-unknown", "alice") is False


class TestConsoleApprovalChannel:
    """Test terminal approvals."""

    def setup_method(self):
        self.console = Console(file=io.StringIO(), force_terminal=False)
        self.channel = ConsoleApprovalChannel(self.console)

    @patch("stagegate.approval.channels.Confirm.ask", return_value=False)
    @patch("stagegate.approval.channels.Prompt.ask", side_effect=["Deploy", "alice ", "blue-green"])
    def test_approve(self, mock_prompt, mock_confirm):
        decision = self.channel.request(make_request())

        assert decision.approved
        assert decision.approver == "alice"
        assert decision.values == {"deployment_strategy": "blue-green", "backup_before_deploy": False}
        assert "Approval required" in self.console.file.getvalue()

    @patch("stagegate.approval.channels.Prompt.ask", return_value="Abort")
    def test_abort(self, mock_prompt):
        decision = self.channel.request(make_request())

        assert not decision.approved
        assert decision.reason == "rejected"

    @patch("stagegate.approval.channels.Prompt.ask", side_effect=lambda *a, **k: time.sleep(5))
    def test_timeout(self, mock_prompt):
        start = time.time()
        decision = self.channel.request(make_request(timeout=0.2))

        assert decision.reason == "timeout"
        assert time.time() - start < 2.0


class TestApprovalRegistry:
    """Test approval channel registration."""

    def test_registered_channels(self):
        assert set(approval_registry.list_components()) == {"console", "static", "queue"}

    def test_create_channel(self):
        channel = approval_registry.create_component("static", approver="alice")
        assert isinstance(channel, StaticApprovalChannel)
        assert channel.request(make_request()).approver == "alice"


class TestApprovalDecision:
    """Test decision helpers."""

    def test_rejected(self):
        decision = ApprovalDecision.rejected(approver="bob")
        assert not decision.approved
        assert decision.reason == "rejected"

    def test_timed_out(self):
        assert ApprovalDecision.timed_out().reason == "timeout"
