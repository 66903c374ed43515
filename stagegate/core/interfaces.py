"""Core data model for stage definitions, pipeline runs and their results."""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union, TYPE_CHECKING

if TYPE_CHECKING:
    from .predicates import Predicate


class RunStatus(Enum):
    """Pipeline run status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    UNSTABLE = "unstable"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.PENDING, RunStatus.RUNNING)


class StageStatus(Enum):
    """Status of a single stage within a run."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class FailurePolicy(Enum):
    """What a stage failure does to the rest of the run."""
    FAIL_PIPELINE = "fail-pipeline"
    MARK_UNSTABLE = "mark-unstable"
    CONTINUE = "continue"


class StageRole(Enum):
    """Role a stage plays in the promotion workflow."""
    CHECKOUT = "checkout"
    LINT = "lint"
    TEST = "test"
    BUILD = "build"
    PUSH = "push"
    DEPLOY = "deploy"
    PRODUCTION = "production"
    CLEANUP = "cleanup"
    NOTIFY = "notify"
    GENERIC = "generic"


class TriggerKind(Enum):
    """Kinds of events that start a pipeline run."""
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    MANUAL = "manual"

    @property
    def is_automatic(self) -> bool:
        return self is not TriggerKind.MANUAL


DEPLOY_ENVIRONMENTS = ("none", "staging", "production")
DEPLOYMENT_STRATEGIES = ("rolling", "blue-green", "immediate")

DEFAULT_PARAMETERS: Dict[str, Any] = {
    "deploy_environment": "none",
    "skip_tests": False,
    "force_rebuild": False,
}


@dataclass
class StepSpec:
    """A single external command executed by the process runner.

    A string command runs through the shell, a list runs as argv.
    ``capture`` names a context variable that receives the stripped stdout.
    """
    name: str
    command: Union[str, List[str]]
    cwd: Optional[str] = None
    timeout: Optional[float] = None
    env: Dict[str, str] = field(default_factory=dict)
    capture: Optional[str] = None

    @property
    def shell(self) -> bool:
        return isinstance(self.command, str)


@dataclass
class StepResult:
    """Outcome of one step."""
    step_name: str
    success: bool
    exit_code: Optional[int] = None
    timed_out: bool = False
    cancelled: bool = False
    output: str = ""
    error_output: str = ""
    duration: float = 0.0
    outputs: Dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> str:
        if self.success:
            return "success"
        if self.cancelled:
            return "cancelled"
        if self.timed_out:
            return "timed_out"
        return "failed"


@dataclass
class ApprovalGateSpec:
    """Human sign-off required before a stage runs."""
    prompt: str = "Deploy to production?"
    ok_label: str = "Deploy"
    abort_label: str = "Abort"
    submitter_parameter: str = "deployer"
    timeout: float = 1800.0
    strategies: List[str] = field(default_factory=lambda: list(DEPLOYMENT_STRATEGIES))
    default_strategy: str = "rolling"
    backup_default: bool = True
    allowed_approvers: List[str] = field(default_factory=list)

    @property
    def choices(self) -> List[str]:
        return [self.ok_label, self.abort_label]

    def form(self) -> Dict[str, Dict[str, Any]]:
        """Sub-form fields presented with the prompt."""
        return {
            "deployment_strategy": {"type": "choice", "choices": list(self.strategies),
                                    "default": self.default_strategy},
            "backup_before_deploy": {"type": "boolean", "default": self.backup_default},
        }

    def validate(self, approver: Optional[str], values: Dict[str, Any]) -> Dict[str, Any]:
        """Normalize submitted values, raising ValueError when they are unacceptable."""
        if not approver:
            raise ValueError("approval must carry an approver identity")
        if self.allowed_approvers and approver not in self.allowed_approvers:
            raise ValueError(f"'{approver}' is not allowed to approve this stage")

        strategy = values.get("deployment_strategy", self.default_strategy)
        if strategy not in self.strategies:
            raise ValueError(
                f"deployment_strategy must be one of {', '.join(self.strategies)}, got '{strategy}'"
            )

        backup = values.get("backup_before_deploy", self.backup_default)
        if isinstance(backup, str):
            backup = backup.strip().lower() in ("1", "true", "yes", "y")

        return {"deployment_strategy": strategy, "backup_before_deploy": bool(backup)}


@dataclass
class ApprovalRequest:
    """What an approval channel presents to the approver."""
    run_id: str
    branch: str
    stage_name: str
    prompt: str
    choices: List[str]
    form: Dict[str, Dict[str, Any]]
    timeout: float
    submitter_parameter: str = "deployer"


@dataclass
class ApprovalDecision:
    """Approver's answer, or a rejection/timeout."""
    approved: bool
    approver: Optional[str] = None
    values: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    decided_at: float = field(default_factory=time.time)

    @classmethod
    def rejected(cls, approver: Optional[str] = None, reason: str = "rejected") -> "ApprovalDecision":
        return cls(approved=False, approver=approver, reason=reason)

    @classmethod
    def timed_out(cls) -> "ApprovalDecision":
        return cls(approved=False, reason="timeout")


@dataclass
class StageDefinition:
    """A named, ordered unit of pipeline work.

    ``when`` is a predicate tree; ``None`` means the stage always applies.
    ``always_run`` stages execute even after a fatal failure or supersession
    and never affect the run status.
    """
    name: str
    steps: List[StepSpec] = field(default_factory=list)
    when: Optional["Predicate"] = None
    parallel: bool = False
    failure_policy: FailurePolicy = FailurePolicy.FAIL_PIPELINE
    role: StageRole = StageRole.GENERIC
    always_run: bool = False
    environment: Optional[str] = None
    approval: Optional[ApprovalGateSpec] = None

    @property
    def is_production(self) -> bool:
        return self.role is StageRole.PRODUCTION


@dataclass
class StageResult:
    """Recorded outcome of a stage."""
    stage_name: str
    status: StageStatus
    role: Optional[StageRole] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    failure_reason: Optional[str] = None
    error_kind: Optional[str] = None
    steps: List[StepResult] = field(default_factory=list)

    @property
    def duration(self) -> float:
        if self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage_name,
            "status": self.status.value,
            "role": self.role.value if self.role else None,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "failure_reason": self.failure_reason,
            "error_kind": self.error_kind,
            "steps": [
                {
                    "name": step.step_name,
                    "status": step.status,
                    "exit_code": step.exit_code,
                    "duration": step.duration,
                }
                for step in self.steps
            ],
        }


@dataclass
class Trigger:
    """An event that starts a pipeline run."""
    kind: TriggerKind
    branch: str
    commit: str
    build_number: Optional[int] = None
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineRun:
    """State of one pipeline execution, mutated stage by stage."""
    build_number: int
    commit: str
    branch: str
    event: TriggerKind = TriggerKind.PUSH
    parameters: Dict[str, Any] = field(default_factory=dict)
    results: List[StageResult] = field(default_factory=list)
    status: RunStatus = RunStatus.PENDING
    variables: Dict[str, str] = field(default_factory=dict)
    approval: Optional[ApprovalDecision] = None
    description: List[str] = field(default_factory=list)
    logs_url: Optional[str] = None
    image: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    termination_reason: Optional[str] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    def __post_init__(self):
        self.parameters = {**DEFAULT_PARAMETERS, **self.parameters}
        if self.parameters["deploy_environment"] not in DEPLOY_ENVIRONMENTS:
            raise ValueError(
                f"deploy_environment must be one of {', '.join(DEPLOY_ENVIRONMENTS)}, "
                f"got '{self.parameters['deploy_environment']}'"
            )

    @classmethod
    def from_trigger(cls, trigger: Trigger, build_number: Optional[int] = None,
                     logs_url_template: Optional[str] = None,
                     image_repository: Optional[str] = None) -> "PipelineRun":
        """Create a run for a trigger event."""
        number = build_number if build_number is not None else (trigger.build_number or 1)
        run = cls(
            build_number=number,
            commit=trigger.commit,
            branch=trigger.branch,
            event=trigger.kind,
            parameters=dict(trigger.parameters),
        )
        if logs_url_template:
            run.logs_url = logs_url_template.format(
                branch=run.branch, build_number=run.build_number,
                commit=run.commit, run_id=run.run_id,
            )
        if image_repository:
            run.image = f"{image_repository}:{run.image_tag}"
        return run

    @property
    def commit_short(self) -> str:
        return self.commit[:7]

    @property
    def run_id(self) -> str:
        return f"{self.build_number}-{self.commit_short}"

    @property
    def image_tag(self) -> str:
        return self.run_id

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def result_for(self, stage_name: str) -> Optional[StageResult]:
        for result in self.results:
            if result.stage_name == stage_name:
                return result
        return None

    def base_variables(self) -> Dict[str, str]:
        """Context variables available to every step."""
        variables = {
            "BUILD_NUMBER": str(self.build_number),
            "COMMIT": self.commit,
            "COMMIT_SHORT": self.commit_short,
            "BRANCH_NAME": self.branch,
            "IMAGE_TAG": self.image_tag,
            "DEPLOY_ENVIRONMENT": str(self.parameters["deploy_environment"]),
            "SKIP_TESTS": str(bool(self.parameters["skip_tests"])).lower(),
            "BUILD_CACHE_FLAG": "--no-cache" if self.parameters["force_rebuild"] else "",
        }
        if self.image:
            variables["IMAGE"] = self.image
        return variables

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "build_number": self.build_number,
            "commit": self.commit,
            "branch": self.branch,
            "event": self.event.value,
            "parameters": self.parameters,
            "status": self.status.value,
            "image": self.image,
            "approver": self.approval.approver if self.approval and self.approval.approved else None,
            "description": self.description,
            "logs_url": self.logs_url,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "termination_reason": self.termination_reason,
            "stages": [result.to_dict() for result in self.results],
        }
