"""Configuration schema definitions using Pydantic models."""

from typing import Dict, List, Optional, Any, Union, Literal
from pydantic import BaseModel, Field, field_validator, model_validator
from enum import Enum

from ..core.predicates import predicate_from_config


class FailurePolicyName(str, Enum):
    """Stage failure policies."""
    FAIL_PIPELINE = "fail-pipeline"
    MARK_UNSTABLE = "mark-unstable"
    CONTINUE = "continue"


class StageRoleName(str, Enum):
    """Stage roles in the promotion workflow."""
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


class SinkType(str, Enum):
    """Supported notification sinks."""
    LOG = "log"
    SLACK = "slack"
    WEBHOOK = "webhook"
    EMAIL = "email"


class StepConfig(BaseModel):
    """A single command in a stage."""
    name: str = Field(..., description="Step name")
    command: Union[str, List[str]] = Field(..., description="Shell string or argv list")
    cwd: Optional[str] = Field(None, description="Working directory")
    timeout: Optional[float] = Field(None, gt=0, description="Timeout in seconds")
    env: Dict[str, str] = Field(default_factory=dict, description="Extra environment variables")
    capture: Optional[str] = Field(None, description="Context variable receiving stripped stdout")

    @field_validator('command')
    @classmethod
    def validate_command(cls, v):
        if isinstance(v, list) and not v:
            raise ValueError("command must not be empty")
        if isinstance(v, str) and not v.strip():
            raise ValueError("command must not be empty")
        return v


class ApprovalConfig(BaseModel):
    """Approval gate presented before a stage runs."""
    prompt: str = Field("Deploy to production?", description="Question shown to the approver")
    ok_label: str = Field("Deploy", description="Label of the approving choice")
    abort_label: str = Field("Abort", description="Label of the rejecting choice")
    submitter_parameter: str = Field("deployer", description="Parameter receiving the approver identity")
    timeout: float = Field(1800.0, gt=0, description="Seconds to wait for a decision")
    strategies: List[str] = Field(default_factory=lambda: ["rolling", "blue-green", "immediate"],
                                  description="Allowed deployment strategies")
    default_strategy: str = Field("rolling", description="Default deployment strategy")
    backup_default: bool = Field(True, description="Default for backup_before_deploy")
    allowed_approvers: List[str] = Field(default_factory=list, description="Empty means anyone")

    @model_validator(mode='after')
    def validate_strategy(self):
        if self.default_strategy not in self.strategies:
            raise ValueError(f"default_strategy '{self.default_strategy}' is not one of the strategies")
        return self


class StageConfig(BaseModel):
    """Configuration of one pipeline stage."""
    name: str = Field(..., description="Stage name")
    role: StageRoleName = Field(StageRoleName.GENERIC, description="Role in the promotion workflow")
    steps: List[StepConfig] = Field(default_factory=list, description="Steps to execute")
    when: Optional[Any] = Field(None, description="Gating predicate")
    parallel: bool = Field(False, description="Run steps concurrently")
    failure_policy: FailurePolicyName = Field(FailurePolicyName.FAIL_PIPELINE, description="Failure policy")
    always_run: bool = Field(False, description="Run regardless of upstream failure")
    environment: Optional[str] = Field(None, description="Deployment environment locked while running")
    approval: Optional[ApprovalConfig] = Field(None, description="Approval gate")

    @field_validator('when')
    @classmethod
    def validate_when(cls, v):
        """Reject predicates that cannot be parsed."""
        if v is not None:
            try:
                predicate_from_config(v)
            except TypeError as e:
                raise ValueError(f"Invalid predicate: {e}") from e
        return v

    @model_validator(mode='after')
    def validate_production(self):
        if self.role == StageRoleName.PRODUCTION and self.approval is None:
            self.approval = ApprovalConfig()
        return self


class PipelineSettings(BaseModel):
    """Pipeline metadata and promotion rules."""
    name: str = Field(..., description="Pipeline name")
    description: Optional[str] = Field(None, description="Pipeline description")
    image_repository: Optional[str] = Field(None, description="Registry image, e.g. registry.example.com/app")
    logs_url_template: Optional[str] = Field(
        None, description="Logs link, formatted with branch, build_number, commit and run_id")
    production_branches: List[str] = Field(default_factory=lambda: ["main", "master"],
                                           description="Branches promoted to production")
    staging_branches: List[str] = Field(default_factory=lambda: ["develop"],
                                        description="Branches deployed to staging")
    production_gate: Literal["branch_or_parameter", "branch_only"] = Field(
        "branch_or_parameter", description="How the production stage is gated when it has no 'when'")


class RunnerConfig(BaseModel):
    """Process runner configuration."""
    default_timeout: float = Field(600.0, gt=0, description="Default step timeout in seconds")
    retries: int = Field(0, ge=0, le=10, description="Retries for failed commands")
    retry_delay: float = Field(5.0, ge=0, description="Delay between retries in seconds")
    max_workers: int = Field(4, ge=1, description="Threads for parallel stages")
    working_directory: Optional[str] = Field(None, description="Default working directory for steps")


class SinkConfig(BaseModel):
    """A notification sink."""
    type: SinkType = Field(..., description="Sink type")
    enabled: bool = Field(True, description="Enable this sink")
    options: Dict[str, Any] = Field(default_factory=dict, description="Sink-specific options")

    @model_validator(mode='after')
    def validate_options(self):
        if self.type in (SinkType.SLACK, SinkType.WEBHOOK) and not self.options.get("webhook_url"):
            raise ValueError(f"webhook_url is required for {self.type.value} sinks")
        if self.type == SinkType.EMAIL and not self.options.get("to_emails"):
            raise ValueError("to_emails is required for email sinks")
        return self


class NotificationsConfig(BaseModel):
    """Notification configuration."""
    sinks: Dict[str, SinkConfig] = Field(
        default_factory=lambda: {"log": SinkConfig(type=SinkType.LOG)}, description="Named sinks")
    events: Optional[List[str]] = Field(None, description="Event types to deliver; all when unset")
    history_file: Optional[str] = Field(None, description="JSON file with notification history")


class DatabaseConfig(BaseModel):
    """Survey database bootstrap configuration."""
    path: str = Field("./patient_data.db", description="SQLite database file")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field("INFO", description="Logging level")
    format: str = Field("%(asctime)s - %(name)s - %(levelname)s - %(message)s", description="Log format")
    file_path: Optional[str] = Field(None, description="Log file path")
    error_log_path: Optional[str] = Field(None, description="JSON lines file of pipeline errors")


class PipelineConfig(BaseModel):
    """Main pipeline configuration."""
    pipeline: PipelineSettings = Field(..., description="Pipeline metadata")
    runner: RunnerConfig = Field(default_factory=RunnerConfig, description="Process runner configuration")
    stages: List[StageConfig] = Field(..., min_length=1, description="Ordered stage definitions")
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig,
                                               description="Notification configuration")
    database: DatabaseConfig = Field(default_factory=DatabaseConfig, description="Database configuration")
    logging: LoggingConfig = Field(default_factory=LoggingConfig, description="Logging configuration")

    model_config = {
        "extra": "forbid",
        "validate_assignment": True,
    }

    @model_validator(mode='after')
    def validate_config_consistency(self):
        """Validate cross-stage consistency."""
        names = [stage.name for stage in self.stages]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate stage names: {', '.join(duplicates)}")

        production = [i for i, stage in enumerate(self.stages) if stage.role == StageRoleName.PRODUCTION]
        if len(production) > 1:
            raise ValueError("At most one production stage is allowed")
        if production and not any(stage.role == StageRoleName.PUSH for stage in self.stages[:production[0]]):
            raise ValueError("The production stage must come after a push stage")

        return self


class ValidationError(Exception):
    """Configuration validation error."""

    def __init__(self, message: str, errors: List[str] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)


class ValidationResult(BaseModel):
    """Result of configuration validation."""
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    config: Optional[PipelineConfig] = None
