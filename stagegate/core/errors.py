"""Error taxonomy and error recording for pipeline runs."""

import time
import logging
from typing import Dict, Any, Optional, List
from enum import Enum
from dataclasses import dataclass
from pathlib import Path
import json


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of pipeline errors."""
    GATE_UNMET = "GateUnmet"
    STEP_FAILED = "StepFailed"
    STEP_TIMED_OUT = "StepTimedOut"
    APPROVAL = "ApprovalRejectedOrTimedOut"
    SUPERSEDED = "SupersededByNewerRun"
    CONFIGURATION = "ConfigurationError"
    SYSTEM = "SystemError"


@dataclass
class ErrorContext:
    """Context information for an error."""
    error_id: str
    timestamp: float
    stage_name: str
    step_name: Optional[str]
    run_id: str
    branch: str
    error_message: str
    exception_type: str
    category: ErrorCategory
    severity: ErrorSeverity
    metadata: Dict[str, Any]


class PipelineError(Exception):
    """Base class for pipeline-specific errors."""

    def __init__(self, message: str, category: ErrorCategory, severity: ErrorSeverity,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or {}
        self.timestamp = time.time()

    @property
    def kind(self) -> str:
        """Taxonomy name recorded on stage results."""
        return self.category.value


class GateUnmet(PipelineError):
    """A stage's gating predicate evaluated false. Leads to a skip, never a failure."""

    def __init__(self, stage_name: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Gating predicate for stage '{stage_name}' is not met",
                         ErrorCategory.GATE_UNMET, ErrorSeverity.LOW, context)
        self.stage_name = stage_name


class StepFailed(PipelineError):
    """An external command exited with a non-zero status."""

    def __init__(self, step_name: str, exit_code: int, output: str = "",
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Step '{step_name}' exited with status {exit_code}",
                         ErrorCategory.STEP_FAILED, ErrorSeverity.HIGH, context)
        self.step_name = step_name
        self.exit_code = exit_code
        self.output = output


class StepTimedOut(PipelineError):
    """An external command did not finish within its timeout."""

    def __init__(self, step_name: str, timeout: float, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Step '{step_name}' timed out after {timeout}s",
                         ErrorCategory.STEP_TIMED_OUT, ErrorSeverity.HIGH, context)
        self.step_name = step_name
        self.timeout = timeout


class ApprovalRejectedOrTimedOut(PipelineError):
    """The approval gate was rejected, timed out or received invalid values."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.APPROVAL, ErrorSeverity.HIGH, context)


class SupersededByNewerRun(PipelineError):
    """A newer trigger for the same branch cancelled this run."""

    def __init__(self, run_id: str, branch: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Run {run_id} on branch '{branch}' was superseded by a newer run",
                         ErrorCategory.SUPERSEDED, ErrorSeverity.MEDIUM, context)
        self.run_id = run_id
        self.branch = branch


class ConfigurationError(PipelineError):
    """Invalid stage definitions or pipeline configuration."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.CONFIGURATION, ErrorSeverity.CRITICAL, context)


class ErrorHandler:
    """Classifies, logs and keeps a history of pipeline errors."""

    def __init__(self, error_log_path: Optional[str] = None):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.error_log_path = Path(error_log_path) if error_log_path else None
        self.error_history: List[ErrorContext] = []

        if self.error_log_path:
            self.error_log_path.parent.mkdir(parents=True, exist_ok=True)

    def classify_error(self, exception: Exception, context: Dict[str, Any]) -> ErrorContext:
        """Classify an error and create error context."""
        import uuid

        category, severity = self._categorize_error(exception)

        error_context = ErrorContext(
            error_id=str(uuid.uuid4()),
            timestamp=time.time(),
            stage_name=context.get('stage_name', 'unknown'),
            step_name=context.get('step_name'),
            run_id=context.get('run_id', 'unknown'),
            branch=context.get('branch', 'unknown'),
            error_message=str(exception),
            exception_type=type(exception).__name__,
            category=category,
            severity=severity,
            metadata=context.copy()
        )

        self._log_error(error_context)
        self.error_history.append(error_context)

        return error_context

    def _categorize_error(self, exception: Exception) -> tuple[ErrorCategory, ErrorSeverity]:
        """Categorize an error based on its type."""
        if isinstance(exception, PipelineError):
            return exception.category, exception.severity

        if isinstance(exception, (ValueError, KeyError)):
            return ErrorCategory.CONFIGURATION, ErrorSeverity.HIGH

        if isinstance(exception, TimeoutError):
            return ErrorCategory.STEP_TIMED_OUT, ErrorSeverity.HIGH

        if isinstance(exception, OSError):
            return ErrorCategory.STEP_FAILED, ErrorSeverity.HIGH

        return ErrorCategory.SYSTEM, ErrorSeverity.MEDIUM

    def _log_error(self, error_context: ErrorContext) -> None:
        """Log error to file and logger."""
        log_entry = {
            'error_id': error_context.error_id,
            'timestamp': error_context.timestamp,
            'stage_name': error_context.stage_name,
            'step_name': error_context.step_name,
            'run_id': error_context.run_id,
            'branch': error_context.branch,
            'error_message': error_context.error_message,
            'exception_type': error_context.exception_type,
            'category': error_context.category.value,
            'severity': error_context.severity.value,
        }

        if error_context.severity in [ErrorSeverity.HIGH, ErrorSeverity.CRITICAL]:
            self.logger.error(f"Pipeline error [{error_context.error_id}]: {error_context.error_message}")
        else:
            self.logger.warning(f"Pipeline warning [{error_context.error_id}]: {error_context.error_message}")

        if self.error_log_path:
            try:
                with open(self.error_log_path, 'a') as f:
                    f.write(json.dumps(log_entry) + '\n')
            except OSError as e:
                self.logger.error(f"Failed to write error log: {str(e)}")

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics from history."""
        if not self.error_history:
            return {"total_errors": 0}

        stats = {
            "total_errors": len(self.error_history),
            "by_category": {},
            "by_severity": {},
            "by_stage": {},
        }

        for error in self.error_history:
            category = error.category.value
            stats["by_category"][category] = stats["by_category"].get(category, 0) + 1

            severity = error.severity.value
            stats["by_severity"][severity] = stats["by_severity"].get(severity, 0) + 1

            stage = error.stage_name
            stats["by_stage"][stage] = stats["by_stage"].get(stage, 0) + 1

        return stats

    def clear_error_history(self) -> None:
        """Clear the error history."""
        self.error_history.clear()
        self.logger.info("Error history cleared")

    def export_error_report(self, output_path: str) -> None:
        """Export detailed error report to file."""
        report = {
            "generated_at": time.time(),
            "statistics": self.get_error_statistics(),
            "errors": [
                {
                    "error_id": error.error_id,
                    "timestamp": error.timestamp,
                    "run_id": error.run_id,
                    "stage_name": error.stage_name,
                    "step_name": error.step_name,
                    "error_message": error.error_message,
                    "category": error.category.value,
                    "severity": error.severity.value,
                }
                for error in self.error_history
            ]
        }

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w') as f:
            json.dump(report, f, indent=2)

        self.logger.info(f"Error report exported to {output_path}")
