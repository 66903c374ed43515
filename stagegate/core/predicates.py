"""Gating predicate tree.

Stage conditions are small trees of predicates evaluated against a run:

    anyOf:
      - allOf:
          - branch: [main, master]
          - event: [push, pull_request, schedule]
      - param: {deploy_environment: production}

The same tree can be built in code with ``BranchMatch``, ``ParamEquals``,
``EventIs``, ``TestsPassed``, ``StageSucceeded``, ``And``, ``Or`` and ``Not``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, List, Tuple, Union

from .interfaces import PipelineRun, StageRole, StageStatus, TriggerKind


class Predicate(ABC):
    """A boolean condition over a pipeline run."""

    @abstractmethod
    def evaluate(self, run: PipelineRun) -> bool:
        pass

    @abstractmethod
    def describe(self) -> str:
        pass

    def __and__(self, other: "Predicate") -> "Predicate":
        return And((self, other))

    def __or__(self, other: "Predicate") -> "Predicate":
        return Or((self, other))

    def __invert__(self) -> "Predicate":
        return Not(self)


@dataclass(frozen=True)
class Always(Predicate):
    def evaluate(self, run: PipelineRun) -> bool:
        return True

    def describe(self) -> str:
        return "always"


@dataclass(frozen=True)
class BranchMatch(Predicate):
    """Branch equals, or glob-matches, any of the patterns."""
    patterns: Tuple[str, ...]

    def evaluate(self, run: PipelineRun) -> bool:
        return any(fnmatchcase(run.branch, pattern) for pattern in self.patterns)

    def describe(self) -> str:
        return f"branch in {{{', '.join(self.patterns)}}}"


@dataclass(frozen=True)
class ParamEquals(Predicate):
    name: str
    value: Any

    def evaluate(self, run: PipelineRun) -> bool:
        return run.parameters.get(self.name) == self.value

    def describe(self) -> str:
        return f"{self.name} == {self.value!r}"


@dataclass(frozen=True)
class EventIs(Predicate):
    events: Tuple[TriggerKind, ...]

    def evaluate(self, run: PipelineRun) -> bool:
        return run.event in self.events

    def describe(self) -> str:
        return f"event in {{{', '.join(event.value for event in self.events)}}}"


AUTOMATIC_EVENTS = EventIs(tuple(kind for kind in TriggerKind if kind.is_automatic))


@dataclass(frozen=True)
class TestsPassed(Predicate):
    """No test stage recorded so far has failed. Skipped tests count as passing."""

    __test__ = False

    def evaluate(self, run: PipelineRun) -> bool:
        return not any(
            result.status in (StageStatus.FAILED, StageStatus.CANCELLED)
            for result in run.results
            if result.role is StageRole.TEST
        )

    def describe(self) -> str:
        return "tests passed"


@dataclass(frozen=True)
class StageSucceeded(Predicate):
    stage_name: str
    allow_skipped: bool = False

    def evaluate(self, run: PipelineRun) -> bool:
        result = run.result_for(self.stage_name)
        if result is None:
            return False
        if result.status is StageStatus.SKIPPED:
            return self.allow_skipped
        return result.status is StageStatus.SUCCESS

    def describe(self) -> str:
        return f"stage '{self.stage_name}' succeeded"


@dataclass(frozen=True)
class And(Predicate):
    children: Tuple[Predicate, ...]

    def evaluate(self, run: PipelineRun) -> bool:
        return all(child.evaluate(run) for child in self.children)

    def describe(self) -> str:
        return "(" + " AND ".join(child.describe() for child in self.children) + ")"


@dataclass(frozen=True)
class Or(Predicate):
    children: Tuple[Predicate, ...]

    def evaluate(self, run: PipelineRun) -> bool:
        return any(child.evaluate(run) for child in self.children)

    def describe(self) -> str:
        return "(" + " OR ".join(child.describe() for child in self.children) + ")"


@dataclass(frozen=True)
class Not(Predicate):
    child: Predicate

    def evaluate(self, run: PipelineRun) -> bool:
        return not self.child.evaluate(run)

    def describe(self) -> str:
        return f"NOT {self.child.describe()}"


def production_gate(branches: List[str], mode: str = "branch_or_parameter") -> Predicate:
    """Gate for the production stage.

    ``branch_or_parameter``: (branch match AND automatic event) OR deploy_environment == production.
    ``branch_only``: branch match alone.
    """
    branch = BranchMatch(tuple(branches))
    if mode == "branch_only":
        return branch
    if mode != "branch_or_parameter":
        raise ValueError(f"Unknown production gate mode: {mode}")
    return Or((And((branch, AUTOMATIC_EVENTS)), ParamEquals("deploy_environment", "production")))


def staging_gate(branches: List[str]) -> Predicate:
    """Gate for staging deploys: branch match OR deploy_environment == staging."""
    return Or((BranchMatch(tuple(branches)), ParamEquals("deploy_environment", "staging")))


def _as_list(value: Union[str, List[Any]]) -> List[Any]:
    return [value] if isinstance(value, (str, bool, int)) else list(value)


def predicate_from_config(spec: Any) -> Predicate:
    """Build a predicate tree from its YAML/JSON form."""
    if spec is None or spec is True:
        return Always()
    if spec is False:
        return Not(Always())
    if isinstance(spec, list):
        return And(tuple(predicate_from_config(item) for item in spec))
    if not isinstance(spec, dict):
        raise ValueError(f"Invalid predicate: {spec!r}")

    clauses: List[Predicate] = []
    for key, value in spec.items():
        if key == "branch":
            clauses.append(BranchMatch(tuple(str(p) for p in _as_list(value))))
        elif key == "param":
            if not isinstance(value, dict) or not value:
                raise ValueError("'param' expects a mapping of parameter names to values")
            clauses.extend(ParamEquals(name, expected) for name, expected in value.items())
        elif key == "event":
            try:
                events = tuple(TriggerKind(str(event)) for event in _as_list(value))
            except ValueError as e:
                raise ValueError(f"Unknown trigger event in {value!r}") from e
            clauses.append(EventIs(events))
        elif key == "automatic":
            clauses.append(AUTOMATIC_EVENTS if value else Not(AUTOMATIC_EVENTS))
        elif key == "tests_passed":
            clauses.append(TestsPassed() if value else Not(TestsPassed()))
        elif key == "stage_succeeded":
            clauses.append(StageSucceeded(str(value)))
        elif key == "allOf":
            clauses.append(And(tuple(predicate_from_config(item) for item in value)))
        elif key == "anyOf":
            clauses.append(Or(tuple(predicate_from_config(item) for item in value)))
        elif key == "not":
            clauses.append(Not(predicate_from_config(value)))
        else:
            raise ValueError(f"Unknown predicate key: {key}")

    if len(clauses) == 1:
        return clauses[0]
    return And(tuple(clauses))
