"""Tests for gating predicates."""

import pytest

from stagegate.core.interfaces import PipelineRun, StageResult, StageRole, StageStatus, TriggerKind
from stagegate.core.predicates import (
    Always, And, BranchMatch, EventIs, Not, Or, ParamEquals, StageSucceeded, TestsPassed,
    predicate_from_config, production_gate, staging_gate
)


def make_run(branch="main", event=TriggerKind.PUSH, **parameters):
    return PipelineRun(build_number=1, commit="abc1234def", branch=branch, event=event, parameters=parameters)


class TestPredicates:
    """Test individual predicate nodes."""

    def test_branch_match_exact_and_glob(self):
        predicate = BranchMatch(("main", "release/*"))

        assert predicate.evaluate(make_run("main"))
        assert predicate.evaluate(make_run("release/2.1"))
        assert not predicate.evaluate(make_run("develop"))
        assert not predicate.evaluate(make_run("mainline"))

    def test_param_equals(self):
        predicate = ParamEquals("deploy_environment", "staging")

        assert predicate.evaluate(make_run(deploy_environment="staging"))
        assert not predicate.evaluate(make_run())

    def test_event_is(self):
        predicate = EventIs((TriggerKind.PUSH, TriggerKind.SCHEDULE))

        assert predicate.evaluate(make_run(event=TriggerKind.SCHEDULE))
        assert not predicate.evaluate(make_run(event=TriggerKind.MANUAL))

    def test_tests_passed(self):
        run = make_run()
        assert TestsPassed().evaluate(run)

        run.results.append(StageResult("Test", StageStatus.SKIPPED, role=StageRole.TEST))
        assert TestsPassed().evaluate(run)

        run.results.append(StageResult("Lint", StageStatus.FAILED, role=StageRole.LINT))
        assert TestsPassed().evaluate(run)

        run.results.append(StageResult("Integration", StageStatus.FAILED, role=StageRole.TEST))
        assert not TestsPassed().evaluate(run)

    def test_stage_succeeded(self):
        run = make_run()
        run.results.append(StageResult("Push", StageStatus.SKIPPED, role=StageRole.PUSH))

        assert not StageSucceeded("Push").evaluate(run)
        assert StageSucceeded("Push", allow_skipped=True).evaluate(run)
        assert not StageSucceeded("Build").evaluate(run)

    def test_combinators(self):
        run = make_run("develop")
        true, false = Always(), Not(Always())

        assert And((true, true)).evaluate(run)
        assert not And((true, false)).evaluate(run)
        assert Or((false, true)).evaluate(run)
        assert not Or((false, false)).evaluate(run)
        assert (true & ~false).evaluate(run)
        assert not (false | false).evaluate(run)

    def test_describe(self):
        predicate = Or((BranchMatch(("develop",)), ParamEquals("deploy_environment", "staging")))
        assert predicate.describe() == "(branch in {develop} OR deploy_environment == 'staging')"


class TestProductionGate:
    """Test the production promotion gate."""

    def setup_method(self):
        self.gate = production_gate(["main", "master"])

    def test_main_push_is_promoted(self):
        assert self.gate.evaluate(make_run("main"))
        assert self.gate.evaluate(make_run("master", event=TriggerKind.SCHEDULE))

    def test_manual_run_on_main_requires_parameter(self):
        assert not self.gate.evaluate(make_run("main", event=TriggerKind.MANUAL))
        assert self.gate.evaluate(make_run("main", event=TriggerKind.MANUAL, deploy_environment="production"))

    def test_parameter_promotes_any_branch(self):
        assert self.gate.evaluate(make_run("feature/x", event=TriggerKind.MANUAL,
                                           deploy_environment="production"))
        assert not self.gate.evaluate(make_run("feature/x", deploy_environment="staging"))

    def test_branch_only_mode(self):
        gate = production_gate(["main"], mode="branch_only")

        assert gate.evaluate(make_run("main", event=TriggerKind.MANUAL))
        assert not gate.evaluate(make_run("feature/x", deploy_environment="production"))

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            production_gate(["main"], mode="whenever")


class TestStagingGate:
    """Test the default staging gate."""

    def test_staging_branches_or_parameter(self):
        gate = staging_gate(["develop", "release/*"])

        assert gate.evaluate(make_run("develop"))
        assert gate.evaluate(make_run("release/1.4", event=TriggerKind.MANUAL))
        assert gate.evaluate(make_run("feature/x", deploy_environment="staging"))
        assert not gate.evaluate(make_run("main"))


class TestPredicateFromConfig:
    """Test building predicates from configuration."""

    def test_none_and_booleans(self):
        run = make_run()
        assert predicate_from_config(None).evaluate(run)
        assert predicate_from_config(True).evaluate(run)
        assert not predicate_from_config(False).evaluate(run)

    def test_branch_string_or_list(self):
        assert predicate_from_config({"branch": "develop"}).evaluate(make_run("develop"))
        assert predicate_from_config({"branch": ["main", "develop"]}).evaluate(make_run("main"))

    def test_multiple_keys_are_conjunctive(self):
        predicate = predicate_from_config({"branch": "main", "event": "push"})

        assert predicate.evaluate(make_run("main"))
        assert not predicate.evaluate(make_run("main", event=TriggerKind.MANUAL))

    def test_nested_tree(self):
        predicate = predicate_from_config({
            "anyOf": [
                {"allOf": [{"branch": ["main", "master"]}, {"automatic": True}]},
                {"param": {"deploy_environment": "production"}},
            ]
        })

        assert predicate.evaluate(make_run("main"))
        assert not predicate.evaluate(make_run("develop"))
        assert predicate.evaluate(make_run("develop", event=TriggerKind.MANUAL, deploy_environment="production"))

    def test_not_and_tests_passed(self):
        skip = predicate_from_config({"not": {"param": {"skip_tests": True}}})
        assert skip.evaluate(make_run())
        assert not skip.evaluate(make_run(skip_tests=True))

        assert isinstance(predicate_from_config({"tests_passed": True}), TestsPassed)

    def test_list_is_conjunction(self):
        predicate = predicate_from_config([{"branch": "main"}, {"param": {"skip_tests": False}}])
        assert isinstance(predicate, And)
        assert predicate.evaluate(make_run("main"))

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown predicate key"):
            predicate_from_config({"weekday": "friday"})

    def test_unknown_event(self):
        with pytest.raises(ValueError, match="Unknown trigger event"):
            predicate_from_config({"event": "tag"})

    def test_invalid_param(self):
        with pytest.raises(ValueError):
            predicate_from_config({"param": "skip_tests"})
