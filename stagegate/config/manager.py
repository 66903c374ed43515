"""Configuration manager with validation, loading and pipeline assembly."""

import os
import yaml
import json
import logging
from typing import Dict, Any, List
from pathlib import Path
import re

from pydantic import ValidationError as PydanticValidationError
from .schema import PipelineConfig, StageConfig, StageRoleName, ValidationResult, ValidationError
from ..core.interfaces import (
    ApprovalGateSpec,
    FailurePolicy,
    StageDefinition,
    StageRole,
    StepSpec,
)
from ..core.predicates import predicate_from_config, production_gate, staging_gate
from ..execution.runner import SubprocessRunner
from ..notifications import NotificationManager, sink_registry


class ConfigManager:
    """Manages pipeline configuration loading, validation, and variable substitution."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)
        self._config_cache: Dict[str, PipelineConfig] = {}

    def load_config(self, config_path: str, validate: bool = True) -> PipelineConfig:
        """
        Load and validate configuration from file.

        Args:
            config_path: Path to configuration file (YAML or JSON)
            validate: Whether to run custom validations and collect warnings

        Returns:
            PipelineConfig: Validated configuration object

        Raises:
            ValidationError: If configuration is invalid
            FileNotFoundError: If config file doesn't exist
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        cache_key = str(config_path.absolute())
        if cache_key in self._config_cache:
            self.logger.debug(f"Using cached configuration for {config_path}")
            return self._config_cache[cache_key]

        try:
            raw_config = self._load_raw_config(config_path)
            resolved_config = self.resolve_variables(raw_config)

            if validate:
                validation_result = self.validate_schema(resolved_config)
                if not validation_result.valid:
                    raise ValidationError(
                        f"Configuration validation failed: {'; '.join(validation_result.errors)}",
                        validation_result.errors
                    )
                for warning in validation_result.warnings:
                    self.logger.warning(warning)
                config = validation_result.config
            else:
                config = PipelineConfig(**resolved_config)

            self._config_cache[cache_key] = config

            self.logger.info(f"Successfully loaded configuration from {config_path}")
            return config

        except Exception as e:
            self.logger.error(f"Failed to load configuration from {config_path}: {str(e)}")
            raise

    def _load_raw_config(self, config_path: Path) -> Dict[str, Any]:
        """Load raw configuration from file."""
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                if config_path.suffix.lower() in ['.yaml', '.yml']:
                    data = yaml.safe_load(f)
                elif config_path.suffix.lower() == '.json':
                    data = json.load(f)
                else:
                    raise ValueError(f"Unsupported configuration file format: {config_path.suffix}")
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML syntax: {str(e)}")
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON syntax: {str(e)}")

        if not isinstance(data, dict):
            raise ValidationError("Configuration root must be a mapping")
        return data

    def validate_schema(self, config: Dict[str, Any]) -> ValidationResult:
        """
        Validate configuration against schema.

        Args:
            config: Raw configuration dictionary

        Returns:
            ValidationResult: Validation result with errors and warnings
        """
        errors = []
        warnings = []

        try:
            pipeline_config = PipelineConfig(**config)
            warnings.extend(self._perform_custom_validations(pipeline_config))

            return ValidationResult(valid=True, errors=errors, warnings=warnings, config=pipeline_config)

        except PydanticValidationError as e:
            for error in e.errors():
                field_path = " -> ".join(str(loc) for loc in error['loc'])
                error_msg = f"{field_path}: {error['msg']}" if field_path else error['msg']
                errors.append(error_msg)

            return ValidationResult(valid=False, errors=errors, warnings=warnings, config=None)
        except (TypeError, ValueError) as e:
            errors.append(f"Unexpected validation error: {str(e)}")
            return ValidationResult(valid=False, errors=errors, warnings=warnings, config=None)

    def _perform_custom_validations(self, config: PipelineConfig) -> List[str]:
        """Perform additional custom validations and return warnings."""
        warnings = []

        roles = [stage.role for stage in config.stages]
        if StageRoleName.TEST in roles:
            for stage in config.stages:
                if stage.role == StageRoleName.TEST and stage.when is None:
                    warnings.append(f"Test stage '{stage.name}' is not gated; skip_tests will have no effect.")

        if StageRoleName.PRODUCTION in roles and StageRoleName.CLEANUP not in roles:
            warnings.append("Production deployment configured without a cleanup stage.")

        for stage in config.stages:
            if stage.role in (StageRoleName.DEPLOY, StageRoleName.PRODUCTION) and not stage.environment:
                warnings.append(f"Deploy stage '{stage.name}' has no environment; concurrent deploys are not serialized.")
            if not stage.steps and stage.role != StageRoleName.PRODUCTION:
                warnings.append(f"Stage '{stage.name}' has no steps.")

        if all(sink.type.value == "log" for sink in config.notifications.sinks.values()):
            warnings.append("Only log notifications configured.")

        return warnings

    def resolve_variables(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Resolve environment variables in configuration.

        The ``stages`` section is left untouched: its ``${VAR}`` placeholders
        refer to run context variables resolved when each step executes.
        """
        def resolve_value(value):
            if isinstance(value, str):
                return self._substitute_variables(value)
            elif isinstance(value, dict):
                return {k: resolve_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [resolve_value(item) for item in value]
            else:
                return value

        return {key: (value if key == "stages" else resolve_value(value)) for key, value in config.items()}

    def _substitute_variables(self, value: str) -> str:
        """
        Substitute environment variables in string values.

        Supports:
        - ${VAR_NAME} or ${VAR_NAME:default_value}
        - $VAR_NAME
        """
        pattern1 = re.compile(r'\$\{([^}:]+)(?::([^}]*))?\}')

        def replace_match(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.environ.get(var_name, default_value)

        result = pattern1.sub(replace_match, value)

        pattern2 = re.compile(r'\$([A-Za-z_][A-Za-z0-9_]*)')

        def replace_simple(match):
            var_name = match.group(1)
            return os.environ.get(var_name, f"${var_name}")

        return pattern2.sub(replace_simple, result)

    def save_config(self, config: PipelineConfig, output_path: str, format: str = "yaml") -> None:
        """
        Save configuration to file.

        Args:
            config: Configuration to save
            output_path: Output file path
            format: Output format ('yaml' or 'json')
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = config.model_dump(mode='json', exclude_none=True)

        try:
            with open(output_path, 'w', encoding='utf-8') as f:
                if format.lower() == 'yaml':
                    yaml.dump(config_dict, f, default_flow_style=False, indent=2, sort_keys=False)
                elif format.lower() == 'json':
                    json.dump(config_dict, f, indent=2)
                else:
                    raise ValueError(f"Unsupported format: {format}")

            self.logger.info(f"Configuration saved to {output_path}")

        except Exception as e:
            self.logger.error(f"Failed to save configuration to {output_path}: {str(e)}")
            raise

    def clear_cache(self) -> None:
        """Clear the configuration cache."""
        self._config_cache.clear()
        self.logger.debug("Configuration cache cleared")

    def build_definitions(self, config: PipelineConfig) -> List[StageDefinition]:
        """Turn configured stages into ordered stage definitions."""
        return [self.create_stage_from_config(stage, config) for stage in config.stages]

    def create_stage_from_config(self, stage: StageConfig, config: PipelineConfig) -> StageDefinition:
        """Create a stage definition, filling in the production or staging gate when none is configured."""
        role = StageRole(stage.role.value)

        if stage.when is not None:
            when = predicate_from_config(stage.when)
        elif role is StageRole.PRODUCTION:
            when = production_gate(config.pipeline.production_branches, config.pipeline.production_gate)
        elif role is StageRole.DEPLOY and stage.environment == "staging":
            when = staging_gate(config.pipeline.staging_branches)
        else:
            when = None

        approval = None
        if stage.approval is not None:
            approval = ApprovalGateSpec(**stage.approval.model_dump())

        steps = [
            StepSpec(
                name=step.name,
                command=step.command,
                cwd=step.cwd or config.runner.working_directory,
                timeout=step.timeout,
                env=dict(step.env),
                capture=step.capture,
            )
            for step in stage.steps
        ]

        return StageDefinition(
            name=stage.name,
            steps=steps,
            when=when,
            parallel=stage.parallel,
            failure_policy=FailurePolicy(stage.failure_policy.value),
            role=role,
            always_run=stage.always_run,
            environment=stage.environment,
            approval=approval,
        )

    def build_runner(self, config: PipelineConfig) -> SubprocessRunner:
        return SubprocessRunner(
            default_timeout=config.runner.default_timeout,
            retries=config.runner.retries,
            retry_delay=config.runner.retry_delay,
        )

    def build_notifier(self, config: PipelineConfig) -> NotificationManager:
        """Create the notification manager and its sinks."""
        sinks = {}
        for name, sink in config.notifications.sinks.items():
            options = {**sink.options, "enabled": sink.enabled}
            sinks[name] = sink_registry.create_component(sink.type.value, name, options)

        return NotificationManager(
            sinks=sinks,
            events=config.notifications.events,
            history_file=config.notifications.history_file,
            source=config.pipeline.name,
        )

    def get_default_config(self) -> Dict[str, Any]:
        """Get the default container build and promotion pipeline."""
        return {
            "pipeline": {
                "name": "patient-survey-service",
                "description": "Build, test and promote the patient survey service image",
                "image_repository": "${DOCKER_REGISTRY:registry.example.com}/patient-survey-service",
                "logs_url_template": "${CI_URL:https://ci.example.com}/job/{branch}/{build_number}/console",
                "production_branches": ["main", "master"],
                "staging_branches": ["develop"],
                "production_gate": "branch_or_parameter",
            },
            "runner": {
                "default_timeout": 600,
                "retries": 0,
                "retry_delay": 5,
                "max_workers": 4,
            },
            "stages": [
                {
                    "name": "Checkout",
                    "role": "checkout",
                    "steps": [
                        {"name": "commit-message", "command": "git log -1 --pretty=%B", "capture": "COMMIT_MESSAGE"},
                    ],
                },
                {
                    "name": "Lint",
                    "role": "lint",
                    "failure_policy": "mark-unstable",
                    "parallel": True,
                    "steps": [
                        {"name": "eslint", "command": "npm run lint"},
                        {"name": "sql-lint", "command": "npx sql-lint schema"},
                    ],
                },
                {
                    "name": "Test",
                    "role": "test",
                    "when": {"param": {"skip_tests": False}},
                    "parallel": True,
                    "steps": [
                        {"name": "unit-tests", "command": "npm test -- --ci", "timeout": 900},
                        {"name": "integration-tests", "command": "npm run test:integration", "timeout": 1200},
                    ],
                },
                {
                    "name": "Build",
                    "role": "build",
                    "when": {"tests_passed": True},
                    "steps": [
                        {
                            "name": "docker-build",
                            "command": "docker build ${BUILD_CACHE_FLAG} -t ${IMAGE} .",
                            "timeout": 1800,
                        },
                    ],
                },
                {
                    "name": "Push",
                    "role": "push",
                    "when": {
                        "anyOf": [
                            {"branch": ["main", "master", "develop"]},
                            {"not": {"param": {"deploy_environment": "none"}}},
                        ]
                    },
                    "steps": [
                        {"name": "docker-push", "command": "docker push ${IMAGE}", "timeout": 900},
                    ],
                },
                {
                    "name": "Deploy to Staging",
                    "role": "deploy",
                    "environment": "staging",
                    "steps": [
                        {
                            "name": "ssh-deploy",
                            "command": "ssh ${STAGING_HOST} 'docker pull ${IMAGE} && docker compose up -d'",
                        },
                        {
                            "name": "health-check",
                            "command": "curl -fsS --retry 5 --retry-delay 5 ${STAGING_URL}/health",
                            "timeout": 120,
                        },
                    ],
                },
                {
                    "name": "Deploy to Production",
                    "role": "production",
                    "environment": "production",
                    "approval": {
                        "prompt": "Deploy to production?",
                        "ok_label": "Deploy",
                        "submitter_parameter": "deployer",
                        "timeout": 1800,
                    },
                    "steps": [
                        {
                            "name": "backup",
                            "command": "[ \"${BACKUP_BEFORE_DEPLOY}\" != true ] || "
                                       "ssh ${PRODUCTION_HOST} 'sqlite3 patient_data.db .dump > backup-${IMAGE_TAG}.sql'",
                        },
                        {
                            "name": "ssh-deploy",
                            "command": "ssh ${PRODUCTION_HOST} "
                                       "'./deploy.sh ${IMAGE} --strategy ${DEPLOYMENT_STRATEGY}'",
                            "timeout": 1800,
                        },
                        {
                            "name": "health-check",
                            "command": "curl -fsS --retry 5 --retry-delay 10 ${PRODUCTION_URL}/health",
                            "timeout": 300,
                        },
                    ],
                },
                {
                    "name": "Cleanup",
                    "role": "cleanup",
                    "always_run": True,
                    "failure_policy": "continue",
                    "steps": [
                        {"name": "remove-image", "command": "docker rmi ${IMAGE} || true"},
                        {"name": "prune", "command": "docker system prune -f"},
                    ],
                },
            ],
            "notifications": {
                "sinks": {
                    "log": {"type": "log"},
                },
            },
            "logging": {
                "level": "INFO",
            },
        }
