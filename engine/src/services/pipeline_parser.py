"""
Pipeline YAML parser and validator.

Turns a stored pipeline configuration into the ordered step definitions a
build executes. Accepts either a bare list of steps or a mapping with a
``steps`` key:

    name: Backend
    env:
      CI: "true"
    steps:
      - name: Install
        command: pip install -e .
      - name: Test
        commands:
          - ruff check .
          - pytest
        timeout: 900
"""

import yaml
from typing import List, Dict, Any, Optional, Union

from engine.src.exceptions import ConfigError
from engine.src.models.build import ResolvedPipeline, StepDefinition

PipelineConfig = Union[str, Dict[str, Any], List[Any], None]

def resolve(config: PipelineConfig) -> List[StepDefinition]:
    """Resolve a pipeline configuration into ordered step definitions."""
    return resolve_pipeline(config).steps

def resolve_pipeline(config: PipelineConfig) -> ResolvedPipeline:
    """Parse and validate a pipeline configuration (YAML text or parsed data)."""
    if isinstance(config, str):
        try:
            config = yaml.safe_load(config)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}")

    if not config:
        raise ConfigError("Empty pipeline configuration")

    if isinstance(config, list):
        config = {"steps": config}

    if not isinstance(config, dict):
        raise ConfigError("Pipeline configuration must be a mapping or a list of steps")

    return validate_config(config)

def validate_config(config: Dict[str, Any]) -> ResolvedPipeline:
    """Validate pipeline configuration structure."""
    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise ConfigError("Pipeline 'name' must be a string")

    if "steps" not in config:
        raise ConfigError("Pipeline must have 'steps' defined")

    steps = config["steps"]
    if not isinstance(steps, list):
        raise ConfigError("Pipeline 'steps' must be a list")

    if len(steps) == 0:
        raise ConfigError("Pipeline must have at least one step")

    env = validate_env(config.get("env"), "Pipeline")
    concurrency = validate_positive_int(config.get("concurrency"), "Pipeline 'concurrency'")

    validated_steps = [
        validate_step(step, i, env)
        for i, step in enumerate(steps)
    ]

    return ResolvedPipeline(
        name=name,
        steps=validated_steps,
        env=env,
        concurrency=concurrency,
    )

def validate_step(step: Any, index: int, pipeline_env: Dict[str, str]) -> StepDefinition:
    """Validate a single pipeline step."""
    if not isinstance(step, dict):
        raise ConfigError(f"Step {index} must be a dictionary")

    name = step.get("name", f"step-{index}")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"Step {index} 'name' must be a non-empty string")

    command = build_command(step, index)

    env = dict(pipeline_env)
    env.update(validate_env(step.get("env"), f"Step {index}"))

    return StepDefinition(
        name=name,
        command=command,
        ordinal=index,
        env=env,
        timeout=validate_positive_int(step.get("timeout"), f"Step {index} 'timeout'"),
    )

def build_command(step: Dict[str, Any], index: int) -> str:
    """Return the shell command of a step; ``commands`` run in sequence with &&."""
    if "command" in step and "commands" in step:
        raise ConfigError(f"Step {index} must define only one of 'command' or 'commands'")

    if "commands" in step:
        commands = step["commands"]
        if not isinstance(commands, list) or not commands:
            raise ConfigError(f"Step {index} 'commands' must be a non-empty list")
        for j, cmd in enumerate(commands):
            if not isinstance(cmd, str) or not cmd.strip():
                raise ConfigError(f"Step {index} command {j} must be a non-empty string")
        return " && ".join(cmd.strip() for cmd in commands)

    if "command" not in step:
        raise ConfigError(f"Step {index} missing 'command'")

    command = step["command"]
    if not isinstance(command, str) or not command.strip():
        raise ConfigError(f"Step {index} 'command' must be a non-empty string")
    return command.strip()

def validate_env(env: Any, owner: str) -> Dict[str, str]:
    if env is None:
        return {}
    if not isinstance(env, dict):
        raise ConfigError(f"{owner} 'env' must be a mapping")

    validated = {}
    for key, value in env.items():
        if not isinstance(key, str):
            raise ConfigError(f"{owner} env keys must be strings")
        if isinstance(value, bool):
            value = "true" if value else "false"
        if not isinstance(value, (str, int, float)):
            raise ConfigError(f"{owner} env '{key}' must be a scalar")
        validated[key] = str(value)
    return validated

def validate_positive_int(value: Any, label: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{label} must be a positive integer")
    return value
