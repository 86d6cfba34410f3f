"""Engine configuration loaded from ``.flowengine/config.yaml``.

Example::

    engine:
      max_iterations: 500
      run_timeout_seconds: 30
      remote_retry:
        max_attempts: 3
        initial_delay: 0.5
"""

from pathlib import Path

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field

from flowengine.core.errors import ValidationError
from flowengine.core.resilience import RetrySettings

CONFIG_DIR = ".flowengine"
CONFIG_FILE = "config.yaml"


class EngineConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_iterations: int = Field(default=1000, gt=0)
    run_timeout_seconds: float | None = Field(default=None, gt=0)
    remote_retry: RetrySettings = Field(default_factory=RetrySettings)


def load_engine_config(path: Path) -> EngineConfig:
    """Load an EngineConfig from a YAML file.

    The settings may sit at the top level or under an ``engine:`` key.
    """
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ValidationError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in config file {path}: {e}") from e

    if raw is None:
        return EngineConfig()
    if not isinstance(raw, dict):
        raise ValidationError(f"Config file {path} must contain a mapping")
    if isinstance(raw.get("engine"), dict):
        raw = raw["engine"]

    try:
        return EngineConfig.model_validate(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid config file {path}: {e}") from e


def load_project_config(root: Path) -> EngineConfig:
    """Load ``<root>/.flowengine/config.yaml``, or defaults when it is absent."""
    config_path = Path(root) / CONFIG_DIR / CONFIG_FILE
    if not config_path.exists():
        return EngineConfig()
    return load_engine_config(config_path)
