# extension_config.py
"""
Adaptive extension configuration.

Values are layered, lowest priority first:
1. model defaults (the reference deployment)
2. resources/config_sandbox_extension.yaml, section `adaptive_extension`
3. SANDBOX_* environment variables
4. explicit overrides passed by the host

Every layer is validated by the pydantic models below.
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from sandbox_keeper.errors import ExtensionConfigError
from sandbox_keeper.utils.config_loader import deep_merge, load_config_section
from sandbox_keeper.utils.logging_config import get_logger
from sandbox_keeper.utils.path_utils import get_resources_dir

logger = get_logger(__name__)

CONFIG_FILE_NAME = "config_sandbox_extension.yaml"


class ActivityType(str, Enum):
    """Activity types that feed the extension decision."""
    USER_INTERACTION = "user_interaction"
    PREVIEW_ACCESS = "preview_access"


class SessionHeat(str, Enum):
    """Discrete session heat derived from activity scores."""
    HOT = "hot"
    WARM = "warm"
    COOL = "cool"
    COLD = "cold"


class ActivityWeights(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_interaction: float = Field(1.0, ge=0)
    preview_access: float = Field(0.8, ge=0)

    def weight_for(self, activity_type: Union[ActivityType, str]) -> float:
        return getattr(self, ActivityType(activity_type).value)


class TimeWindows(BaseModel):
    """Scoring windows in ms; the medium window also bounds the activity log."""
    model_config = ConfigDict(extra="forbid")

    recent: int = Field(60_000, ge=1000)
    short: int = Field(300_000, ge=1000)
    medium: int = Field(900_000, ge=1000)

    @model_validator(mode="after")
    def _check_ascending(self) -> "TimeWindows":
        if not (self.recent < self.short < self.medium):
            raise ValueError(
                f"time windows must be ascending (recent={self.recent}, short={self.short}, medium={self.medium})"
            )
        return self


class HeatThreshold(BaseModel):
    model_config = ConfigDict(extra="forbid")

    recent: float = Field(..., ge=0)
    short: float = Field(..., ge=0)
    medium: float = Field(..., ge=0)


class HeatThresholds(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hot: HeatThreshold = Field(default_factory=lambda: HeatThreshold(recent=6, short=12, medium=20))
    warm: HeatThreshold = Field(default_factory=lambda: HeatThreshold(recent=3, short=6, medium=10))
    cool: HeatThreshold = Field(default_factory=lambda: HeatThreshold(recent=1.5, short=3, medium=5))


class ExtensionDurations(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hot: int = Field(10 * 60 * 1000, ge=0)
    warm: int = Field(7 * 60 * 1000, ge=0)
    cool: int = Field(3 * 60 * 1000, ge=0)
    cold: int = Field(0, ge=0)

    def for_heat(self, heat: SessionHeat) -> int:
        return getattr(self, SessionHeat(heat).value)


class MaxExtensions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hot: int = Field(3, ge=0)    # 3 HOT = 30 min
    warm: int = Field(4, ge=0)   # 4 WARM = 28 min
    cool: int = Field(11, ge=0)  # 11 COOL = 33 min

    def for_heat(self, heat: SessionHeat) -> int:
        heat = SessionHeat(heat)
        if heat is SessionHeat.COLD:
            return 0
        return getattr(self, heat.value)


class StreakMultiplier(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min: float = Field(1.0, ge=0)
    max: float = Field(1.2, ge=0)
    increment: float = Field(0.05, ge=0)


class AdaptiveExtensionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    activity_weights: ActivityWeights = Field(default_factory=ActivityWeights)
    time_windows: TimeWindows = Field(default_factory=TimeWindows)
    heat_thresholds: HeatThresholds = Field(default_factory=HeatThresholds)
    extension_durations: ExtensionDurations = Field(default_factory=ExtensionDurations)
    max_extensions: MaxExtensions = Field(default_factory=MaxExtensions)

    min_extend_interval: int = Field(60_000, ge=0)
    # Extend only once remaining time is at or below this
    extension_trigger_threshold: int = Field(4 * 60 * 1000, ge=0)
    initial_timeout: int = Field(10 * 60 * 1000, ge=0)
    max_session_lifetime: int = Field(45 * 60 * 1000, ge=0)

    backoff_multiplier: float = Field(1.5, ge=1)
    streak_multiplier: StreakMultiplier = Field(default_factory=StreakMultiplier)


DEFAULT_CONFIG = AdaptiveExtensionConfig()

# env var -> (section, key); key None means a top-level field
ENV_OVERRIDES = {
    "SANDBOX_EXTENSION_HOT_DURATION": ("extension_durations", "hot"),
    "SANDBOX_EXTENSION_WARM_DURATION": ("extension_durations", "warm"),
    "SANDBOX_EXTENSION_COOL_DURATION": ("extension_durations", "cool"),
    "SANDBOX_EXTENSION_MAX_HOT": ("max_extensions", "hot"),
    "SANDBOX_EXTENSION_MAX_WARM": ("max_extensions", "warm"),
    "SANDBOX_EXTENSION_MAX_COOL": ("max_extensions", "cool"),
    "SANDBOX_SESSION_MAX_LIFETIME": ("max_session_lifetime", None),
    "SANDBOX_INITIAL_TIMEOUT": ("initial_timeout", None),
}


def default_config_path() -> Path:
    return get_resources_dir() / CONFIG_FILE_NAME


def read_yaml_layer(section: str, config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Read one section of the YAML config file.

    An explicit config_path must exist; the default file is optional.
    """
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ExtensionConfigError(f"Config file not found: {path}")
    else:
        path = default_config_path()
        if not path.exists():
            logger.debug(f"No config file at {path}, using defaults for '{section}'")
            return {}

    try:
        return load_config_section(str(path), section)
    except Exception as e:
        raise ExtensionConfigError(f"Could not read {path}: {e}") from e


def _env_layer() -> Dict[str, Any]:
    layer: Dict[str, Any] = {}
    for env_name, (section, key) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if not raw:
            continue
        try:
            value = int(raw)
        except ValueError as e:
            raise ExtensionConfigError(f"{env_name} must be an integer, got {raw!r}") from e

        if key is None:
            layer[section] = value
        else:
            layer.setdefault(section, {})[key] = value
    return layer


def load_extension_config(
    overrides: Optional[Dict[str, Any]] = None,
    config_path: Optional[Union[str, Path]] = None,
) -> AdaptiveExtensionConfig:
    """Build a validated AdaptiveExtensionConfig from defaults < YAML < env < overrides."""
    merged: Dict[str, Any] = {}
    merged = deep_merge(merged, read_yaml_layer("adaptive_extension", config_path))
    merged = deep_merge(merged, _env_layer())
    merged = deep_merge(merged, overrides or {})

    try:
        config = AdaptiveExtensionConfig.model_validate(merged)
    except ValidationError as e:
        raise ExtensionConfigError(f"Invalid adaptive extension config: {e}") from e

    logger.debug(f"Adaptive extension config loaded: {config.model_dump()}")
    return config
