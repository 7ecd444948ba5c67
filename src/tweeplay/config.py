"""Engine configuration loading."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path  # noqa: TC003 - used at runtime
from typing import Any, Literal, cast

from ruamel.yaml import YAML

from tweeplay.story.builder import DEFAULT_START

ENV_PREFIX = "TWEEPLAY_"

BusyPolicy = Literal["queue", "reject"]
DanglingPolicy = Literal["show", "hide"]

_BUSY_POLICIES = ("queue", "reject")
_DANGLING_POLICIES = ("show", "hide")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class EngineConfig:
    """Runtime behavior of the story engine.

    Every field can be overridden by an environment variable named
    ``TWEEPLAY_<FIELD>`` (e.g. ``TWEEPLAY_IDLE_TIMEOUT=900``).

    Attributes:
        idle_timeout: Seconds of inactivity after which a session is evicted.
            None disables automatic eviction.
        sweep_interval: Minimum seconds between two automatic eviction sweeps.
        busy_policy: ``queue`` waits for a concurrent request on the same
            session to finish; ``reject`` raises SessionBusy instead.
        dangling_choices: ``show`` renders choices with missing targets as
            dangling; ``hide`` leaves them out of the view.
        end_sessions_at_endings: Drop a session once it reaches a passage
            without choices, so the next request starts over.
        link_template: Format string used in place of link markup in
            rendered text. Receives ``label``.
        default_start: Start passage name used when a story declares none.
    """

    idle_timeout: float | None = None
    sweep_interval: float = 60.0
    busy_policy: BusyPolicy = "queue"
    dangling_choices: DanglingPolicy = "show"
    end_sessions_at_endings: bool = True
    link_template: str = "{label}"
    default_start: str = DEFAULT_START

    def __post_init__(self) -> None:
        if self.idle_timeout is not None and self.idle_timeout <= 0:
            raise ValueError("idle_timeout must be positive")
        if self.sweep_interval < 0:
            raise ValueError("sweep_interval must not be negative")
        if self.busy_policy not in _BUSY_POLICIES:
            raise ValueError(f"busy_policy must be one of {', '.join(_BUSY_POLICIES)}")
        if self.dangling_choices not in _DANGLING_POLICIES:
            raise ValueError(
                f"dangling_choices must be one of {', '.join(_DANGLING_POLICIES)}"
            )
        if "{label}" not in self.link_template:
            raise ValueError("link_template must contain '{label}'")
        if not self.default_start:
            raise ValueError("default_start must not be empty")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """Create config from a dictionary, applying environment overrides.

        Args:
            data: Mapping with any of the EngineConfig field names.

        Returns:
            EngineConfig instance.

        Raises:
            ValueError: If a value has the wrong type or is out of range.
        """
        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise ValueError(f"unknown setting(s): {', '.join(sorted(unknown))}")

        idle_timeout = _env_or(data, "idle_timeout")
        return cls(
            idle_timeout=None if idle_timeout in (None, "") else _as_float(idle_timeout),
            sweep_interval=_as_float(_env_or(data, "sweep_interval", 60.0)),
            busy_policy=cast("BusyPolicy", str(_env_or(data, "busy_policy", "queue"))),
            dangling_choices=cast(
                "DanglingPolicy", str(_env_or(data, "dangling_choices", "show"))
            ),
            end_sessions_at_endings=_as_bool(_env_or(data, "end_sessions_at_endings", True)),
            link_template=str(_env_or(data, "link_template", "{label}")),
            default_start=str(_env_or(data, "default_start", DEFAULT_START)),
        )


def _env_or(data: dict[str, Any], key: str, default: Any = None) -> Any:
    """Environment variable first, then the config value, then *default*."""
    env_value = os.getenv(f"{ENV_PREFIX}{key.upper()}")
    if env_value is not None:
        return env_value
    return data.get(key, default)


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"expected a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"expected a number, got {value!r}") from e


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


class EngineConfigError(Exception):
    """Raised when engine configuration cannot be loaded."""

    def __init__(self, path: Path | None, reason: str) -> None:
        self.path = path
        self.reason = reason
        where = str(path) if path is not None else "environment"
        super().__init__(f"Failed to load engine config from {where}: {reason}")


def load_engine_config(config_path: Path | None = None) -> EngineConfig:
    """Load engine configuration from a YAML file and the environment.

    Args:
        config_path: YAML file with EngineConfig fields at the top level.
            When None, only defaults and environment variables are used.

    Returns:
        EngineConfig instance.

    Raises:
        EngineConfigError: If the file is missing or a value is invalid.
    """
    data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise EngineConfigError(config_path, "File not found")

        yaml = YAML(typ="safe")
        try:
            with config_path.open("r", encoding="utf-8") as f:
                loaded = yaml.load(f)
        except Exception as e:
            raise EngineConfigError(config_path, str(e)) from e

        if loaded is not None:
            if not isinstance(loaded, dict):
                raise EngineConfigError(config_path, "Top level must be a mapping")
            data = dict(loaded)

    try:
        return EngineConfig.from_dict(data)
    except ValueError as e:
        raise EngineConfigError(config_path, str(e)) from e
