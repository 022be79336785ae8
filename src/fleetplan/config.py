"""
Configuration models for fleetplan.

Planner settings are loaded from the [fleet] section of a TOML file; the
fleet definition itself (services, edges, triggers, tokens) can be loaded
from its own TOML document with load_fleet_spec().
"""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import ConfigError
from .models import ServiceFleetSpec

logger = logging.getLogger(__name__)


# =============================================================================
# Sub-configuration Models
# =============================================================================


class CoordinatorSettings(BaseModel):
    """Redeploy coalescing and delivery."""

    coalesce_window: float = Field(default=30.0, gt=0, description="Seconds")
    max_coalesce_window: float = Field(default=120.0, gt=0, description="Seconds")
    ack_timeout: float = Field(default=10.0, gt=0)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base: float = Field(default=1.0, ge=0)
    backoff_max: float = Field(default=30.0, ge=0)

    @model_validator(mode="after")
    def _window_cap(self) -> CoordinatorSettings:
        if self.max_coalesce_window < self.coalesce_window:
            raise ValueError("max_coalesce_window must be >= coalesce_window")
        return self

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return float(min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max))


class CredentialSettings(BaseModel):
    """Key derivation. default_issuer fills TokenSpecs that name no issuer."""

    algorithm: str = "RS256"
    leeway_seconds: int = Field(default=30, ge=0)
    default_issuer: str = "fleet"


class ScalingSettings(BaseModel):
    """Autoscaling target applied to every service."""

    target_cpu_utilization: int = Field(default=50, ge=1, le=100)


class LoggingSettings(BaseModel):
    """Log output."""

    level: str = "INFO"
    directory: str | None = None


# =============================================================================
# Main Configuration Model
# =============================================================================


class PlannerSettings(BaseModel):
    """Complete fleetplan configuration."""

    environment: str = "staging"
    parallel: bool = False
    max_workers: int = Field(default=4, ge=1)

    coordinator: CoordinatorSettings = Field(default_factory=CoordinatorSettings)
    credentials: CredentialSettings = Field(default_factory=CredentialSettings)
    scaling: ScalingSettings = Field(default_factory=ScalingSettings)
    log: LoggingSettings = Field(default_factory=LoggingSettings)


# =============================================================================
# Configuration Loading
# =============================================================================


def _read_toml(toml_path: Path) -> dict[str, Any]:
    try:
        with open(toml_path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Cannot read TOML: {e}", str(toml_path)) from e


def load_settings(toml_path: Path) -> PlannerSettings:
    """
    Load planner settings from the [fleet] section of a TOML file.

    Args:
        toml_path: Path to the settings file

    Returns:
        PlannerSettings with values from file or defaults
    """
    if not toml_path.exists():
        logger.debug("No settings file at %s, using defaults", toml_path)
        return PlannerSettings()

    section = _read_toml(toml_path).get("fleet", {})
    if not section:
        return PlannerSettings()

    try:
        return PlannerSettings.model_validate(section)
    except ValidationError as e:
        raise ConfigError(f"Invalid [fleet] settings: {e}", str(toml_path)) from e


def load_fleet_spec(toml_path: Path) -> ServiceFleetSpec:
    """
    Load a fleet definition.

    The document holds top-level name/namespace keys plus [[services]],
    [[edges]], [[triggers]], [[tokens]], [external_secrets.*], [database] and
    [load_balancer] tables, mirroring ServiceFleetSpec.
    """
    if not toml_path.exists():
        raise ConfigError("Fleet definition not found", str(toml_path))

    data = _read_toml(toml_path)
    try:
        spec = ServiceFleetSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid fleet definition: {e}", str(toml_path)) from e

    logger.info(
        "Loaded fleet %s: %d services, %d edges, %d triggers",
        spec.name,
        len(spec.services),
        len(spec.edges),
        len(spec.triggers),
    )
    return spec
