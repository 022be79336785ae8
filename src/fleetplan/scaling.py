"""
Scaling profile mapping.

Resolves symbolic task sizes into Fargate CPU units / memory and validates
per-service instance bounds.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from .errors import InvalidScalingBounds, UnknownSizeTag
from .models import ServiceDescriptor


class SizeTag(StrEnum):
    """Task sizes, smallest first. Declaration order is the size order."""

    MICRO = "micro"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    XLARGE = "xlarge"
    XXLARGE = "2xlarge"
    XXXXLARGE = "4xlarge"

    @property
    def rank(self) -> int:
        return list(SizeTag).index(self)


@dataclass(frozen=True)
class TaskSize:
    """Concrete compute allocation."""

    cpu_units: int
    memory_mb: int


TASK_SIZES: dict[SizeTag, TaskSize] = {
    SizeTag.MICRO: TaskSize(256, 1024),
    SizeTag.SMALL: TaskSize(512, 1024),
    SizeTag.MEDIUM: TaskSize(1024, 2048),
    SizeTag.LARGE: TaskSize(2048, 4096),
    SizeTag.XLARGE: TaskSize(4096, 8192),
    SizeTag.XXLARGE: TaskSize(8192, 16384),
    SizeTag.XXXXLARGE: TaskSize(16384, 32768),
}


def parse_size_tag(tag: str | SizeTag) -> SizeTag:
    """Parse a tag string, raising UnknownSizeTag for anything off the list."""
    try:
        return SizeTag(tag)
    except ValueError:
        raise UnknownSizeTag("Unknown size tag", str(tag)) from None


def resolve(tag: str | SizeTag) -> TaskSize:
    """Resolve a size tag to CPU units and memory."""
    return TASK_SIZES[parse_size_tag(tag)]


def validate_bounds(service: str, min_instances: int, max_instances: int) -> None:
    """
    Check instance bounds.

    max_instances == 0 is the legal "disabled" state.
    """
    if min_instances < 0 or max_instances < 0:
        raise InvalidScalingBounds(
            f"Instance counts must be non-negative (min={min_instances}, max={max_instances})",
            service,
        )
    if min_instances > max_instances:
        raise InvalidScalingBounds(
            f"min_instances {min_instances} exceeds max_instances {max_instances}", service
        )


@dataclass(frozen=True)
class ScalingProfile:
    """Resolved compute allocation and autoscaling bounds for one service."""

    size: SizeTag
    cpu_units: int
    memory_mb: int
    min_instances: int
    max_instances: int
    target_cpu_utilization: int = 50

    @property
    def disabled(self) -> bool:
        return self.max_instances == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size.value,
            "cpu_units": self.cpu_units,
            "memory_mb": self.memory_mb,
            "min_instances": self.min_instances,
            "max_instances": self.max_instances,
            "target_cpu_utilization": self.target_cpu_utilization,
            "disabled": self.disabled,
        }


def profile_for(descriptor: ServiceDescriptor, target_cpu_utilization: int = 50) -> ScalingProfile:
    """Resolve and validate the scaling profile of a service."""
    tag = parse_size_tag(descriptor.size)
    validate_bounds(descriptor.name, descriptor.min_instances, descriptor.max_instances)
    task = TASK_SIZES[tag]
    return ScalingProfile(
        size=tag,
        cpu_units=task.cpu_units,
        memory_mb=task.memory_mb,
        min_instances=descriptor.min_instances,
        max_instances=descriptor.max_instances,
        target_cpu_utilization=target_cpu_utilization,
    )
