"""
Unit tests for scaling profile mapping.
"""

from __future__ import annotations

import pytest

from fleetplan.errors import InvalidScalingBounds, UnknownSizeTag
from fleetplan.models import ServiceDescriptor
from fleetplan.scaling import TASK_SIZES, SizeTag, TaskSize, profile_for, resolve, validate_bounds


class TestResolve:
    """Tests for size tag resolution."""

    def test_known_sizes(self) -> None:
        """Each tag maps to its fixed allocation."""
        assert resolve("micro") == TaskSize(256, 1024)
        assert resolve("small") == TaskSize(512, 1024)
        assert resolve("medium") == TaskSize(1024, 2048)
        assert resolve("large") == TaskSize(2048, 4096)
        assert resolve("xlarge") == TaskSize(4096, 8192)
        assert resolve("2xlarge") == TaskSize(8192, 16384)
        assert resolve("4xlarge") == TaskSize(16384, 32768)

    def test_monotonic(self) -> None:
        """Larger tags never get less CPU or memory."""
        ordered = sorted(SizeTag, key=lambda tag: tag.rank)
        for smaller, larger in zip(ordered, ordered[1:]):
            assert TASK_SIZES[smaller].cpu_units <= TASK_SIZES[larger].cpu_units
            assert TASK_SIZES[smaller].memory_mb <= TASK_SIZES[larger].memory_mb

    def test_every_tag_has_a_size(self) -> None:
        """The table covers the whole enumeration."""
        assert set(TASK_SIZES) == set(SizeTag)

    @pytest.mark.parametrize("tag", ["huge", "MEDIUM", "", "3xlarge"])
    def test_unknown_tag(self, tag) -> None:
        """Tags off the list raise UnknownSizeTag."""
        with pytest.raises(UnknownSizeTag):
            resolve(tag)


class TestBounds:
    """Tests for instance bound validation."""

    def test_valid(self) -> None:
        """Ordinary bounds pass."""
        validate_bounds("svc", 1, 20)
        validate_bounds("svc", 1, 1)

    def test_disabled_is_legal(self) -> None:
        """max_instances == 0 is the disabled state."""
        validate_bounds("svc", 0, 0)

    def test_min_exceeds_max(self) -> None:
        """min above max is rejected."""
        with pytest.raises(InvalidScalingBounds) as exc_info:
            validate_bounds("svc", 3, 2)

        assert exc_info.value.identifier == "svc"

    def test_negative(self) -> None:
        """Negative counts are rejected."""
        with pytest.raises(InvalidScalingBounds):
            validate_bounds("svc", -1, 2)


class TestProfileFor:
    """Tests for descriptor -> ScalingProfile."""

    def test_default_profile(self) -> None:
        """Descriptors default to medium, 1..20."""
        profile = profile_for(ServiceDescriptor(name="rest", port=3000))

        assert profile.size is SizeTag.MEDIUM
        assert (profile.cpu_units, profile.memory_mb) == (1024, 2048)
        assert (profile.min_instances, profile.max_instances) == (1, 20)
        assert profile.target_cpu_utilization == 50
        assert not profile.disabled

    def test_disabled_service(self) -> None:
        """A service with max 0 maps to a disabled profile."""
        profile = profile_for(
            ServiceDescriptor(name="graphql", port=5000, min_instances=0, max_instances=0)
        )

        assert profile.disabled
        assert profile.to_dict()["disabled"] is True

    def test_pinned_service(self) -> None:
        """min == max pins the count."""
        profile = profile_for(
            ServiceDescriptor(name="realtime", port=4000, size="large", min_instances=1, max_instances=1)
        )

        assert profile.size is SizeTag.LARGE
        assert profile.min_instances == profile.max_instances == 1

    def test_unknown_size_on_descriptor(self) -> None:
        """The descriptor's tag is validated."""
        with pytest.raises(UnknownSizeTag, match="gigantic"):
            profile_for(ServiceDescriptor(name="rest", port=3000, size="gigantic"))
