"""
Error types for fleet planning and redeploy coordination.
"""

from __future__ import annotations


class FleetError(Exception):
    """Base exception for all fleetplan errors."""

    def __init__(self, message: str, identifier: str | None = None):
        self.message = message
        self.identifier = identifier
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format error message with the offending identifier if available."""
        if self.identifier:
            return f"{self.message} [{self.identifier}]"
        return self.message


class ConfigError(FleetError):
    """
    Raised when a settings or fleet definition file cannot be loaded.

    Examples:
    - Malformed TOML
    - Fleet definition that fails model validation
    """

    pass


class PlanningError(FleetError):
    """
    Base for planning-time errors.

    Planning is all-or-nothing: any PlanningError aborts the whole pass and
    no partial plan is produced.
    """

    pass


class InvalidTopology(PlanningError):
    """
    Raised when the dependency graph cannot be turned into network rules.

    Examples:
    - A service that depends on itself
    - An edge referencing a service that is not declared
    - Two descriptors sharing a name
    """

    pass


class InvalidDuration(PlanningError):
    """Raised when a token lifetime is zero or negative."""

    pass


class InvalidScalingBounds(PlanningError):
    """Raised when instance bounds are negative or min exceeds max."""

    pass


class UnknownSizeTag(PlanningError):
    """Raised when a size tag is not part of the fixed enumeration."""

    pass


class UnknownSecretReference(PlanningError):
    """
    Raised when a service references a secret the fleet does not declare.

    A reference must name a derived token, the root verification key, or an
    external secret held by the secret store.
    """

    pass


class TokenVerificationError(FleetError):
    """Token failed signature, algorithm, or expiry checks."""

    def __init__(self, message: str, code: str = "invalid_token"):
        super().__init__(message)
        self.code = code
