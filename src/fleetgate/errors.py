# fleetgate/errors.py
from __future__ import annotations

from typing import List, Optional

# Exit status conveyed to the external trigger (CI or operator)
EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INPUT = 2
EXIT_RETRYABLE = 3


class FleetgateError(Exception):
    """Base class for every error raised by the controller."""
    retryable: bool = False
    exit_code: int = EXIT_FATAL


class InputError(FleetgateError):
    """Malformed topology or request. Raised before any resource mutation."""
    exit_code = EXIT_INPUT


class PolicyViolation(FleetgateError):
    """A security policy would break the single-entry-point invariant.

    Always fatal. The offending rules are kept in `violations` so the caller
    can print all of them at once.
    """
    exit_code = EXIT_INPUT

    def __init__(self, violations: List[str]):
        self.violations = list(violations)
        super().__init__("; ".join(self.violations) or "security policy violation")


class ObservationError(FleetgateError):
    """The state store (or the control plane) could not be read."""
    retryable = True
    exit_code = EXIT_RETRYABLE


class LockContention(FleetgateError):
    """Another operation holds the cluster lock."""
    retryable = True
    exit_code = EXIT_RETRYABLE

    def __init__(self, message: str, holder: Optional[str] = None):
        self.holder = holder
        super().__init__(message)


class ProvisioningError(FleetgateError):
    """A single provisioning action failed."""
    retryable = True
    exit_code = EXIT_RETRYABLE

    def __init__(self, message: str, action_key: Optional[str] = None):
        self.action_key = action_key
        super().__init__(message)


class DrainTimeout(FleetgateError):
    """A fleet member did not drain in time and was force-deprovisioned.

    Never raised out of an operation: it is recorded as a warning.
    """

    def __init__(self, member_id: str, remaining_assignments: Optional[int]):
        self.member_id = member_id
        self.remaining_assignments = remaining_assignments
        super().__init__(
            f"{member_id} force-deprovisioned after drain timeout "
            f"({remaining_assignments if remaining_assignments is not None else 'unknown'} assignments left)"
        )
