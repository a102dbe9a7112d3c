"""Centralized failure policy for contract violations.

Contracts fail fast, loud, and once. All violations raise the same
exception type, allowing the caller to handle engine bugs uniformly.
"""

from enum import Enum


class FailurePolicy(str, Enum):
    """Failure policy for contract violations.

    FAIL_FAST (default): Raise immediately on contract violation

    Per-point correlation failures are never contract violations; they are
    recorded as status flags and the frame continues.
    """
    FAIL_FAST = "fail_fast"


class ContractViolation(RuntimeError):
    """Raised when an engine contract is violated.

    This indicates a bug in scheduling logic, not bad user input or a point
    that failed to correlate. It means a stage did not produce the
    invariants it promised (e.g. an owned map that is not a partition).

    Key distinction:
    - ValueError: User/config error (handled by Pydantic or setup checks)
    - ContractViolation: Engine bug (programmer error)
    - Exception: Per-point failures inside the objective (caught by the pipeline)
    """
    pass
