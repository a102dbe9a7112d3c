"""Base contract enforcement utilities.

The require() function is the single enforcement mechanism for all contracts.
"""

from dicflow.contracts.failure import ContractViolation


def require(condition: bool, message: str) -> None:
    """Enforce an engine contract.

    Called at stage boundaries to verify the preceding stage produced the
    guaranteed invariants. It is fail-fast: no recovery, no fallback.

    Parameters
    ----------
    condition : bool
        The invariant that must be true. If False, ContractViolation is raised.

    message : str
        Error message explaining the contract violation (for debugging).

    Raises
    ------
    ContractViolation
        If condition is False.

    Examples
    --------
    >>> require(owned.is_one_to_one(), "Distribution contract: owned map overlaps")
    """
    if not condition:
        raise ContractViolation(message)
