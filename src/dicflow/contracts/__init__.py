"""Engine contracts: fail-fast enforcement of stage invariants.

This package enforces semantic guarantees between engine stages.
Contracts fail immediately and loudly when a stage does not produce its
promised invariants (partitions, orderings, store shapes).

Key principle:
- Pydantic validates config correctness
- Contracts validate scheduling correctness
- The per-point pipeline handles correlation failures as data
"""

from dicflow.contracts.failure import ContractViolation, FailurePolicy
from dicflow.contracts.base import require
from dicflow.contracts.distribution import (
    assert_one_to_one,
    assert_replicated,
    assert_obstruction_order,
    assert_seed_order,
)
from dicflow.contracts.fields import assert_field_store_shape

__all__ = [
    "ContractViolation",
    "FailurePolicy",
    "require",
    "assert_one_to_one",
    "assert_replicated",
    "assert_obstruction_order",
    "assert_seed_order",
    "assert_field_store_shape",
]
