"""Field store contracts.

Enforces the guarantee that a store created for a map holds every id of
that map, with the full field set.
"""

from typing import Sequence, TYPE_CHECKING

from dicflow.contracts.base import require

if TYPE_CHECKING:
    from dicflow.core.field_store import FieldStore


def assert_field_store_shape(store: "FieldStore", ids: Sequence[int], num_fields: int) -> None:
    """Store rows match ``ids`` in order and each row has ``num_fields`` columns."""
    require(
        store.values.shape == (len(ids), num_fields),
        f"Field store contract violated: shape {store.values.shape}, expected {(len(ids), num_fields)}"
    )
    require(
        list(store.ids) == list(ids),
        "Field store contract violated: row ids differ from the map's local ids"
    )
