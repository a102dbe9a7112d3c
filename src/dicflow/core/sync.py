"""Scatter/gather of field values between the replicated and owned views.

- **scatter** (all -> owned): each rank copies the rows it owns out of its
  replicated all-view. The all-view is identical on every rank, so this is
  purely local.
- **gather** (owned -> all): every rank contributes its owned rows through
  one ``allgather``; every rank then writes every contribution into its
  all-view, leaving a fully replicated, consistent snapshot.

These are the only two synchronization points of a frame.
"""

import logging
from typing import List, Sequence, Tuple

import numpy as np

from dicflow.contracts import require
from dicflow.core.comm import Communicator
from dicflow.core.field_store import FieldStore

__all__ = ['FieldSynchronizer']

logger = logging.getLogger(__name__)


class FieldSynchronizer:
    """Moves rows between paired (all-view, owned-view) stores.

    Parameters
    ----------
    comm : Communicator
        Collective communicator of the run.
    pairs : sequence of (FieldStore, FieldStore)
        ``(all_store, dist_store)`` pairs synchronized together, e.g. the
        current-frame pair and the previous-frame pair.
    """

    def __init__(self, comm: Communicator, pairs: Sequence[Tuple[FieldStore, FieldStore]]):
        self.comm = comm
        self.pairs = list(pairs)
        for all_store, dist_store in self.pairs:
            require(
                all_store.values.shape[1] == dist_store.values.shape[1],
                "Sync contract violated: paired stores have different field counts"
            )

    def scatter(self) -> None:
        """All-view -> owned-view for every pair (local copy)."""
        for all_store, dist_store in self.pairs:
            dist_store.copy_rows_from(all_store)
        logger.debug("[RANK %d] scatter: %d owned rows", self.comm.rank,
                     len(self.pairs[0][1]) if self.pairs else 0)

    def gather(self) -> None:
        """Owned-view -> all-view on every rank (collective)."""
        payload: List[Tuple[np.ndarray, np.ndarray]] = [
            (dist_store.ids.copy(), dist_store.values.copy()) for _, dist_store in self.pairs
        ]
        contributions = self.comm.allgather(payload)
        require(
            len(contributions) == self.comm.size,
            f"Sync contract violated: gathered {len(contributions)} contributions from {self.comm.size} ranks"
        )
        for rank_payload in contributions:
            for (all_store, _), (ids, values) in zip(self.pairs, rank_payload):
                all_store.write_rows(ids, values)
        logger.debug("[RANK %d] gather: merged contributions of %d ranks", self.comm.rank, len(contributions))
