"""Per-point scalar field storage.

A FieldStore holds one row per point id (in a map's local order) and one
column per FieldName. The scheduler keeps a replicated store over the all
map and, in distributed runs, a store over the ids the rank owns. Each view
exists twice: the current frame and the previous frame (``nm1``).
"""

import logging
from typing import Dict, Iterable, Optional, Sequence

import numpy as np
import pandas as pd
import xarray as xr

from dicflow.contracts import require
from dicflow.core.fields import (
    DEFORMATION_FIELDS,
    FieldName,
    NUM_FIELDS,
    new_deformation,
)

__all__ = ['FieldStore']

logger = logging.getLogger(__name__)


class FieldStore:
    """Dense float64 table of fields for an ordered set of point ids.

    Parameters
    ----------
    ids : sequence of int
        Point ids, in the order rows are laid out.
    num_fields : int, optional
        Number of columns (defaults to the full FieldName set).

    Notes
    -----
    ``revision`` is bumped by every bulk write (scatter, gather, copy) so
    callers can tell whether a view changed between two reads.
    """

    def __init__(self, ids: Sequence[int], num_fields: int = NUM_FIELDS):
        self.ids = np.asarray(list(ids), dtype=np.int64)
        self.values = np.zeros((len(self.ids), num_fields), dtype=np.float64)
        self._lid: Dict[int, int] = {int(gid): lid for lid, gid in enumerate(self.ids)}
        require(
            len(self._lid) == len(self.ids),
            "Field store contract violated: duplicate ids in store layout"
        )
        self.revision = 0

    def __len__(self) -> int:
        return len(self.ids)

    def __contains__(self, gid: int) -> bool:
        return int(gid) in self._lid

    def local_id(self, gid: int) -> int:
        """Row of ``gid``, or -1 if this store does not hold it."""
        return self._lid.get(int(gid), -1)

    def rows(self, gids: Iterable[int]) -> np.ndarray:
        """Row indices for ``gids``; every id must be held."""
        gids = list(gids)
        lids = np.fromiter((self._lid.get(int(g), -1) for g in gids), dtype=np.int64, count=len(gids))
        require(
            bool(np.all(lids >= 0)),
            f"Field store contract violated: ids {[g for g, l in zip(gids, lids) if l < 0][:10]} not held"
        )
        return lids

    def _row(self, gid: int) -> int:
        lid = self._lid.get(int(gid), -1)
        if lid < 0:
            raise KeyError(f"Point {gid} is not held by this field store")
        return lid

    def get(self, gid: int, name: FieldName) -> float:
        return float(self.values[self._row(gid), int(name)])

    def set(self, gid: int, name: FieldName, value: float) -> None:
        self.values[self._row(gid), int(name)] = value

    def add(self, gid: int, name: FieldName, value: float) -> None:
        self.values[self._row(gid), int(name)] += value

    def deformation(self, gid: int) -> np.ndarray:
        """Current deformation vector of ``gid`` (a copy)."""
        out = new_deformation()
        row = self._row(gid)
        for i, name in enumerate(DEFORMATION_FIELDS):
            out[i] = self.values[row, int(name)]
        return out

    def set_deformation(self, gid: int, deformation: np.ndarray) -> None:
        row = self._row(gid)
        for i, name in enumerate(DEFORMATION_FIELDS):
            self.values[row, int(name)] = deformation[i]

    def column(self, name: FieldName) -> np.ndarray:
        return self.values[:, int(name)]

    def copy_rows_from(self, other: "FieldStore", gids: Optional[Iterable[int]] = None) -> None:
        """Overwrite rows for ``gids`` (default: all of this store's ids) from ``other``."""
        gids = list(self.ids) if gids is None else list(gids)
        if not gids:
            return
        self.values[self.rows(gids)] = other.values[other.rows(gids)]
        self.revision += 1

    def write_rows(self, gids: Sequence[int], values: np.ndarray) -> None:
        """Bulk write of full rows, e.g. values received in a gather."""
        if len(gids) == 0:
            return
        self.values[self.rows(gids)] = values
        self.revision += 1

    def to_dataframe(self) -> pd.DataFrame:
        """One row per point id, one column per field, indexed by point id."""
        df = pd.DataFrame(self.values, columns=[f.name for f in FieldName][:self.values.shape[1]])
        df.index = pd.Index(self.ids, name="point_id")
        return df.sort_index()

    def to_dataset(self, frame: Optional[int] = None) -> xr.Dataset:
        """xarray snapshot with a ``point_id`` dimension and one variable per field."""
        order = np.argsort(self.ids)
        data_vars = {
            f.name: (("point_id",), self.values[order, int(f)].copy())
            for f in FieldName if int(f) < self.values.shape[1]
        }
        attrs = {"revision": self.revision}
        if frame is not None:
            attrs["frame"] = frame
        return xr.Dataset(data_vars, coords={"point_id": self.ids[order]}, attrs=attrs)

    def __repr__(self) -> str:
        return f"FieldStore(n={len(self.ids)}, fields={self.values.shape[1]}, revision={self.revision})"
