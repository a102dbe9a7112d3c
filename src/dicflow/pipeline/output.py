"""Result export from the replicated field view.

The output spec names the columns written for each point; the exporter
builds one pandas DataFrame per frame and writes it as delimited text,
or hands out an xarray snapshot of the whole all-view.
Only rank 0 exports, since every rank holds the same all-view after the
gather.
"""

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

import pandas as pd
import xarray as xr

from dicflow.core.fields import FieldName, field_name_from_string

if TYPE_CHECKING:
    from dicflow.pipeline.post_processors import PostProcessor
    from dicflow.pipeline.scheduler import CorrelationScheduler

__all__ = ['OutputSpec', 'ResultExporter', 'DEFAULT_OUTPUT_FIELDS']

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_FIELDS = [
    FieldName.COORDINATE_X.name,
    FieldName.COORDINATE_Y.name,
    FieldName.DISPLACEMENT_X.name,
    FieldName.DISPLACEMENT_Y.name,
    FieldName.ROTATION_Z.name,
    FieldName.NORMAL_STRAIN_X.name,
    FieldName.NORMAL_STRAIN_Y.name,
    FieldName.SHEAR_STRAIN_XY.name,
    FieldName.SIGMA.name,
    FieldName.STATUS_FLAG.name,
]


class OutputSpec:
    """Ordered list of exported field names.

    Parameters
    ----------
    fields : dict, optional
        Field name -> column index. Indices must be unique and contiguous
        from 0. None selects :data:`DEFAULT_OUTPUT_FIELDS`.
    post_processors : sequence of PostProcessor, optional
        Their field names are valid column names too.

    Raises
    ------
    ValueError
        For unknown names or a malformed index list.
    """

    def __init__(self, fields: Optional[Dict[str, int]] = None,
                 post_processors: Sequence["PostProcessor"] = ()):
        # upper-case column name -> (processor, field name as the processor declares it)
        self._sources: Dict[str, Tuple["PostProcessor", str]] = {}
        for pp in post_processors:
            for name in pp.field_names:
                self._sources[name.upper()] = (pp, name)

        if fields is None:
            self.names: List[str] = list(DEFAULT_OUTPUT_FIELDS)
            return

        if not fields:
            raise ValueError("Output spec must name at least one field")
        indices = sorted(fields.values())
        if indices != list(range(len(fields))):
            raise ValueError(f"Output field indices must be unique and contiguous from 0, got {fields}")

        names = [None] * len(fields)
        for name, index in fields.items():
            key = name.strip().upper()
            if key not in FieldName.__members__ and key not in self._sources:
                raise ValueError(
                    f"Unknown output field {name!r}. Valid fields: "
                    f"{sorted(list(FieldName.__members__) + list(self._sources))}"
                )
            names[index] = key
        self.names = names

    def value(self, scheduler: "CorrelationScheduler", point_id: int, name: str) -> float:
        if name in self._sources:
            pp, field = self._sources[name]
            return pp.field_value(point_id, field)
        return scheduler.field_value(point_id, field_name_from_string(name))

    def __len__(self) -> int:
        return len(self.names)

    def __repr__(self) -> str:
        return f"OutputSpec({self.names})"


class ResultExporter:
    """Writes one row per point and frame from rank 0's all-view.

    Parameters
    ----------
    scheduler : CorrelationScheduler
        Initialized engine.
    spec : OutputSpec, optional
        Columns to export; built from the configuration when omitted.
    """

    def __init__(self, scheduler: "CorrelationScheduler", spec: Optional[OutputSpec] = None):
        self.scheduler = scheduler
        cfg = scheduler.config.output
        self.spec = spec if spec is not None else OutputSpec(cfg.fields, scheduler.post_processors)
        self.delimiter = cfg.delimiter
        self.omit_row_id = cfg.omit_row_id

    @property
    def is_writer(self) -> bool:
        return self.scheduler.comm.rank == 0

    def frame_dataframe(self) -> Optional[pd.DataFrame]:
        """Current frame as a DataFrame indexed by point id (None off rank 0)."""
        if not self.is_writer:
            return None
        scheduler = self.scheduler
        ids = range(scheduler.num_points)
        data = {
            name: [self.spec.value(scheduler, gid, name) for gid in ids]
            for name in self.spec.names
        }
        df = pd.DataFrame(data, index=pd.Index(list(ids), name="point_id"))
        if FieldName.STATUS_FLAG.name in df.columns:
            df[FieldName.STATUS_FLAG.name] = df[FieldName.STATUS_FLAG.name].astype(int)
        return df

    def frame_dataset(self) -> Optional[xr.Dataset]:
        """xarray snapshot of every field of the all-view (None off rank 0).

        Post-processor fields are added as extra variables on the
        ``point_id`` dimension.
        """
        if not self.is_writer:
            return None
        scheduler = self.scheduler
        ds = scheduler.all_fields.to_dataset(frame=scheduler.frame)
        for pp in scheduler.post_processors:
            for name, values in pp.values.items():
                ds[name] = (("point_id",), values.copy())
        return ds

    def write_frame(self, path) -> Optional[Path]:
        """Write the current frame to ``path``; returns the path (None off rank 0)."""
        df = self.frame_dataframe()
        if df is None:
            return None
        path = Path(path)
        df.to_csv(path, sep=self.delimiter, index=not self.omit_row_id)
        logger.info("Results written: %s (%d points, %d frames completed)",
                    path, len(df), self.scheduler.frame)
        return path
