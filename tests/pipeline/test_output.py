from types import SimpleNamespace

import pandas as pd
import pytest

from dicflow.core.fields import FieldName, StatusFlag
from dicflow.pipeline.output import DEFAULT_OUTPUT_FIELDS, OutputSpec, ResultExporter
from dicflow.pipeline.post_processors import DisplacementMagnitude

pytestmark = [pytest.mark.unit, pytest.mark.pipeline]


class TestOutputSpec:

    def test_default_columns(self):
        spec = OutputSpec()
        assert spec.names == DEFAULT_OUTPUT_FIELDS
        assert len(spec) == len(DEFAULT_OUTPUT_FIELDS)

    def test_custom_columns_follow_index(self):
        spec = OutputSpec({"sigma": 1, "displacement_x": 0})
        assert spec.names == ["DISPLACEMENT_X", "SIGMA"]

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError, match="Unknown output field"):
            OutputSpec({"DISPLACEMENT_Z": 0})

    def test_gap_in_indices_rejected(self):
        with pytest.raises(ValueError, match="contiguous"):
            OutputSpec({"DISPLACEMENT_X": 0, "SIGMA": 2})

    def test_empty_spec_rejected(self):
        with pytest.raises(ValueError, match="at least one field"):
            OutputSpec({})

    def test_post_processor_fields_are_valid_columns(self, make_config, make_scheduler):
        scheduler = make_scheduler(make_config(post_processors=["displacement_magnitude"]))
        spec = OutputSpec({"DISPLACEMENT_MAGNITUDE": 0}, scheduler.post_processors)
        assert spec.names == ["DISPLACEMENT_MAGNITUDE"]

    def test_post_processor_field_needs_its_processor(self):
        with pytest.raises(ValueError, match="Unknown output field"):
            OutputSpec({"DISPLACEMENT_MAGNITUDE": 0})


class TestResultExporter:

    def test_frame_dataframe_reads_all_view(self, make_config, make_scheduler):
        scheduler = make_scheduler(make_config())
        scheduler.execute_correlation()

        df = ResultExporter(scheduler).frame_dataframe()

        assert list(df.columns) == DEFAULT_OUTPUT_FIELDS
        assert list(df.index) == [0, 1, 2, 3]
        assert df.index.name == "point_id"
        assert df.loc[2, "COORDINATE_X"] == pytest.approx(30.0)
        assert df.loc[2, "DISPLACEMENT_X"] == pytest.approx(1.0)
        assert df.loc[2, "DISPLACEMENT_Y"] == pytest.approx(-0.5)
        assert (df["STATUS_FLAG"] == int(StatusFlag.INITIALIZE_USING_PREVIOUS_FRAME_SUCCESSFUL)).all()
        assert df["STATUS_FLAG"].dtype.kind == "i"

    def test_post_processor_column(self, make_config, make_scheduler):
        config = make_config(post_processors=["displacement_magnitude"],
                             output_spec={"DISPLACEMENT_MAGNITUDE": 1, "DISPLACEMENT_X": 0})
        scheduler = make_scheduler(config)
        scheduler.execute_correlation()

        df = ResultExporter(scheduler).frame_dataframe()

        assert list(df.columns) == ["DISPLACEMENT_X", "DISPLACEMENT_MAGNITUDE"]
        assert df["DISPLACEMENT_MAGNITUDE"].tolist() == pytest.approx([1.25 ** 0.5] * 4)

    def test_frame_dataset_snapshot(self, make_config, make_scheduler):
        scheduler = make_scheduler(make_config(post_processors=["displacement_magnitude"]))
        scheduler.execute_correlation()

        ds = ResultExporter(scheduler).frame_dataset()

        assert ds.attrs["frame"] == 1
        assert list(ds["point_id"].values) == [0, 1, 2, 3]
        assert ds["DISPLACEMENT_Y"].values.tolist() == pytest.approx([-0.5] * 4)
        assert ds["DISPLACEMENT_MAGNITUDE"].values.tolist() == pytest.approx([1.25 ** 0.5] * 4)

    def test_write_frame_with_row_ids(self, make_config, make_scheduler, temp_dir):
        scheduler = make_scheduler(make_config(output_spec={"DISPLACEMENT_X": 0, "SIGMA": 1}))
        scheduler.execute_correlation()

        path = ResultExporter(scheduler).write_frame(temp_dir / "frame_0.txt")

        df = pd.read_csv(path, index_col=0)
        assert list(df.columns) == ["DISPLACEMENT_X", "SIGMA"]
        assert df["SIGMA"].tolist() == pytest.approx([0.02] * 4)

    def test_write_frame_tab_delimited_without_row_ids(self, make_config, make_scheduler, temp_dir):
        config = make_config(output_spec={"COORDINATE_X": 0, "COORDINATE_Y": 1},
                             output_delimiter="\t", omit_output_row_id=True)
        scheduler = make_scheduler(config)
        scheduler.execute_correlation()

        path = ResultExporter(scheduler).write_frame(temp_dir / "frame_0.txt")

        lines = path.read_text().splitlines()
        assert lines[0] == "COORDINATE_X\tCOORDINATE_Y"
        assert lines[1] == "10.0\t20.0"
        assert len(lines) == 5

    def test_non_writer_rank_exports_nothing(self, make_config, temp_dir):
        stub = SimpleNamespace(
            config=make_config(),
            comm=SimpleNamespace(rank=1),
            post_processors=[],
        )
        exporter = ResultExporter(stub)

        assert not exporter.is_writer
        assert exporter.frame_dataframe() is None
        assert exporter.frame_dataset() is None
        assert exporter.write_frame(temp_dir / "frame_0.txt") is None
        assert not (temp_dir / "frame_0.txt").exists()


def test_displacement_magnitude_registered(make_config, make_scheduler):
    scheduler = make_scheduler(make_config(post_processors=["displacement_magnitude"]))
    assert isinstance(scheduler.post_processors[0], DisplacementMagnitude)
    assert scheduler.post_processors[0].field_value(0, "DISPLACEMENT_MAGNITUDE") == 0.0
    assert scheduler.field_value(0, FieldName.COORDINATE_X) == pytest.approx(10.0)
