import pytest
from pydantic import ValidationError

from dicflow.schemas import UserConfig

pytestmark = [pytest.mark.unit, pytest.mark.schemas]


class TestUnknownKeys:

    def test_unknown_key_is_fatal(self):
        with pytest.raises(ValidationError, match="Invalid parameter"):
            UserConfig.model_validate({"final_gama_threshold": 0.1})

    def test_error_lists_valid_parameters(self):
        with pytest.raises(ValidationError, match="optimization_method"):
            UserConfig.model_validate({"bogus": 1})

    def test_keys_are_case_insensitive(self):
        user = UserConfig.model_validate({"Optimization_Method": "Simplex"})
        assert user.optimization_method == "simplex"


class TestRotationFlags:

    def test_flag_sets_rotation_angle(self):
        user = UserConfig(rotate_def_image_270=True)
        assert user.def_image_rotation == 270
        assert user.to_internal_overrides()["images"] == {"def_rotation": 270}

    def test_last_flag_wins(self):
        user = UserConfig.model_validate({
            "rotate_ref_image_90": True,
            "rotate_ref_image_180": True,
        })
        assert user.ref_image_rotation == 180

    def test_false_flags_ignored(self):
        user = UserConfig(rotate_ref_image_90=True, rotate_ref_image_270=False)
        assert user.ref_image_rotation == 90

    def test_invalid_angle_rejected(self):
        with pytest.raises(ValidationError):
            UserConfig(ref_image_rotation=45)


class TestMethodNames:

    def test_unknown_method_rejected(self):
        with pytest.raises(ValidationError):
            UserConfig(initialization_method="use_magic")

    def test_log_level_upper_cased(self):
        assert UserConfig(log_level="debug").log_level == "DEBUG"

    def test_empty_user_config_has_no_overrides(self):
        assert UserConfig().to_internal_overrides() == {}
