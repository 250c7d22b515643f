"""Unit tests for clamir_params.py."""

from __future__ import annotations

import math
import sys

import pytest

from clamir_errors import CommandError
from clamir_errors import CommandFamily
from clamir_errors import OutOfBoundsError
from clamir_errors import StatusTag
from clamir_params import BIAS_VOLTAGE_RESOLUTION
from clamir_params import CATALOG
from clamir_params import GET_BASE
from clamir_params import ONE_SHOT_PARAMETERS
from clamir_params import SET_BASE
from clamir_params import AutoShutterConfig
from clamir_params import ControlMode
from clamir_params import ParamId
from clamir_params import RoiCoordinates
from clamir_params import ValueKind
from clamir_params import by_opcode
from clamir_params import lookup


ROI = CATALOG[ParamId.ROI_COORDINATES]
SHUTTER = CATALOG[ParamId.AUTO_SHUTTER_CONFIGURATION]


class TestCatalog:
    """Integrity of the static table."""

    def test_every_id_present(self):
        assert set(CATALOG) == set(ParamId)
        assert len(CATALOG) == 54

    def test_opcodes_unique(self):
        opcodes = [p.get_opcode for p in CATALOG.values() if p.get_opcode is not None]
        opcodes += [p.set_opcode for p in CATALOG.values() if p.set_opcode is not None]
        assert len(opcodes) == len(set(opcodes))

    def test_opcode_scheme(self):
        for p in CATALOG.values():
            if p.readable and p.writable:
                assert p.get_opcode & 0xFF == p.set_opcode & 0xFF
            if p.readable:
                assert p.get_opcode & 0xFF00 == GET_BASE
            if p.writable:
                assert p.set_opcode & 0xFF00 == SET_BASE

    def test_ki_opcodes(self):
        ki = CATALOG[ParamId.KI]
        assert ki.get_opcode == 0x0101
        assert ki.set_opcode == 0x0201

    def test_defaults_within_bounds(self):
        for p in CATALOG.values():
            if p.default is None or p.kind is ValueKind.MULTI:
                continue
            if p.minimum is not None:
                assert p.minimum <= p.default <= p.maximum, p.name

    def test_multi_defaults_valid(self):
        assert ROI.validate(ROI.default) == ROI.default
        assert SHUTTER.validate(SHUTTER.default) == SHUTTER.default

    def test_one_shot_set(self):
        assert ONE_SHOT_PARAMETERS == {
            ParamId.AUTO_CALIBRATE,
            ParamId.UPDATE_SET_POINT,
            ParamId.SAVE_EMBEDDED_CONFIGURATION,
        }
        for pid in ONE_SHOT_PARAMETERS:
            p = CATALOG[pid]
            assert p.kind is ValueKind.TRIGGER
            assert p.writable and not p.readable
            assert p.payload_size == 0

    def test_access(self):
        assert not CATALOG[ParamId.DIGITAL_OUT1].readable
        assert not CATALOG[ParamId.SHUTTER_POSITION].readable
        assert not CATALOG[ParamId.DIGITAL_IN3].writable
        assert not CATALOG[ParamId.SERIAL_NUMBER].writable
        assert not CATALOG[ParamId.EMBEDDED_SW_VERSION].writable

    def test_payload_sizes(self):
        assert CATALOG[ParamId.KI].payload_size == 2
        assert CATALOG[ParamId.TRACK_DURATION].payload_size == 4
        assert CATALOG[ParamId.ENABLE_ROI].payload_size == 4
        assert CATALOG[ParamId.SERIAL_NUMBER].payload_size == 7
        assert ROI.payload_size == 8
        assert SHUTTER.payload_size == 16

    def test_families(self):
        assert ROI.family is CommandFamily.ROI
        assert SHUTTER.family is CommandFamily.AUTO_SHUTTER
        assert CATALOG[ParamId.KI].family is CommandFamily.GENERIC

    def test_catalog_read_only(self):
        with pytest.raises(TypeError):
            CATALOG[ParamId.KI] = CATALOG[ParamId.KP]


class TestLookup:
    def test_by_id_and_name(self):
        ki = CATALOG[ParamId.KI]
        assert lookup(ParamId.KI) is ki
        assert lookup("ki") is ki
        assert lookup("KI") is ki
        assert lookup(ki) is ki

    def test_unknown(self):
        with pytest.raises(KeyError):
            lookup("not_a_parameter")

    def test_by_opcode(self):
        p, is_set = by_opcode(0x0213)
        assert p is ROI
        assert is_set
        p, is_set = by_opcode(0x0101)
        assert p.id is ParamId.KI
        assert not is_set

    def test_by_opcode_unknown(self):
        with pytest.raises(KeyError):
            by_opcode(0x010A)  # auto_calibrate has no get


class TestScalarValidation:
    """Bounds checks on single-valued parameters."""

    @pytest.mark.parametrize(
        "pid",
        [p.id for p in CATALOG.values() if p.writable and p.kind is ValueKind.INT16],
    )
    def test_int_edges(self, pid):
        p = CATALOG[pid]
        assert p.validate(p.minimum) == p.minimum
        assert p.validate(p.maximum) == p.maximum
        with pytest.raises(OutOfBoundsError):
            p.validate(p.minimum - 1)
        with pytest.raises(OutOfBoundsError):
            p.validate(p.maximum + 1)

    def test_ki_bounds_error(self):
        with pytest.raises(OutOfBoundsError) as info:
            CATALOG[ParamId.KI].validate(30001)
        assert info.value.minimum == 0
        assert info.value.maximum == 30000

    def test_int_rejects_float(self):
        with pytest.raises(TypeError):
            CATALOG[ParamId.KI].validate(1.5)

    def test_int_enum_accepted(self):
        assert CATALOG[ParamId.MODE].validate(ControlMode.TRACKS) == 1

    def test_bool(self):
        p = CATALOG[ParamId.ENABLE_ALARM]
        assert p.validate(True) is True
        assert p.validate(0) is False
        with pytest.raises(OutOfBoundsError):
            p.validate(2)

    def test_float_edges(self):
        p = CATALOG[ParamId.TRACK_DURATION]
        assert p.validate(0.1) == pytest.approx(0.1)
        assert p.validate(1000) == 1000.0
        with pytest.raises(OutOfBoundsError):
            p.validate(0.09)
        with pytest.raises(OutOfBoundsError):
            p.validate(1000.5)

    def test_float_nan_rejected(self):
        with pytest.raises(OutOfBoundsError):
            CATALOG[ParamId.ALARM_MAX].validate(math.nan)

    def test_float_rejects_bool(self):
        with pytest.raises(TypeError):
            CATALOG[ParamId.ALARM_MAX].validate(True)

    def test_quantize(self):
        assert CATALOG[ParamId.PIXEL_TO_MM_RATIO].validate(0.0154) == pytest.approx(0.015)
        assert CATALOG[ParamId.ALARM_MIN].validate(1.234) == pytest.approx(1.23)
        bias = CATALOG[ParamId.BIAS_VOLTAGE].validate(2.00003)
        assert (bias / BIAS_VOLTAGE_RESOLUTION).is_integer()

    def test_unchecked_passes_through(self):
        p = CATALOG[ParamId.KI]
        assert p.validate(30001, check=False) == 30001
        assert CATALOG[ParamId.ENABLE_ROI].validate(2, check=False) == 2
        assert CATALOG[ParamId.TRACK_DURATION].validate(-5.0, check=False) == -5.0

    def test_trigger_takes_no_value(self):
        p = CATALOG[ParamId.AUTO_CALIBRATE]
        assert p.validate(None) is None
        with pytest.raises(TypeError):
            p.validate(1)


class TestRoiValidation:
    """ROI ordering is checked before individual bounds."""

    def test_valid(self):
        assert ROI.validate((1, 1, 63, 63)) == RoiCoordinates(1, 1, 63, 63)
        assert ROI.validate(RoiCoordinates(10, 20, 11, 21)) == (10, 20, 11, 21)

    @pytest.mark.parametrize(
        "coords",
        [(30, 10, 30, 40), (40, 10, 30, 40), (10, 40, 30, 40), (10, 50, 30, 40)],
    )
    def test_ordering(self, coords):
        with pytest.raises(CommandError) as info:
            ROI.validate(coords)
        assert info.value.tag is StatusTag.INVALID_ORDERING

    def test_ordering_wins_over_bounds(self):
        # x1 out of range and x1 >= x2: ordering is reported
        with pytest.raises(CommandError) as info:
            ROI.validate((70, 10, 63, 40))
        assert info.value.tag is StatusTag.INVALID_ORDERING

    @pytest.mark.parametrize(
        "coords,field",
        [
            ((0, 10, 30, 40), "x1"),
            ((10, 0, 30, 40), "y1"),
            ((10, 10, 64, 40), "x2"),
            ((10, 10, 30, 64), "y2"),
        ],
    )
    def test_field_bounds(self, coords, field):
        with pytest.raises(OutOfBoundsError) as info:
            ROI.validate(coords)
        assert info.value.field == field

    def test_wrong_arity(self):
        with pytest.raises(TypeError):
            ROI.validate((1, 2, 3))


class TestAutoShutterValidation:
    def test_valid(self):
        value = SHUTTER.validate((1, 0, 0, 1))
        assert value == AutoShutterConfig(True, False, False, True)
        assert isinstance(value.timer, bool)

    @pytest.mark.parametrize("drift,timer", [(0, 0), (1, 1)])
    def test_mode_conflict(self, drift, timer):
        with pytest.raises(CommandError) as info:
            SHUTTER.validate((1, 1, drift, timer))
        assert info.value.tag is StatusTag.MODE_CONFLICT

    def test_flag_bounds(self):
        with pytest.raises(OutOfBoundsError) as info:
            SHUTTER.validate((2, 0, 1, 0))
        assert info.value.field == "enabled"

    def test_decode_fields(self):
        assert SHUTTER.decode_fields((0, 1, 1, 0)) == AutoShutterConfig(False, True, True, False)


def _run_tests(test_file: str) -> None:
    """Run pytest on this file."""
    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )


if __name__ == "__main__":
    _run_tests(__file__)
