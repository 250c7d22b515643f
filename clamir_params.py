"""CLAMIR parameter catalog.

Static table of every control parameter exposed by the device: wire opcodes,
value kind, documented bounds and factory defaults. The table is built once at
import and is read-only; `CommandChannel` uses it to size payloads and to run
optional bounds checks before transmitting.

Opcodes follow one scheme: a parameter with index ``n`` is read with
``0x0100 | n`` and written with ``0x0200 | n``. Bounds and defaults are the
ones documented by the vendor for each command.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any, Callable, Mapping, NamedTuple

import dataclasses
import math
import numbers
import operator
import struct

from clamir_errors import CommandError
from clamir_errors import CommandFamily
from clamir_errors import OutOfBoundsError
from clamir_errors import StatusTag


GET_BASE = 0x0100
SET_BASE = 0x0200

SERIAL_NUMBER_LEN = 7  # characters
BIAS_VOLTAGE_RESOLUTION = 2.0**-14  # volts


class ValueKind(str, Enum):
    """How a parameter's value is carried on the wire."""

    INT16 = "int16"  # <h
    FLOAT = "float"  # <f, optionally quantized
    BOOL = "bool"  # <i, 0 or 1
    MULTI = "multi"  # several fields in fixed order
    TRIGGER = "trigger"  # set-only, no payload
    TEXT = "text"  # fixed-width ASCII


class ControlMode(IntEnum):
    """Values of the MODE parameter."""

    CONTINUOUS = 0
    TRACKS = 1
    MANUAL = 2


class RoiRounding(IntEnum):
    """Values of the ROUND_ROI parameter."""

    NONE = 0
    MIN = 1
    MEDIUM = 2
    MAX = 3


class RoiCoordinates(NamedTuple):
    """Lowest and highest pixel coordinates of the region of interest."""

    x1: int
    y1: int
    x2: int
    y2: int


class AutoShutterConfig(NamedTuple):
    """Auto shutter flags; exactly one of temperature_drift/timer is set."""

    enabled: bool
    enabled_in_process: bool
    temperature_drift: bool
    timer: bool


class ParamId(str, Enum):
    """Identifier of a catalog parameter."""

    KI = "ki"
    KP = "kp"
    KD = "kd"
    MAX_POWER = "max_power"
    MIN_POWER = "min_power"
    THRESHOLD = "threshold"
    THRESHOLD_TO_START_TRACKS = "threshold_to_start_tracks"
    THRESHOLD_TO_END_TRACKS = "threshold_to_end_tracks"
    MANUAL_POWER = "manual_power"
    AUTO_CALIBRATE = "auto_calibrate"
    MODE = "mode"
    REFERENCE_TRACK_START = "reference_track_start"
    REFERENCE_TRACK_END = "reference_track_end"
    TRACK_DURATION = "track_duration"
    MANUAL_REFERENCE_WIDTH = "manual_reference_width"
    UPDATE_SET_POINT = "update_set_point"
    ROUND_ROI = "round_roi"
    ENABLE_ROI = "enable_roi"
    ROI_COORDINATES = "roi_coordinates"
    POWER_LIMIT_MAX = "power_limit_max"
    POWER_LIMIT_MIN = "power_limit_min"
    PIXEL_TO_MM_RATIO = "pixel_to_mm_ratio"
    END_OF_PROCESS_TIME = "end_of_process_time"
    LIMIT_INTEGRAL = "limit_integral"
    LIMIT_SLEW_RATE = "limit_slew_rate"
    CIRCULAR_BUFFER_SIZE = "circular_buffer_size"
    ENABLE_ALARM = "enable_alarm"
    ALARM_MAX = "alarm_max"
    ALARM_MIN = "alarm_min"
    ALARM_TIME = "alarm_time"
    SERIAL_NUMBER = "serial_number"
    AUTOMEASURE = "automeasure"
    AUTO_SHUTTER_CONFIGURATION = "auto_shutter_configuration"
    AUTO_SHUTTER_DRIFT_TEMPERATURE = "auto_shutter_drift_temperature"
    AUTO_SHUTTER_TIMER = "auto_shutter_timer"
    LASER_EXTERNAL = "laser_external"
    LASER_ON_DELAY = "laser_on_delay"
    ENABLE_PREHEATING = "enable_preheating"
    PREHEATING_TIME = "preheating_time"
    PREHEATING_POWER = "preheating_power"
    DIGITAL_OUT1 = "digital_out1"
    DIGITAL_OUT2 = "digital_out2"
    DIGITAL_OUT3 = "digital_out3"
    DIGITAL_OUT4 = "digital_out4"
    DIGITAL_IN1 = "digital_in1"
    DIGITAL_IN2 = "digital_in2"
    DIGITAL_IN3 = "digital_in3"
    DIGITAL_IN4 = "digital_in4"
    INTEGRATION_TIME = "integration_time"
    BIAS_VOLTAGE = "bias_voltage"
    SHUTTER_POSITION = "shutter_position"
    SAVE_EMBEDDED_CONFIGURATION = "save_embedded_configuration"
    BLACK_LEVEL = "black_level"
    EMBEDDED_SW_VERSION = "embedded_sw_version"


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class Field:
    """One sub-field of a MULTI parameter."""

    name: str
    code: str  # struct code, "h" or "i"
    minimum: int
    maximum: int


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class Parameter:
    """Definition of a single control parameter."""

    id: ParamId
    kind: ValueKind
    get_opcode: int | None
    set_opcode: int | None
    minimum: float | None = None
    maximum: float | None = None
    default: Any = None
    unit: str = ""
    resolution: float | None = None  # quantum for FLOAT values
    fields: tuple[Field, ...] = ()
    value_type: Callable[..., Any] | None = None  # NamedTuple for MULTI
    family: CommandFamily = CommandFamily.GENERIC
    one_shot: bool = False  # each accepted set performs a side effect

    @property
    def name(self) -> str:
        return self.id.value

    @property
    def readable(self) -> bool:
        return self.get_opcode is not None

    @property
    def writable(self) -> bool:
        return self.set_opcode is not None

    @property
    def fmt(self) -> str:
        """struct format of the payload (empty payload for TRIGGER)."""
        if self.kind is ValueKind.INT16:
            return "<h"
        if self.kind is ValueKind.FLOAT:
            return "<f"
        if self.kind is ValueKind.BOOL:
            return "<i"
        if self.kind is ValueKind.TEXT:
            return f"<{SERIAL_NUMBER_LEN}s"
        if self.kind is ValueKind.MULTI:
            return "<" + "".join(f.code for f in self.fields)
        return "<"

    @property
    def payload_size(self) -> int:
        return struct.calcsize(self.fmt)

    @property
    def bounds(self) -> tuple[Any, Any] | None:
        if self.kind is ValueKind.MULTI:
            return (
                self.value_type(*(f.minimum for f in self.fields)),
                self.value_type(*(f.maximum for f in self.fields)),
            )
        if self.minimum is None:
            return None
        return (self.minimum, self.maximum)

    def quantize(self, value: float) -> float:
        """Round a float to the parameter's resolution."""
        if self.resolution is None or not math.isfinite(value):
            return float(value)
        return round(value / self.resolution) * self.resolution

    def validate(self, value: Any, *, check: bool = True) -> Any:
        """Check a value for this parameter without talking to the device.

        Args:
            value: Candidate value for a set.
            check: Apply bounds, ordering and mode rules. With False only the
                type is normalized and the device gets the final say.

        Returns:
            The normalized value as it will be encoded.

        Raises:
            TypeError: If the value has the wrong type for the kind.
            OutOfBoundsError: If a value lies outside [minimum, maximum].
            CommandError: INVALID_ORDERING or MODE_CONFLICT for the
                multi-field parameters.
        """
        if self.kind is ValueKind.TRIGGER:
            if value is not None:
                raise TypeError(f"{self.name} is a trigger and takes no value")
            return None
        if self.kind is ValueKind.TEXT:
            if not isinstance(value, str) or len(value) > SERIAL_NUMBER_LEN:
                raise TypeError(
                    f"{self.name} expects a str of at most {SERIAL_NUMBER_LEN} chars"
                )
            return value
        if self.kind is ValueKind.MULTI:
            return self._validate_multi(value, check)
        if self.kind is ValueKind.FLOAT:
            if isinstance(value, bool) or not isinstance(value, numbers.Real):
                raise TypeError(f"{self.name} expects a number, got {value!r}")
            number = float(value)
            if check:
                self._check_bounds(number)
            return self.quantize(number)

        number = operator.index(value)
        if not check:
            return number
        self._check_bounds(number)
        if self.kind is ValueKind.BOOL:
            return bool(number)
        return number

    def _check_bounds(self, value: float) -> None:
        if self.minimum is None:
            return
        # Written so that NaN fails too
        if not (self.minimum <= value <= self.maximum):
            raise OutOfBoundsError(self.name, value, self.minimum, self.maximum)

    def _validate_multi(self, value: Any, check: bool) -> Any:
        items = tuple(value)
        if len(items) != len(self.fields):
            raise TypeError(
                f"{self.name} expects {len(self.fields)} fields, got {len(items)}"
            )
        ints = [operator.index(item) for item in items]
        if not check:
            return tuple(ints)
        rule = _FAMILY_RULES.get(self.family)
        if rule is not None:
            rule(self, ints)
        for field, number in zip(self.fields, ints):
            if not (field.minimum <= number <= field.maximum):
                raise OutOfBoundsError(
                    self.name, number, field.minimum, field.maximum, field=field.name
                )
        return self.value_type(*self._field_values(ints))

    def _field_values(self, ints: list[int]) -> list[Any]:
        if self.value_type is AutoShutterConfig:
            return [bool(n) for n in ints]
        return ints

    def decode_fields(self, raw: tuple[Any, ...]) -> Any:
        """Build the typed value of a MULTI parameter from unpacked fields."""
        return self.value_type(*self._field_values(list(raw)))


def _check_roi_order(param: Parameter, values: list[int]) -> None:
    """X1 < X2 and Y1 < Y2, checked before any individual bound."""
    x1, y1, x2, y2 = values
    if x1 >= x2 or y1 >= y2:
        raise CommandError(
            StatusTag.INVALID_ORDERING,
            param.name,
            f"{param.name}: ({x1}, {y1}) must be below ({x2}, {y2})",
        )


def _check_shutter_mode(param: Parameter, values: list[int]) -> None:
    """Temperature drift and timer modes are mutually exclusive."""
    _, _, drift, timer = values
    if bool(drift) == bool(timer):
        raise CommandError(
            StatusTag.MODE_CONFLICT,
            param.name,
            f"{param.name}: exactly one of temperature_drift/timer must be set",
        )


_FAMILY_RULES: dict[CommandFamily, Callable[[Parameter, list[int]], None]] = {
    CommandFamily.ROI: _check_roi_order,
    CommandFamily.AUTO_SHUTTER: _check_shutter_mode,
}


# =============================================================================
# Catalog
# =============================================================================


def _param(
    pid: ParamId,
    index: int,
    kind: ValueKind,
    *,
    read: bool = True,
    write: bool = True,
    **kwargs: Any,
) -> Parameter:
    if kind is ValueKind.BOOL:
        kwargs.setdefault("minimum", 0)
        kwargs.setdefault("maximum", 1)
    return Parameter(
        id=pid,
        kind=kind,
        get_opcode=GET_BASE | index if read else None,
        set_opcode=SET_BASE | index if write else None,
        **kwargs,
    )


_I16 = ValueKind.INT16
_F32 = ValueKind.FLOAT
_BOOL = ValueKind.BOOL

_PARAMETERS: tuple[Parameter, ...] = (
    # PID gains
    _param(ParamId.KI, 0x01, _I16, minimum=0, maximum=30000, default=500),
    _param(ParamId.KP, 0x02, _I16, minimum=0, maximum=30000, default=200),
    _param(ParamId.KD, 0x03, _I16, minimum=0, maximum=30000, default=100),
    # Analog output range (0 V / 10 V)
    _param(ParamId.MAX_POWER, 0x04, _I16, minimum=100, maximum=30000, default=1500, unit="W"),
    _param(ParamId.MIN_POWER, 0x05, _I16, minimum=-30000, maximum=9900, default=500, unit="W"),
    # Melt pool detection
    _param(ParamId.THRESHOLD, 0x06, _I16, minimum=0, maximum=5000, default=1200, unit="counts"),
    _param(ParamId.THRESHOLD_TO_START_TRACKS, 0x07, _I16, minimum=0, maximum=2000, default=40, unit="px"),
    _param(ParamId.THRESHOLD_TO_END_TRACKS, 0x08, _I16, minimum=0, maximum=1000, default=30, unit="px"),
    _param(ParamId.MANUAL_POWER, 0x09, _I16, minimum=0, maximum=30000, default=1000, unit="W"),
    _param(ParamId.AUTO_CALIBRATE, 0x0A, ValueKind.TRIGGER, read=False, one_shot=True),
    _param(ParamId.MODE, 0x0B, _I16, minimum=0, maximum=2, default=ControlMode.MANUAL),
    # Reference width set point
    _param(ParamId.REFERENCE_TRACK_START, 0x0C, _I16, minimum=0, maximum=100, default=0),
    _param(ParamId.REFERENCE_TRACK_END, 0x0D, _I16, minimum=0, maximum=100, default=3),
    _param(ParamId.TRACK_DURATION, 0x0E, _F32, minimum=0.1, maximum=1000.0, default=2.0, unit="s"),
    _param(ParamId.MANUAL_REFERENCE_WIDTH, 0x0F, _F32, minimum=0.0, maximum=65.0, default=1.0, unit="mm"),
    _param(ParamId.UPDATE_SET_POINT, 0x10, ValueKind.TRIGGER, read=False, one_shot=True),
    # Region of interest
    _param(ParamId.ROUND_ROI, 0x11, _I16, minimum=0, maximum=3, default=RoiRounding.NONE),
    _param(ParamId.ENABLE_ROI, 0x12, _BOOL, default=False),
    _param(
        ParamId.ROI_COORDINATES,
        0x13,
        ValueKind.MULTI,
        fields=(
            Field(name="x1", code="h", minimum=1, maximum=62),
            Field(name="y1", code="h", minimum=1, maximum=62),
            Field(name="x2", code="h", minimum=2, maximum=63),
            Field(name="y2", code="h", minimum=2, maximum=63),
        ),
        value_type=RoiCoordinates,
        default=RoiCoordinates(2, 2, 61, 61),
        family=CommandFamily.ROI,
        unit="px",
    ),
    # Output power limits
    _param(ParamId.POWER_LIMIT_MAX, 0x14, _I16, minimum=1, maximum=30000, default=1500, unit="W"),
    _param(ParamId.POWER_LIMIT_MIN, 0x15, _I16, minimum=0, maximum=9999, default=500, unit="W"),
    _param(
        ParamId.PIXEL_TO_MM_RATIO, 0x16, _F32,
        minimum=0.01, maximum=10.0, default=0.015, resolution=0.001, unit="mm/px",
    ),
    _param(ParamId.END_OF_PROCESS_TIME, 0x17, _I16, minimum=500, maximum=30000, default=5000, unit="ms"),
    _param(ParamId.LIMIT_INTEGRAL, 0x18, _I16, minimum=0, maximum=10000, default=5000, unit="W"),
    _param(ParamId.LIMIT_SLEW_RATE, 0x19, _F32, minimum=0.01, maximum=300.0, default=1.0, unit="W/ms"),
    _param(ParamId.CIRCULAR_BUFFER_SIZE, 0x1A, _I16, minimum=1, maximum=512, default=4),
    # Alarm
    _param(ParamId.ENABLE_ALARM, 0x1B, _BOOL, default=False),
    _param(ParamId.ALARM_MAX, 0x1C, _F32, minimum=0.0, maximum=320.0, default=5.0, resolution=0.01, unit="mm"),
    _param(ParamId.ALARM_MIN, 0x1D, _F32, minimum=0.0, maximum=320.0, default=1.0, resolution=0.01, unit="mm"),
    _param(ParamId.ALARM_TIME, 0x1E, _I16, minimum=0, maximum=10000, default=2000, unit="ms"),
    _param(ParamId.SERIAL_NUMBER, 0x1F, ValueKind.TEXT, write=False),
    _param(ParamId.AUTOMEASURE, 0x20, _BOOL, default=True),
    # Auto shutter
    _param(
        ParamId.AUTO_SHUTTER_CONFIGURATION,
        0x21,
        ValueKind.MULTI,
        fields=(
            Field(name="enabled", code="i", minimum=0, maximum=1),
            Field(name="enabled_in_process", code="i", minimum=0, maximum=1),
            Field(name="temperature_drift", code="i", minimum=0, maximum=1),
            Field(name="timer", code="i", minimum=0, maximum=1),
        ),
        value_type=AutoShutterConfig,
        default=AutoShutterConfig(False, False, True, False),
        family=CommandFamily.AUTO_SHUTTER,
    ),
    _param(
        ParamId.AUTO_SHUTTER_DRIFT_TEMPERATURE, 0x22, _F32,
        minimum=0.1, maximum=50.0, default=3.0, unit="degC",
    ),
    _param(ParamId.AUTO_SHUTTER_TIMER, 0x23, _F32, minimum=10.0, maximum=320000.0, default=180.0, unit="s"),
    # Laser detection and preheating
    _param(ParamId.LASER_EXTERNAL, 0x24, _BOOL, default=False),
    _param(ParamId.LASER_ON_DELAY, 0x25, _I16, minimum=0, maximum=1000, default=0, unit="ms"),
    _param(ParamId.ENABLE_PREHEATING, 0x26, _BOOL, default=False),
    _param(ParamId.PREHEATING_TIME, 0x27, _I16, minimum=0, maximum=30000, default=0, unit="ms"),
    _param(ParamId.PREHEATING_POWER, 0x28, _I16, minimum=0, maximum=10000, default=1500, unit="W"),
    # Digital I/O
    _param(ParamId.DIGITAL_OUT1, 0x29, _BOOL, read=False, default=False),
    _param(ParamId.DIGITAL_OUT2, 0x2A, _BOOL, read=False, default=False),
    _param(ParamId.DIGITAL_OUT3, 0x2B, _BOOL, read=False, default=False),
    _param(ParamId.DIGITAL_OUT4, 0x2C, _BOOL, read=False, default=False),
    _param(ParamId.DIGITAL_IN1, 0x2D, _BOOL, write=False),
    _param(ParamId.DIGITAL_IN2, 0x2E, _BOOL, write=False),
    _param(ParamId.DIGITAL_IN3, 0x2F, _BOOL, write=False),
    _param(ParamId.DIGITAL_IN4, 0x30, _BOOL, write=False),
    # Sensor
    _param(ParamId.INTEGRATION_TIME, 0x31, _I16, minimum=50, maximum=800, default=200, unit="us"),
    _param(
        ParamId.BIAS_VOLTAGE, 0x32, _F32,
        minimum=1.0, maximum=3.0, default=2.0, resolution=BIAS_VOLTAGE_RESOLUTION, unit="V",
    ),
    _param(ParamId.SHUTTER_POSITION, 0x33, _BOOL, read=False, default=False),  # 1 = closed
    _param(ParamId.SAVE_EMBEDDED_CONFIGURATION, 0x34, ValueKind.TRIGGER, read=False, one_shot=True),
    _param(ParamId.BLACK_LEVEL, 0x35, _I16, minimum=0, maximum=10000, default=1000, unit="counts"),
    _param(ParamId.EMBEDDED_SW_VERSION, 0x36, _I16, write=False),
)

CATALOG: Mapping[ParamId, Parameter] = MappingProxyType({p.id: p for p in _PARAMETERS})

ONE_SHOT_PARAMETERS: frozenset[ParamId] = frozenset(p.id for p in _PARAMETERS if p.one_shot)


def lookup(param: ParamId | Parameter | str) -> Parameter:
    """Resolve a parameter by id, definition, value or enum name.

    Args:
        param: ``ParamId.KI``, ``"ki"`` or ``"KI"``.

    Returns:
        The catalog entry.

    Raises:
        KeyError: If no such parameter exists.
    """
    if isinstance(param, Parameter):
        return param
    if isinstance(param, ParamId):
        return CATALOG[param]
    try:
        return CATALOG[ParamId(param.lower())]
    except ValueError:
        raise KeyError(f"Unknown parameter: {param!r}") from None


def by_opcode(opcode: int) -> tuple[Parameter, bool]:
    """Find the parameter owning an opcode.

    Returns:
        Tuple of (parameter, is_set).

    Raises:
        KeyError: If the opcode is not in the catalog.
    """
    return _OPCODES[opcode]


_OPCODES: Mapping[int, tuple[Parameter, bool]] = MappingProxyType(
    {
        **{p.get_opcode: (p, False) for p in _PARAMETERS if p.get_opcode is not None},
        **{p.set_opcode: (p, True) for p in _PARAMETERS if p.set_opcode is not None},
    }
)
