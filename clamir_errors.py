"""CLAMIR error taxonomy and wire status mapping.

Every failure of the client reaches the immediate caller as one of the
exceptions below, tagged with an enum member. Raw wire status integers are
translated here by `map_status` and never escape this module.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class CommandFamily(str, Enum):
    """Which command-specific status codes a parameter may produce."""

    GENERIC = "generic"
    ROI = "roi"  # may report INVALID_ORDERING
    AUTO_SHUTTER = "auto_shutter"  # may report MODE_CONFLICT


class StatusTag(str, Enum):
    """Structured outcome of a command."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    COMMUNICATION_FAILURE = "communication_failure"
    OUT_OF_BOUNDS = "out_of_bounds"
    INVALID_ORDERING = "invalid_ordering"
    MODE_CONFLICT = "mode_conflict"


class ConnectFailure(str, Enum):
    ALLOCATION_FAILED = "allocation_failed"
    CONNECT_FAILED = "connect_failed"


class DisconnectFailure(str, Enum):
    CLOSE_FAILED = "close_failed"
    SOCKET_RELEASE_FAILED = "socket_release_failed"


class ImageFailure(str, Enum):
    TIMEOUT = "timeout"
    COMMUNICATION_FAILURE = "communication_failure"
    CONNECTION_CLOSED = "connection_closed"


# Wire status codes as sent by the device
STATUS_SUCCESS = 0
STATUS_TIMEOUT = -1
STATUS_COMMUNICATION_ERROR = -2
STATUS_OUT_OF_BOUNDS = -3
STATUS_INVALID_ORDERING = -4  # ROI coordinates only
STATUS_MODE_CONFLICT = -5  # auto shutter configuration only

_GENERIC_STATUS: dict[int, StatusTag] = {
    STATUS_SUCCESS: StatusTag.SUCCESS,
    STATUS_TIMEOUT: StatusTag.TIMEOUT,
    STATUS_COMMUNICATION_ERROR: StatusTag.COMMUNICATION_FAILURE,
    STATUS_OUT_OF_BOUNDS: StatusTag.OUT_OF_BOUNDS,
}

_FAMILY_STATUS: dict[CommandFamily, dict[int, StatusTag]] = {
    CommandFamily.GENERIC: {},
    CommandFamily.ROI: {STATUS_INVALID_ORDERING: StatusTag.INVALID_ORDERING},
    CommandFamily.AUTO_SHUTTER: {STATUS_MODE_CONFLICT: StatusTag.MODE_CONFLICT},
}


def map_status(status: int, family: CommandFamily = CommandFamily.GENERIC) -> StatusTag:
    """Translate a wire status into a structured tag.

    Args:
        status: Signed status integer from a device response.
        family: Command family of the parameter that issued the request.

    Returns:
        The matching tag. Unknown codes, and family-specific codes seen
        outside their family, are reported as COMMUNICATION_FAILURE since
        they mean the response cannot be trusted.
    """
    tag = _FAMILY_STATUS[family].get(status)
    if tag is not None:
        return tag
    return _GENERIC_STATUS.get(status, StatusTag.COMMUNICATION_FAILURE)


def tag_to_status(tag: StatusTag) -> int:
    """Inverse of `map_status`, used by the simulated device."""
    for table in (_GENERIC_STATUS, *_FAMILY_STATUS.values()):
        for code, known in table.items():
            if known is tag:
                return code
    raise ValueError(f"No wire status for {tag!r}")


# =============================================================================
# Exceptions
# =============================================================================


class ClamirError(Exception):
    """Base class for all CLAMIR client failures."""

    pass


class ConnectError(ClamirError):
    """Raised when the command or image socket cannot be established."""

    def __init__(self, reason: ConnectFailure, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class DisconnectError(ClamirError):
    """Raised when a socket could not be released cleanly.

    The connection is Disconnected regardless; this only reports that the
    best-effort release hit an error.
    """

    def __init__(self, reason: DisconnectFailure, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class CommandError(ClamirError):
    """Raised when a parameter get/set does not succeed."""

    def __init__(
        self,
        tag: StatusTag,
        parameter: str,
        message: str | None = None,
        *,
        one_shot: bool = False,
    ) -> None:
        super().__init__(message or f"{parameter}: {tag.value}")
        self.tag = tag
        self.parameter = parameter
        self.one_shot = one_shot

    @property
    def retry_safe(self) -> bool:
        """Whether repeating the same call cannot repeat a side effect.

        One-shot triggers may have been executed even when no response came
        back, so they are never safe to resend blindly. Rejections
        (bounds, ordering, mode) will fail identically on retry.
        """
        if self.one_shot:
            return False
        return self.tag in (StatusTag.TIMEOUT, StatusTag.COMMUNICATION_FAILURE)


class OutOfBoundsError(CommandError):
    """A value outside the documented [minimum, maximum] range."""

    def __init__(
        self,
        parameter: str,
        value: Any,
        minimum: Any,
        maximum: Any,
        *,
        field: str | None = None,
    ) -> None:
        where = f"{parameter}.{field}" if field else parameter
        super().__init__(
            StatusTag.OUT_OF_BOUNDS,
            parameter,
            f"{where}: value {value!r} outside [{minimum}, {maximum}]",
        )
        self.value = value
        self.minimum = minimum
        self.maximum = maximum
        self.field = field


class ImageError(ClamirError):
    """Raised when a complete image frame could not be read."""

    def __init__(self, reason: ImageFailure, message: str) -> None:
        super().__init__(message)
        self.reason = reason


def raise_for_status(
    tag: StatusTag,
    parameter: str,
    *,
    value: Any = None,
    bounds: tuple[Any, Any] | None = None,
    one_shot: bool = False,
) -> None:
    """Raise the exception matching a non-success tag.

    Args:
        tag: Outcome from `map_status`.
        parameter: Parameter name for the error message.
        value: The value that was sent, reported on OUT_OF_BOUNDS.
        bounds: Documented (minimum, maximum), reported on OUT_OF_BOUNDS.
        one_shot: Whether the command was a one-shot trigger.
    """
    if tag is StatusTag.SUCCESS:
        return
    if tag is StatusTag.OUT_OF_BOUNDS:
        minimum, maximum = bounds if bounds is not None else (None, None)
        raise OutOfBoundsError(parameter, value, minimum, maximum)
    raise CommandError(tag, parameter, one_shot=one_shot)
