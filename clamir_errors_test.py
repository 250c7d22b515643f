"""Unit tests for clamir_errors.py."""

from __future__ import annotations

import sys

import pytest

from clamir_errors import STATUS_COMMUNICATION_ERROR
from clamir_errors import STATUS_INVALID_ORDERING
from clamir_errors import STATUS_MODE_CONFLICT
from clamir_errors import STATUS_OUT_OF_BOUNDS
from clamir_errors import STATUS_SUCCESS
from clamir_errors import STATUS_TIMEOUT
from clamir_errors import ClamirError
from clamir_errors import CommandError
from clamir_errors import CommandFamily
from clamir_errors import ImageError
from clamir_errors import ImageFailure
from clamir_errors import OutOfBoundsError
from clamir_errors import StatusTag
from clamir_errors import map_status
from clamir_errors import raise_for_status
from clamir_errors import tag_to_status


class TestMapStatus:
    """Wire status to tag translation."""

    @pytest.mark.parametrize(
        "status,tag",
        [
            (STATUS_SUCCESS, StatusTag.SUCCESS),
            (STATUS_TIMEOUT, StatusTag.TIMEOUT),
            (STATUS_COMMUNICATION_ERROR, StatusTag.COMMUNICATION_FAILURE),
            (STATUS_OUT_OF_BOUNDS, StatusTag.OUT_OF_BOUNDS),
        ],
    )
    def test_generic_codes(self, status, tag):
        for family in CommandFamily:
            assert map_status(status, family) is tag

    def test_ordering_only_for_roi(self):
        assert map_status(STATUS_INVALID_ORDERING, CommandFamily.ROI) is StatusTag.INVALID_ORDERING
        assert (
            map_status(STATUS_INVALID_ORDERING, CommandFamily.GENERIC)
            is StatusTag.COMMUNICATION_FAILURE
        )
        assert (
            map_status(STATUS_INVALID_ORDERING, CommandFamily.AUTO_SHUTTER)
            is StatusTag.COMMUNICATION_FAILURE
        )

    def test_mode_conflict_only_for_auto_shutter(self):
        assert (
            map_status(STATUS_MODE_CONFLICT, CommandFamily.AUTO_SHUTTER)
            is StatusTag.MODE_CONFLICT
        )
        assert map_status(STATUS_MODE_CONFLICT, CommandFamily.ROI) is StatusTag.COMMUNICATION_FAILURE

    @pytest.mark.parametrize("status", [1, 7, -6, -100, 32767, -32768])
    def test_unknown_codes(self, status):
        for family in CommandFamily:
            assert map_status(status, family) is StatusTag.COMMUNICATION_FAILURE

    def test_default_family_is_generic(self):
        assert map_status(STATUS_MODE_CONFLICT) is StatusTag.COMMUNICATION_FAILURE

    def test_tag_to_status_inverts(self):
        assert tag_to_status(StatusTag.OUT_OF_BOUNDS) == STATUS_OUT_OF_BOUNDS
        assert tag_to_status(StatusTag.INVALID_ORDERING) == STATUS_INVALID_ORDERING
        assert tag_to_status(StatusTag.MODE_CONFLICT) == STATUS_MODE_CONFLICT
        for tag in StatusTag:
            family = {
                StatusTag.INVALID_ORDERING: CommandFamily.ROI,
                StatusTag.MODE_CONFLICT: CommandFamily.AUTO_SHUTTER,
            }.get(tag, CommandFamily.GENERIC)
            assert map_status(tag_to_status(tag), family) is tag


class TestExceptions:
    """Exception payloads and retry classification."""

    def test_hierarchy(self):
        assert issubclass(OutOfBoundsError, CommandError)
        assert issubclass(CommandError, ClamirError)
        assert issubclass(ImageError, ClamirError)

    def test_out_of_bounds_payload(self):
        e = OutOfBoundsError("ki", 30001, 0, 30000)
        assert e.tag is StatusTag.OUT_OF_BOUNDS
        assert (e.value, e.minimum, e.maximum) == (30001, 0, 30000)
        assert "30001" in str(e)
        assert "[0, 30000]" in str(e)

    def test_out_of_bounds_field(self):
        e = OutOfBoundsError("roi_coordinates", 0, 1, 62, field="x1")
        assert e.field == "x1"
        assert "roi_coordinates.x1" in str(e)

    def test_retry_safe(self):
        assert CommandError(StatusTag.TIMEOUT, "ki").retry_safe
        assert CommandError(StatusTag.COMMUNICATION_FAILURE, "ki").retry_safe
        assert not CommandError(StatusTag.INVALID_ORDERING, "roi").retry_safe
        assert not OutOfBoundsError("ki", -1, 0, 30000).retry_safe

    def test_one_shot_never_retry_safe(self):
        e = CommandError(StatusTag.TIMEOUT, "auto_calibrate", one_shot=True)
        assert not e.retry_safe

    def test_image_error_reason(self):
        e = ImageError(ImageFailure.CONNECTION_CLOSED, "gone")
        assert e.reason is ImageFailure.CONNECTION_CLOSED
        assert str(e) == "gone"


class TestRaiseForStatus:
    def test_success_is_silent(self):
        raise_for_status(StatusTag.SUCCESS, "ki")

    def test_out_of_bounds_carries_bounds(self):
        with pytest.raises(OutOfBoundsError) as info:
            raise_for_status(StatusTag.OUT_OF_BOUNDS, "ki", value=-1, bounds=(0, 30000))
        assert info.value.minimum == 0
        assert info.value.maximum == 30000
        assert info.value.value == -1

    def test_other_tags(self):
        with pytest.raises(CommandError) as info:
            raise_for_status(StatusTag.TIMEOUT, "update_set_point", one_shot=True)
        assert info.value.tag is StatusTag.TIMEOUT
        assert not info.value.retry_safe
        assert not isinstance(info.value, OutOfBoundsError)


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
