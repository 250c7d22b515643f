"""CLAMIR image frames.

Frame layout, raw header decoding and native capture files.

A frame is 8432 bytes: a 60-word raw header (little-endian int32) followed by a
64x64 image of little-endian int16 samples. The same layout is what the vendor
tools store in ``.dat`` capture files, one frame after another, so a frame read
with `ClamirDevice.get_image_raw_header` can be appended to such a file with no
transformation.
"""

from __future__ import annotations

from enum import IntEnum, IntFlag
from typing import TYPE_CHECKING, BinaryIO, Iterable, Iterator

import dataclasses
import os

import numpy as np


if TYPE_CHECKING:
    from numpy.typing import NDArray

IMAGE_W = 64
IMAGE_H = 64
PIXEL_COUNT = IMAGE_W * IMAGE_H  # 4096
PIXEL_DTYPE = np.dtype("<i2")
PIXEL_BYTES = PIXEL_COUNT * PIXEL_DTYPE.itemsize  # 8192

RAW_HEADER_WORDS = 60
RAW_WORD_DTYPE = np.dtype("<i4")
RAW_HEADER_BYTES = RAW_HEADER_WORDS * RAW_WORD_DTYPE.itemsize  # 240

FRAME_SIZE = RAW_HEADER_BYTES + PIXEL_BYTES  # 8432


class FrameIncompleteError(Exception):
    """Raised when fewer bytes than a full frame are available."""

    pass


class FrameFormatError(ValueError):
    """Raised when frame data has the right size but cannot be decoded."""

    pass


# Raw header words. Float quantities are stored as IEEE-754 bit patterns in
# their 4-byte slot.
RAW_HEADER_DTYPE = np.dtype(
    [
        ("frame_num", "<i4"),  # 0: ID of the frame
        ("power", "<i4"),  # 1: output power, W
        ("melt_pool_area", "<i4"),  # 2: pixels above threshold
        ("width", "<f4"),  # 3: melt pool width, mm
        ("ref_width", "<f4"),  # 4: reference width, mm
        ("track_num", "<i4"),  # 5: current track
        ("frame_max", "<i4"),  # 6: maximum pixel value
        ("io_status", "<i4"),  # 7: DigitalPort bits in the low byte
        ("laser_status", "<i4"),  # 8: 1 while a laser is detected
        ("state_machine", "<i4"),  # 9: MachineState
        ("temperature", "<f4"),  # 10: internal temperature, degC
        ("reserved", "<i4", (RAW_HEADER_WORDS - 11,)),
    ]
)


class DigitalPort(IntFlag):
    """Bits of the digital I/O port status byte."""

    IN1 = 0x01
    IN2 = 0x02
    OUT1 = 0x04  # also the alarm output
    OUT2 = 0x08
    IN3 = 0x10
    IN4 = 0x20
    OUT3 = 0x40
    OUT4 = 0x80

    ALARM = OUT1


class MachineState(IntEnum):
    """Control state machine of the device."""

    MANUAL_CONTROL = 0x00
    IDLE = 0x08
    SET_POINT = 0x09
    CONTROL = 0x0A
    PREHEATING = 0x0B


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class ImageHeader:
    """Decoded metadata of one frame."""

    power: int
    melt_pool_area: int
    width: float
    ref_width: float
    track_num: int
    frame_max: int
    frame_num: int
    io_status: DigitalPort
    laser_status: bool
    state: MachineState
    temperature: float

    @property
    def alarm(self) -> bool:
        return DigitalPort.ALARM in self.io_status


# =============================================================================
# Buffer Contracts
# =============================================================================


def check_raw_header(raw: NDArray[np.int32] | bytes) -> NDArray[np.int32]:
    """Return the raw header as a (60,) little-endian int32 array.

    Raises:
        FrameFormatError: If the header does not hold exactly 60 words.
    """
    if isinstance(raw, (bytes, bytearray, memoryview)):
        if len(raw) != RAW_HEADER_BYTES:
            raise FrameFormatError(
                f"Raw header is {len(raw)} bytes, expected {RAW_HEADER_BYTES}"
            )
        return np.frombuffer(raw, dtype=RAW_WORD_DTYPE).copy()
    arr = np.asarray(raw)
    if arr.size != RAW_HEADER_WORDS:
        raise FrameFormatError(
            f"Raw header has {arr.size} words, expected {RAW_HEADER_WORDS}"
        )
    return np.ascontiguousarray(arr.reshape(RAW_HEADER_WORDS), dtype=RAW_WORD_DTYPE)


def check_pixels(pixels: NDArray[np.int16]) -> NDArray[np.int16]:
    """Return the pixel buffer as a (64, 64) little-endian int16 array.

    Raises:
        FrameFormatError: If the buffer does not hold exactly 4096 samples.
    """
    arr = np.asarray(pixels)
    if arr.size != PIXEL_COUNT:
        raise FrameFormatError(
            f"Pixel buffer has {arr.size} samples, expected {PIXEL_COUNT}"
        )
    return np.ascontiguousarray(arr.reshape(IMAGE_H, IMAGE_W), dtype=PIXEL_DTYPE)


# =============================================================================
# Frame Parsing (Pure Functions)
# =============================================================================


def parse_frame(data: bytes) -> tuple[NDArray[np.int32], NDArray[np.int16]]:
    """Split one frame into raw header and pixel buffer.

    Args:
        data: Exactly FRAME_SIZE bytes.

    Returns:
        Tuple of (raw header (60,) int32, pixels (64, 64) int16). Both
        arrays own their memory.

    Raises:
        FrameIncompleteError: If data is shorter than a frame.
        FrameFormatError: If data is longer than a frame.
    """
    if len(data) < FRAME_SIZE:
        raise FrameIncompleteError(f"Got {len(data)} bytes, expected {FRAME_SIZE}")
    if len(data) > FRAME_SIZE:
        raise FrameFormatError(f"Got {len(data)} bytes, expected {FRAME_SIZE}")
    raw = np.frombuffer(data, dtype=RAW_WORD_DTYPE, count=RAW_HEADER_WORDS).copy()
    pixels = np.frombuffer(
        data, dtype=PIXEL_DTYPE, count=PIXEL_COUNT, offset=RAW_HEADER_BYTES
    ).reshape(IMAGE_H, IMAGE_W).copy()
    return raw, pixels


def build_frame(raw: NDArray[np.int32], pixels: NDArray[np.int16]) -> bytes:
    """Serialize a raw header and pixels into frame bytes."""
    return check_raw_header(raw).tobytes() + check_pixels(pixels).tobytes()


def decode_raw_header(raw: NDArray[np.int32] | bytes) -> ImageHeader:
    """Decode the 60-word raw header into an ImageHeader.

    Pure and stateless; it can be applied to frames read from the device or
    from a capture file alike.

    Args:
        raw: 60 int32 words or 240 bytes.

    Returns:
        Decoded header.

    Raises:
        FrameFormatError: On wrong length or an unknown state machine byte.
    """
    rec = check_raw_header(raw).view(RAW_HEADER_DTYPE)[0]
    state_byte = int(rec["state_machine"]) & 0xFF
    try:
        state = MachineState(state_byte)
    except ValueError:
        raise FrameFormatError(f"Unknown state machine value 0x{state_byte:02X}") from None
    return ImageHeader(
        power=int(rec["power"]),
        melt_pool_area=int(rec["melt_pool_area"]),
        width=float(rec["width"]),
        ref_width=float(rec["ref_width"]),
        track_num=int(rec["track_num"]),
        frame_max=int(rec["frame_max"]),
        frame_num=int(rec["frame_num"]),
        io_status=DigitalPort(int(rec["io_status"]) & 0xFF),
        laser_status=bool(int(rec["laser_status"]) & 0xFF),
        state=state,
        temperature=float(rec["temperature"]),
    )


def encode_raw_header(header: ImageHeader) -> NDArray[np.int32]:
    """Inverse of `decode_raw_header`; reserved words are zero."""
    rec = np.zeros(1, dtype=RAW_HEADER_DTYPE)
    rec["frame_num"] = header.frame_num
    rec["power"] = header.power
    rec["melt_pool_area"] = header.melt_pool_area
    rec["width"] = header.width
    rec["ref_width"] = header.ref_width
    rec["track_num"] = header.track_num
    rec["frame_max"] = header.frame_max
    rec["io_status"] = int(header.io_status)
    rec["laser_status"] = int(header.laser_status)
    rec["state_machine"] = int(header.state)
    rec["temperature"] = header.temperature
    return rec.view(RAW_WORD_DTYPE).copy()


# =============================================================================
# Capture Files
# =============================================================================


def append_frame(
    fh: BinaryIO,
    raw: NDArray[np.int32],
    pixels: NDArray[np.int16],
) -> None:
    """Append one frame to an open capture file."""
    fh.write(build_frame(raw, pixels))


def write_capture(
    path: str | os.PathLike[str],
    frames: Iterable[tuple[NDArray[np.int32], NDArray[np.int16]]],
) -> int:
    """Write frames to a capture file, replacing any existing file.

    Args:
        path: Output path (conventionally ``*.dat``).
        frames: Iterable of (raw header, pixels).

    Returns:
        Number of frames written.
    """
    count = 0
    with open(path, "wb") as fh:
        for raw, pixels in frames:
            append_frame(fh, raw, pixels)
            count += 1
    return count


def read_capture(
    path: str | os.PathLike[str],
) -> Iterator[tuple[NDArray[np.int32], NDArray[np.int16]]]:
    """Iterate over the frames of a capture file.

    Yields:
        Tuples of (raw header, pixels).

    Raises:
        FrameIncompleteError: If the file ends in the middle of a frame.
    """
    with open(path, "rb") as fh:
        while True:
            chunk = fh.read(FRAME_SIZE)
            if not chunk:
                return
            yield parse_frame(chunk)
