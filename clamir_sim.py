"""Simulated CLAMIR device.

A loopback TCP server speaking the command and image protocols, with a
parameter store seeded from the catalog defaults. Values are checked the way
the device checks them and rejections come back as wire status codes, so the
client's error mapping can be exercised without hardware.

Fault injection:
- stall: requests are read but never answered
- truncate_frame_after: send only this many frame bytes, then drop the link
- accept_any: store any decodable value without bounds or rule checks
- delay_response: seconds to wait before each reply, so it arrives late

Usage:
  with SimulatedDevice() as sim:
      dev = ClamirDevice(config=sim.client_config())
      dev.connect(sim.host)
"""

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING, Any

import dataclasses
import logging
import socket
import struct
import threading

import numpy as np

from clamir_device import ClientConfig
from clamir_errors import STATUS_COMMUNICATION_ERROR
from clamir_errors import STATUS_SUCCESS
from clamir_errors import CommandError
from clamir_errors import OutOfBoundsError
from clamir_errors import tag_to_status
from clamir_frame import IMAGE_H
from clamir_frame import IMAGE_W
from clamir_frame import DigitalPort
from clamir_frame import ImageHeader
from clamir_frame import MachineState
from clamir_frame import build_frame
from clamir_frame import encode_raw_header
from clamir_params import CATALOG
from clamir_params import ControlMode
from clamir_params import ParamId
from clamir_params import Parameter
from clamir_params import ValueKind
from clamir_params import by_opcode
from clamir_protocol import IMAGE_REQUEST
from clamir_protocol import REQUEST_HEADER
from clamir_protocol import ProtocolError
from clamir_protocol import build_response
from clamir_protocol import encode_value
from clamir_protocol import parse_request_header


if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

_OUTPUT_BITS = {
    ParamId.DIGITAL_OUT1: DigitalPort.OUT1,
    ParamId.DIGITAL_OUT2: DigitalPort.OUT2,
    ParamId.DIGITAL_OUT3: DigitalPort.OUT3,
    ParamId.DIGITAL_OUT4: DigitalPort.OUT4,
}
_INPUT_BITS = {
    ParamId.DIGITAL_IN1: DigitalPort.IN1,
    ParamId.DIGITAL_IN2: DigitalPort.IN2,
    ParamId.DIGITAL_IN3: DigitalPort.IN3,
    ParamId.DIGITAL_IN4: DigitalPort.IN4,
}


def _recv_all(conn: socket.socket, size: int) -> bytes | None:
    """Blocking read of exactly `size` bytes; None once the peer is gone."""
    buf = bytearray()
    while len(buf) < size:
        try:
            chunk = conn.recv(size - len(buf))
        except OSError:
            return None
        if not chunk:
            return None
        buf += chunk
    return bytes(buf)


def synthetic_pixels(frame_num: int, peak: int = 3000) -> NDArray[np.int16]:
    """Gaussian melt pool on a flat background, drifting with frame_num."""
    y, x = np.mgrid[0:IMAGE_H, 0:IMAGE_W]
    cx = 32 + 8 * np.sin(frame_num / 10.0)
    cy = 32.0
    blob = peak * np.exp(-((x - cx) ** 2 + (y - cy) ** 2) / (2 * 4.0**2))
    return (blob + 800).astype(np.int16)


class SimulatedDevice:
    """Loopback stand-in for a CLAMIR device."""

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        serial_number: str = "CLM0042",
        sw_version: int = 104,
    ) -> None:
        self.host = host
        self.values: dict[ParamId, Any] = {
            pid: p.default for pid, p in CATALOG.items() if p.default is not None
        }
        self.values[ParamId.SERIAL_NUMBER] = serial_number
        self.values[ParamId.EMBEDDED_SW_VERSION] = sw_version
        for pid in _INPUT_BITS:
            self.values[pid] = False

        self.trigger_counts: Counter[ParamId] = Counter()
        self.frame_count = 0
        self.last_frame: bytes | None = None
        self.request_received = threading.Event()

        self.stall = False
        self.truncate_frame_after: int | None = None
        self.accept_any = False
        self.delay_response = 0.0

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._listeners: list[socket.socket] = []
        self._conns: list[socket.socket] = []
        self._threads: list[threading.Thread] = []

    def __enter__(self) -> SimulatedDevice:
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    @property
    def command_port(self) -> int:
        return self._listeners[0].getsockname()[1]

    @property
    def image_port(self) -> int:
        return self._listeners[1].getsockname()[1]

    def client_config(self, **overrides: Any) -> ClientConfig:
        """ClientConfig pointing at this simulator's ports."""
        overrides.setdefault("command_port", self.command_port)
        overrides.setdefault("image_port", self.image_port)
        return ClientConfig(**overrides)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Bind both listeners on ephemeral ports and start serving."""
        self._stop.clear()
        for handler in (self._serve_commands, self._serve_images):
            listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((self.host, 0))
            listener.listen()
            listener.settimeout(0.1)
            self._listeners.append(listener)
            thread = threading.Thread(
                target=self._accept_loop, args=(listener, handler), daemon=True
            )
            thread.start()
            self._threads.append(thread)
        logger.info(
            "Simulated device on %s (command %d, image %d)",
            self.host,
            self.command_port,
            self.image_port,
        )

    def stop(self) -> None:
        """Stop accepting, drop every client and wait for the threads."""
        self._stop.set()
        with self._lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            self._drop(conn)
        for thread in list(self._threads):
            thread.join(timeout=2.0)
        for listener in self._listeners:
            listener.close()
        self._threads = []
        self._listeners = []

    def drop_clients(self) -> None:
        """Close every client connection, as a device reboot would."""
        with self._lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            self._drop(conn)

    @staticmethod
    def _drop(conn: socket.socket) -> None:
        try:
            conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected
        conn.close()

    def _accept_loop(self, listener: socket.socket, handler: Any) -> None:
        while not self._stop.is_set():
            try:
                conn, addr = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(None)
            logger.debug("Client connected from %s", addr)
            with self._lock:
                self._conns.append(conn)
            thread = threading.Thread(target=handler, args=(conn,), daemon=True)
            thread.start()
            self._threads.append(thread)

    def _delay(self) -> None:
        delay = self.delay_response
        if delay > 0:
            logger.debug("Delaying reply by %.3fs", delay)
            self._stop.wait(delay)

    def _next_request(self, conn: socket.socket) -> tuple[int, bytes] | None:
        header = _recv_all(conn, REQUEST_HEADER.size)
        if header is None:
            return None
        try:
            opcode, length = parse_request_header(header)
        except ProtocolError as e:
            logger.debug("Dropping client: %s", e)
            return None
        payload = _recv_all(conn, length) if length else b""
        if payload is None:
            return None
        self.request_received.set()
        return opcode, payload

    # =========================================================================
    # Command Channel
    # =========================================================================

    def _serve_commands(self, conn: socket.socket) -> None:
        try:
            while not self._stop.is_set():
                request = self._next_request(conn)
                if request is None:
                    break
                opcode, payload = request
                if self.stall:
                    logger.debug("Stalling command 0x%04X", opcode)
                    continue
                status, body = self.handle_command(opcode, payload)
                self._delay()
                conn.sendall(build_response(opcode, status, body))
        except OSError as e:
            logger.debug("Command client gone: %s", e)
        finally:
            conn.close()

    def handle_command(self, opcode: int, payload: bytes) -> tuple[int, bytes]:
        """Apply one request to the parameter store.

        Returns:
            Tuple of (wire status, response payload).
        """
        try:
            p, is_set = by_opcode(opcode)
        except KeyError:
            logger.debug("Unknown opcode 0x%04X", opcode)
            return STATUS_COMMUNICATION_ERROR, b""

        with self._lock:
            if not is_set:
                return STATUS_SUCCESS, encode_value(p, self.values[p.id])
            if p.one_shot:
                self.trigger_counts[p.id] += 1
                return STATUS_SUCCESS, b""
            if len(payload) != p.payload_size:
                return STATUS_COMMUNICATION_ERROR, b""
            try:
                value = self._accept(p, struct.unpack(p.fmt, payload))
            except CommandError as e:
                logger.debug("Rejected %s: %s", p.name, e)
                return tag_to_status(e.tag), b""
            self.values[p.id] = value
            return STATUS_SUCCESS, b""

    def _accept(self, p: Parameter, fields: tuple[Any, ...]) -> Any:
        check = not self.accept_any
        if p.kind is ValueKind.MULTI:
            return p.decode_fields(tuple(p.validate(fields, check=check)))
        (raw,) = fields
        if p.kind is ValueKind.FLOAT:
            value = p.quantize(raw)
            # Bounds compared in the device's single precision
            if check and p.minimum is not None:
                f32 = np.float32(value)
                if not (np.float32(p.minimum) <= f32 <= np.float32(p.maximum)):
                    raise OutOfBoundsError(p.name, value, p.minimum, p.maximum)
            return value
        value = p.validate(raw, check=check)
        if p.kind is ValueKind.BOOL:
            return bool(value)
        return value

    # =========================================================================
    # Image Channel
    # =========================================================================

    def _serve_images(self, conn: socket.socket) -> None:
        try:
            while not self._stop.is_set():
                request = self._next_request(conn)
                if request is None:
                    break
                opcode, _ = request
                if opcode != IMAGE_REQUEST:
                    logger.debug("Unexpected image opcode 0x%04X", opcode)
                    break
                if self.stall:
                    continue
                frame = self.next_frame()
                self._delay()
                if self.truncate_frame_after is not None:
                    conn.sendall(frame[: self.truncate_frame_after])
                    break
                conn.sendall(frame)
        except OSError as e:
            logger.debug("Image client gone: %s", e)
        finally:
            self._drop(conn)

    def current_header(self) -> ImageHeader:
        """Header the next frame will carry, derived from the store."""
        with self._lock:
            io = DigitalPort(0)
            for pid, bit in {**_OUTPUT_BITS, **_INPUT_BITS}.items():
                if self.values.get(pid):
                    io |= bit
            manual = self.values[ParamId.MODE] == ControlMode.MANUAL
            return ImageHeader(
                power=int(self.values[ParamId.MANUAL_POWER]),
                melt_pool_area=120,
                width=1.25,
                ref_width=float(self.values[ParamId.MANUAL_REFERENCE_WIDTH]),
                track_num=0,
                frame_max=0,
                frame_num=self.frame_count + 1,
                io_status=io,
                laser_status=True,
                state=MachineState.MANUAL_CONTROL if manual else MachineState.IDLE,
                temperature=36.5,
            )

    def next_frame(self) -> bytes:
        """Render and return the next frame's bytes."""
        header = self.current_header()
        pixels = synthetic_pixels(header.frame_num)
        header = dataclasses.replace(header, frame_max=int(pixels.max()))
        frame = build_frame(encode_raw_header(header), pixels)
        with self._lock:
            self.frame_count = header.frame_num
            self.last_frame = frame
        return frame
