"""CLAMIR Device Client.

Connection lifecycle, parameter get/set and image acquisition for a CLAMIR
melt pool monitoring and control system.

The device is reached through two TCP sockets on the same IP address: a
command socket for parameter traffic and an image socket for frames. Each
socket carries one request at a time; calls on the same channel from several
threads are serialized, while the two channels are independent of each other.

Every call is bounded by a timeout and reports failures by raising one of the
exceptions in `clamir_errors`. Nothing is retried here.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

import dataclasses
import errno
import logging
import socket
import struct
import threading
import time

from clamir_errors import CommandError
from clamir_errors import ConnectError
from clamir_errors import ConnectFailure
from clamir_errors import DisconnectError
from clamir_errors import DisconnectFailure
from clamir_errors import ImageError
from clamir_errors import ImageFailure
from clamir_errors import OutOfBoundsError
from clamir_errors import StatusTag
from clamir_errors import map_status
from clamir_errors import raise_for_status
from clamir_frame import FRAME_SIZE
from clamir_frame import FrameFormatError
from clamir_frame import FrameIncompleteError
from clamir_frame import ImageHeader
from clamir_frame import decode_raw_header
from clamir_frame import parse_frame
from clamir_params import CATALOG
from clamir_params import ParamId
from clamir_params import Parameter
from clamir_params import lookup
from clamir_protocol import COMMAND_PORT
from clamir_protocol import DEFAULT_IP
from clamir_protocol import IMAGE_PORT
from clamir_protocol import IMAGE_REQUEST
from clamir_protocol import MAX_PAYLOAD
from clamir_protocol import RESPONSE_HEADER
from clamir_protocol import ProtocolError
from clamir_protocol import build_request
from clamir_protocol import decode_value
from clamir_protocol import encode_value
from clamir_protocol import parse_response_header


if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class ClientConfig:
    """Connection settings. Timeouts are in seconds."""

    command_port: int = COMMAND_PORT
    image_port: int = IMAGE_PORT
    connect_timeout: float = 2.0
    command_timeout: float = 1.0
    image_timeout: float = 1.0
    precheck_bounds: bool = True  # reject bad values before sending


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class Connection:
    """Open sockets to one device."""

    ip: str
    command_sock: socket.socket
    image_sock: socket.socket


# =============================================================================
# Socket Helpers
# =============================================================================


class _PeerClosed(Exception):
    """The remote end closed the socket."""

    pass


class _ReadTimeout(Exception):
    """The deadline passed before all bytes arrived."""

    def __init__(self, received: int) -> None:
        super().__init__(f"timed out after {received} bytes")
        self.received = received


def _recv_into(sock: socket.socket, buf: bytearray, size: int, deadline: float) -> None:
    """Grow `buf` to `size` bytes before `deadline` (time.monotonic).

    Bytes received before a timeout stay in `buf`, so a later call can
    resume the same response.
    """
    while len(buf) < size:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise _ReadTimeout(len(buf))
        sock.settimeout(remaining)
        try:
            chunk = sock.recv(size - len(buf))
        except socket.timeout:
            raise _ReadTimeout(len(buf)) from None
        if not chunk:
            raise _PeerClosed(f"peer closed after {len(buf)} of {size} bytes")
        buf += chunk


def _drain(sock: socket.socket) -> int:
    """Discard unsolicited bytes that no request is waiting for."""
    dropped = 0
    sock.setblocking(False)
    try:
        while True:
            try:
                chunk = sock.recv(4096)
            except (BlockingIOError, InterruptedError):
                break
            if not chunk:
                raise _PeerClosed("peer closed")
            dropped += len(chunk)
    finally:
        sock.setblocking(True)
    if dropped:
        logger.debug("Discarded %d stale bytes", dropped)
    return dropped


# =============================================================================
# Connection Manager
# =============================================================================


class ConnectionManager:
    """Opens, owns and releases the command and image sockets."""

    def __init__(self, config: ClientConfig) -> None:
        self.config = config
        self._conn: Connection | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> ConnectionState:
        if self._conn is None:
            return ConnectionState.DISCONNECTED
        return ConnectionState.CONNECTED

    @property
    def is_connected(self) -> bool:
        """Pure state query; never touches the network."""
        return self._conn is not None

    @property
    def ip(self) -> str | None:
        conn = self._conn
        return conn.ip if conn is not None else None

    @property
    def command_socket(self) -> socket.socket | None:
        conn = self._conn
        return conn.command_sock if conn is not None else None

    @property
    def image_socket(self) -> socket.socket | None:
        conn = self._conn
        return conn.image_sock if conn is not None else None

    def connect(self, ip: str = DEFAULT_IP) -> None:
        """Open both sockets to the device.

        An existing connection is torn down first.

        Args:
            ip: Device IP address.

        Raises:
            ConnectError: ALLOCATION_FAILED if a socket cannot be created,
                CONNECT_FAILED if the device does not accept a connection.
                The state is Disconnected afterwards.
        """
        with self._lock:
            if self._conn is not None:
                logger.debug("Reconnecting: releasing connection to %s", self._conn.ip)
                previous, self._conn = self._conn, None
                try:
                    self._release(previous)
                except DisconnectError as e:
                    logger.debug("Ignoring release failure before reconnect: %s", e)

            opened: list[socket.socket] = []
            try:
                for port in (self.config.command_port, self.config.image_port):
                    opened.append(self._open(ip, port))
            except ConnectError:
                for sock in opened:
                    sock.close()
                raise

            self._conn = Connection(ip=ip, command_sock=opened[0], image_sock=opened[1])
            logger.debug(
                "Connected to %s (command %d, image %d)",
                ip,
                self.config.command_port,
                self.config.image_port,
            )

    def disconnect(self) -> None:
        """Release both sockets.

        Safe to call while another thread is blocked on either channel: the
        sockets are shut down first, which wakes the blocked call. The state
        is Disconnected on return even when an error is raised.

        Raises:
            DisconnectError: If shutting down or closing a socket failed.
        """
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is None:
            return
        logger.debug("Disconnecting from %s", conn.ip)
        self._release(conn)

    def _open(self, ip: str, port: int) -> socket.socket:
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        except OSError as e:
            raise ConnectError(
                ConnectFailure.ALLOCATION_FAILED, f"Cannot allocate socket: {e}"
            ) from e
        try:
            sock.settimeout(self.config.connect_timeout)
            sock.connect((ip, port))
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError as e:
            sock.close()
            raise ConnectError(
                ConnectFailure.CONNECT_FAILED, f"Cannot connect to {ip}:{port}: {e}"
            ) from e
        return sock

    @staticmethod
    def _release(conn: Connection) -> None:
        failure: DisconnectFailure | None = None
        details: list[str] = []
        for sock in (conn.command_sock, conn.image_sock):
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                # Peer already gone
                if e.errno != errno.ENOTCONN:
                    failure = failure or DisconnectFailure.CLOSE_FAILED
                    details.append(f"shutdown: {e}")
            try:
                sock.close()
            except OSError as e:
                failure = failure or DisconnectFailure.SOCKET_RELEASE_FAILED
                details.append(f"close: {e}")
        if failure is not None:
            raise DisconnectError(failure, "; ".join(details))


# =============================================================================
# Command Channel
# =============================================================================


class _Channel:
    """Request/response bookkeeping shared by both channels.

    A request whose response timed out is still owed by the device. Its late
    response must be read and discarded before the next request is sent,
    otherwise it would be taken as the answer to that request.
    """

    def __init__(self, manager: ConnectionManager, config: ClientConfig) -> None:
        self._manager = manager
        self._config = config
        self._lock = threading.Lock()
        self._sock: socket.socket | None = None
        self._owed = 0  # responses not yet read
        self._inbox = bytearray()  # partial bytes of the oldest owed response

    def _bind(self, sock: socket.socket) -> None:
        """Reset the bookkeeping when the connection was replaced."""
        if sock is not self._sock:
            self._sock = sock
            self._owed = 0
            self._inbox = bytearray()

    def _settle(self, sock: socket.socket, timeout: float) -> None:
        """Read and discard every owed response within `timeout`."""
        if not self._owed:
            return
        deadline = time.monotonic() + timeout
        while self._owed:
            self._read_response(sock, deadline)
            logger.debug("Discarded late response (%d bytes)", len(self._inbox))
            self._owed -= 1
            self._inbox = bytearray()

    def _read_response(self, sock: socket.socket, deadline: float) -> None:
        raise NotImplementedError


class CommandChannel(_Channel):
    """Synchronous parameter get/set over the command socket."""

    def get(self, param: ParamId | Parameter | str) -> Any:
        """Read a parameter.

        Args:
            param: Catalog identifier.

        Returns:
            The decoded value (int, float, bool, str or NamedTuple).

        Raises:
            ValueError: If the parameter is write-only.
            CommandError: TIMEOUT or COMMUNICATION_FAILURE.
        """
        p = lookup(param)
        if not p.readable:
            raise ValueError(f"{p.name} cannot be read")
        payload = self._transact(p, p.get_opcode, b"")
        try:
            return decode_value(p, payload)
        except ProtocolError as e:
            raise CommandError(StatusTag.COMMUNICATION_FAILURE, p.name, str(e)) from e

    def set(self, param: ParamId | Parameter | str, value: Any = None) -> None:
        """Write a parameter, or fire a trigger when `value` is None.

        Args:
            param: Catalog identifier.
            value: New value; omitted for triggers.

        Raises:
            ValueError: If the parameter is read-only.
            TypeError: If the value has the wrong type.
            OutOfBoundsError: If the value is outside the documented range,
                detected locally or reported by the device.
            CommandError: TIMEOUT, COMMUNICATION_FAILURE, INVALID_ORDERING
                or MODE_CONFLICT.
        """
        p = lookup(param)
        if not p.writable:
            raise ValueError(f"{p.name} cannot be written")
        value = p.validate(value, check=self._config.precheck_bounds)
        try:
            payload = encode_value(p, value)
        except struct.error:
            minimum, maximum = p.bounds or (None, None)
            raise OutOfBoundsError(p.name, value, minimum, maximum) from None
        self._transact(p, p.set_opcode, payload, value=value)

    def _transact(
        self,
        p: Parameter,
        opcode: int,
        payload: bytes,
        *,
        value: Any = None,
    ) -> bytes:
        sock = self._manager.command_socket
        if sock is None:
            # Nothing sent, so even a trigger is safe to retry
            raise CommandError(
                StatusTag.COMMUNICATION_FAILURE, p.name, f"{p.name}: not connected"
            )

        timeout = self._config.command_timeout
        with self._lock:
            self._bind(sock)
            try:
                self._settle(sock, timeout)
            except (_ReadTimeout, socket.timeout) as e:
                raise CommandError(
                    StatusTag.COMMUNICATION_FAILURE,
                    p.name,
                    f"{p.name}: earlier response still outstanding, reconnect",
                ) from e
            except (_PeerClosed, ProtocolError, OSError) as e:
                raise CommandError(
                    StatusTag.COMMUNICATION_FAILURE, p.name, f"{p.name}: {e}"
                ) from e

            deadline = time.monotonic() + timeout
            try:
                _drain(sock)
                sock.settimeout(timeout)
                sock.sendall(build_request(opcode, payload))
                self._owed += 1
                logger.debug("-> 0x%04X %s", opcode, payload.hex())
                self._read_response(sock, deadline)
                self._owed -= 1
                response, self._inbox = bytes(self._inbox), bytearray()
                status, _ = parse_response_header(
                    response[: RESPONSE_HEADER.size], opcode
                )
                body = response[RESPONSE_HEADER.size :]
            except (_ReadTimeout, socket.timeout) as e:
                raise CommandError(
                    StatusTag.TIMEOUT,
                    p.name,
                    f"{p.name}: no response within {timeout}s",
                    one_shot=p.one_shot,
                ) from e
            except (_PeerClosed, ProtocolError, OSError) as e:
                raise CommandError(
                    StatusTag.COMMUNICATION_FAILURE,
                    p.name,
                    f"{p.name}: {e}",
                    one_shot=p.one_shot,
                ) from e

        logger.debug("<- 0x%04X status %d %s", opcode, status, body.hex())
        tag = map_status(status, p.family)
        raise_for_status(tag, p.name, value=value, bounds=p.bounds, one_shot=p.one_shot)
        return body

    def _read_response(self, sock: socket.socket, deadline: float) -> None:
        _recv_into(sock, self._inbox, RESPONSE_HEADER.size, deadline)
        _, _, length = RESPONSE_HEADER.unpack(self._inbox[: RESPONSE_HEADER.size])
        if length > MAX_PAYLOAD:
            raise ProtocolError(f"Payload length {length} exceeds {MAX_PAYLOAD}")
        _recv_into(sock, self._inbox, RESPONSE_HEADER.size + length, deadline)


# =============================================================================
# Image Channel
# =============================================================================


class ImageChannel(_Channel):
    """Reads one complete frame per call from the image socket."""

    def get_image(self) -> tuple[ImageHeader, NDArray[np.int16]]:
        """Read a frame and decode its header.

        Returns:
            Tuple of (header, 64x64 int16 pixels).

        Raises:
            ImageError: TIMEOUT, COMMUNICATION_FAILURE or CONNECTION_CLOSED.
        """
        raw, pixels = self.get_image_raw_header()
        try:
            header = decode_raw_header(raw)
        except FrameFormatError as e:
            raise ImageError(ImageFailure.COMMUNICATION_FAILURE, str(e)) from e
        return header, pixels

    def get_image_raw_header(self) -> tuple[NDArray[np.int32], NDArray[np.int16]]:
        """Read a frame without decoding the header.

        The 60 header words are returned exactly as the device sent them, in
        the layout of native capture files.

        Returns:
            Tuple of ((60,) int32 raw header, 64x64 int16 pixels).

        Raises:
            ImageError: TIMEOUT, COMMUNICATION_FAILURE or CONNECTION_CLOSED.
        """
        data = self._read_frame()
        try:
            return parse_frame(data)
        except (FrameIncompleteError, FrameFormatError) as e:
            raise ImageError(ImageFailure.COMMUNICATION_FAILURE, str(e)) from e

    def _read_frame(self) -> bytes:
        sock = self._manager.image_socket
        if sock is None:
            raise ImageError(ImageFailure.CONNECTION_CLOSED, "Not connected")

        timeout = self._config.image_timeout
        with self._lock:
            self._bind(sock)
            try:
                self._settle(sock, timeout)
            except (_ReadTimeout, socket.timeout) as e:
                raise ImageError(
                    ImageFailure.COMMUNICATION_FAILURE,
                    "Earlier frame still outstanding, reconnect",
                ) from e
            except (_PeerClosed, ConnectionError) as e:
                raise ImageError(ImageFailure.CONNECTION_CLOSED, str(e)) from e
            except OSError as e:
                raise ImageError(self._failure(), str(e)) from e

            deadline = time.monotonic() + timeout
            try:
                _drain(sock)
                sock.settimeout(timeout)
                sock.sendall(build_request(IMAGE_REQUEST))
                self._owed += 1
                self._read_response(sock, deadline)
                self._owed -= 1
                frame, self._inbox = bytes(self._inbox), bytearray()
                return frame
            except _ReadTimeout as e:
                if e.received:
                    raise ImageError(
                        ImageFailure.COMMUNICATION_FAILURE,
                        f"Truncated frame: {e.received} of {FRAME_SIZE} bytes",
                    ) from e
                raise ImageError(
                    ImageFailure.TIMEOUT, f"No frame within {timeout}s"
                ) from e
            except socket.timeout as e:
                raise ImageError(ImageFailure.TIMEOUT, "Image request timed out") from e
            except (_PeerClosed, ConnectionError) as e:
                raise ImageError(ImageFailure.CONNECTION_CLOSED, str(e)) from e
            except OSError as e:
                raise ImageError(self._failure(), str(e)) from e

    def _read_response(self, sock: socket.socket, deadline: float) -> None:
        _recv_into(sock, self._inbox, FRAME_SIZE, deadline)

    def _failure(self) -> ImageFailure:
        """Classify a socket error by whether the link was torn down."""
        if not self._manager.is_connected:
            return ImageFailure.CONNECTION_CLOSED
        return ImageFailure.COMMUNICATION_FAILURE


# =============================================================================
# Device (Facade)
# =============================================================================


@dataclasses.dataclass(kw_only=True, slots=True)
class ClamirDevice:
    """CLAMIR system interface.

    Usage:
      with ClamirDevice() as dev:
          dev.connect("192.168.1.77")
          dev.set(ParamId.KI, 500)
          header, pixels = dev.get_image()
    """

    config: ClientConfig = dataclasses.field(default_factory=ClientConfig)
    connection: ConnectionManager = dataclasses.field(init=False, repr=False)
    commands: CommandChannel = dataclasses.field(init=False, repr=False)
    images: ImageChannel = dataclasses.field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.connection = ConnectionManager(self.config)
        self.commands = CommandChannel(self.connection, self.config)
        self.images = ImageChannel(self.connection, self.config)

    def __enter__(self) -> ClamirDevice:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        try:
            self.disconnect()
        except DisconnectError as e:
            if exc_type is None:
                raise
            # Keep the exception already leaving the with block
            logger.debug("Disconnect failed while unwinding: %s", e)

    def connect(self, ip: str = DEFAULT_IP) -> None:
        """Connect to the device (see `ConnectionManager.connect`)."""
        self.connection.connect(ip)

    def disconnect(self) -> None:
        """Disconnect from the device (see `ConnectionManager.disconnect`)."""
        self.connection.disconnect()

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    def get(self, param: ParamId | Parameter | str) -> Any:
        return self.commands.get(param)

    def set(self, param: ParamId | Parameter | str, value: Any = None) -> None:
        self.commands.set(param, value)

    def trigger(self, param: ParamId | Parameter | str) -> None:
        """Fire a one-shot command.

        Each accepted call performs its side effect once. A TIMEOUT leaves it
        unknown whether the device acted; the raised error has
        ``retry_safe == False``.
        """
        p = lookup(param)
        if not p.one_shot:
            raise ValueError(f"{p.name} is not a trigger")
        self.commands.set(p)

    def auto_calibrate(self) -> None:
        """Close the shutter, capture a background frame, reopen."""
        self.trigger(ParamId.AUTO_CALIBRATE)

    def update_set_point(self) -> None:
        """Replace the set point width with the manual reference width."""
        self.trigger(ParamId.UPDATE_SET_POINT)

    def save_embedded_configuration(self) -> None:
        """Persist the current parameters as the power-on configuration."""
        self.trigger(ParamId.SAVE_EMBEDDED_CONFIGURATION)

    def get_image(self) -> tuple[ImageHeader, NDArray[np.int16]]:
        return self.images.get_image()

    def get_image_raw_header(self) -> tuple[NDArray[np.int32], NDArray[np.int16]]:
        return self.images.get_image_raw_header()

    def read_device_info(self) -> dict[str, Any]:
        """Read identification registers.

        Returns:
            Dictionary with:
            - serial_number: 7-character serial number
            - sw_version: embedded software version
        """
        return {
            "serial_number": self.get(ParamId.SERIAL_NUMBER),
            "sw_version": self.get(ParamId.EMBEDDED_SW_VERSION),
        }

    def read_all(self) -> dict[ParamId, Any]:
        """Read every readable parameter, in catalog order."""
        return {pid: self.get(pid) for pid, p in CATALOG.items() if p.readable}
