"""Parallel port devices — ppdev-backed hardware port and an in-memory stand-in."""

import fcntl
import logging
import os
import struct
from abc import ABC, abstractmethod

log = logging.getLogger(__name__)

# ── ppdev ioctl numbers (linux/ppdev.h) ───────────────────────────────

_IOC_WRITE = 1
_PP_IOCTL = ord("p")


def _io(nr: int) -> int:
    return (_PP_IOCTL << 8) | nr


def _iow(nr: int, size: int) -> int:
    return (_IOC_WRITE << 30) | (size << 16) | (_PP_IOCTL << 8) | nr


PPSETMODE = _iow(0x80, struct.calcsize("i"))
PPWDATA = _iow(0x86, struct.calcsize("B"))
PPCLAIM = _io(0x8B)
PPRELEASE = _io(0x8C)
PPDATADIR = _iow(0x90, struct.calcsize("i"))

# linux/parport.h
IEEE1284_MODE_BYTE = 1 << 0
DIRECTION_OUTPUT = 0x00


class PortError(OSError):
    """A port device operation failed."""


class PortDevice(ABC):
    """Hardware output register collaborator.

    The server only ever calls :meth:`write_byte` while running; the other
    operations belong to :func:`open_port` and shutdown.
    """

    @abstractmethod
    def open(self) -> None: ...

    @abstractmethod
    def claim(self) -> None: ...

    @abstractmethod
    def set_mode(self, mode: int) -> None: ...

    @abstractmethod
    def set_direction(self, direction: int) -> None: ...

    @abstractmethod
    def write_byte(self, value: int) -> None: ...

    @abstractmethod
    def release(self) -> None:
        """Release the claim and close the device. Safe to call twice."""


class PpdevPort(PortDevice):
    """Linux ppdev character device, e.g. ``/dev/parport0``."""

    def __init__(self, path: str):
        self.path = path
        self._fd: int | None = None
        self._claimed = False

    def _ioctl(self, request: int, arg, what: str):
        if self._fd is None:
            raise PortError(f"{self.path} is not open")
        try:
            fcntl.ioctl(self._fd, request, arg)
        except OSError as e:
            raise PortError(e.errno, f"{what} failed on {self.path}: {e.strerror}") from e

    def open(self):
        try:
            self._fd = os.open(self.path, os.O_RDWR)
        except OSError as e:
            raise PortError(e.errno, f"Failed to open parallel port `{self.path}': {e.strerror}") from e

    def claim(self):
        self._ioctl(PPCLAIM, 0, "claim")
        self._claimed = True

    def set_mode(self, mode: int):
        self._ioctl(PPSETMODE, struct.pack("i", mode), "set mode")

    def set_direction(self, direction: int):
        self._ioctl(PPDATADIR, struct.pack("i", direction), "set direction")

    def write_byte(self, value: int):
        self._ioctl(PPWDATA, struct.pack("B", value & 0xFF), "write data")

    def release(self):
        if self._fd is None:
            return
        if self._claimed:
            try:
                fcntl.ioctl(self._fd, PPRELEASE, 0)
            except OSError as e:
                log.warning("Could not release %s: %s", self.path, e)
            self._claimed = False
        os.close(self._fd)
        self._fd = None

    def __repr__(self):
        return f"PpdevPort({self.path!r})"


class MemoryPort(PortDevice):
    """Port that records every byte written. Used by ``--simulate`` and tests."""

    def __init__(self):
        self.writes: list[int] = []
        self.mode: int | None = None
        self.direction: int | None = None
        self.is_open = False
        self.claimed = False

    def open(self):
        self.is_open = True

    def claim(self):
        self.claimed = True

    def set_mode(self, mode: int):
        self.mode = mode

    def set_direction(self, direction: int):
        self.direction = direction

    def write_byte(self, value: int):
        self.writes.append(value & 0xFF)
        log.debug("simulated write: 0x%02x", value & 0xFF)

    def release(self):
        self.claimed = False
        self.is_open = False

    def __repr__(self):
        return "MemoryPort()"


def open_port(device: PortDevice) -> PortDevice:
    """Open, claim and configure ``device`` for byte-mode output.

    On any failure the device is released again before the PortError
    propagates.
    """
    device.open()
    try:
        device.claim()
        device.set_mode(IEEE1284_MODE_BYTE)
        device.set_direction(DIRECTION_OUTPUT)
    except PortError:
        device.release()
        raise
    return device
