"""PinRegister — in-memory state of the eight data output lines."""

from dataclasses import dataclass

PIN_COUNT = 8


def _mask(pin: int) -> int:
    if not 0 <= pin < PIN_COUNT:
        raise ValueError(f"pin out of range: {pin}")
    return 1 << pin


@dataclass
class PinRegister:
    """Status byte (unused, always 0x00) followed by the data byte.

    Bit N of ``data_byte`` drives pin N. All pins start low.
    """

    status_byte: int = 0x00
    data_byte: int = 0x00

    def set(self, pin: int):
        self.data_byte |= _mask(pin)

    def clear(self, pin: int):
        self.data_byte &= ~_mask(pin) & 0xFF

    def toggle(self, pin: int):
        self.data_byte ^= _mask(pin)

    def is_high(self, pin: int) -> bool:
        return bool(self.data_byte & _mask(pin))

    def write_to(self, device):
        """Push status byte then data byte to the port device."""
        device.write_byte(self.status_byte)
        device.write_byte(self.data_byte)
