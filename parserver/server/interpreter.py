"""CommandInterpreter — applies protocol commands to the pin register."""

import asyncio
import logging

from parserver.port import PortDevice, PortError
from .pins import PinRegister
from .protocol import (
    PinAction, ProtocolError, SetCommand, StrobeCommand, UnknownCommand,
    format_reply, parse_command,
)

log = logging.getLogger(__name__)

OK = format_reply(True, "ok")


class CommandInterpreter:
    """Turns one request line into register mutations, device writes and a reply.

    Holds no state of its own between requests; everything persistent lives
    in the shared PinRegister.
    """

    def __init__(self, register: PinRegister, device: PortDevice, sleep=asyncio.sleep):
        self.register = register
        self.device = device
        self._sleep = sleep
        self._handlers = {
            SetCommand: self._handle_set,
            StrobeCommand: self._handle_strobe,
            UnknownCommand: self._handle_unknown,
        }

    async def execute(self, line: str) -> str:
        """Run one request line and return the reply text (no newline)."""
        try:
            command = parse_command(line)
        except ProtocolError as e:
            log.info("rejected %r: %s", line, e)
            return format_reply(False, str(e))
        handler = self._handlers[type(command)]
        return await handler(command)

    # ── Handlers ──────────────────────────────────────────────────────

    async def _handle_set(self, cmd: SetCommand) -> str:
        if cmd.action is PinAction.HI:
            self.register.set(cmd.pin)
        elif cmd.action is PinAction.LOW:
            self.register.clear(cmd.pin)
        else:
            self.register.toggle(cmd.pin)
        log.debug("pin %d %s → 0x%02x", cmd.pin, cmd.action.value, self.register.data_byte)
        return OK

    async def _handle_strobe(self, cmd: StrobeCommand) -> str:
        self.register.set(cmd.pin)
        try:
            self.register.write_to(self.device)
        except PortError as e:
            self.register.clear(cmd.pin)
            log.error("strobe on pin %d failed: %s", cmd.pin, e)
            return format_reply(False, f"write failed: {e.strerror or e}")
        # Only the rising edge is written here; the next loop refresh
        # pushes the cleared bit.
        await self._sleep(cmd.duration_ms / 1000)
        self.register.clear(cmd.pin)
        log.debug("strobed pin %d for %d ms", cmd.pin, cmd.duration_ms)
        return OK

    async def _handle_unknown(self, cmd: UnknownCommand) -> str:
        log.debug("unknown command: %s", cmd.verb)
        return format_reply(False, f"unknown command: {cmd.verb}")
