"""ParServer — asyncio daemon driving a parallel port from a one-shot socket protocol."""

import asyncio
import logging
import os
import signal
import socket
from dataclasses import dataclass
from pathlib import Path

from parserver.port import PortDevice, PortError, open_port
from .interpreter import CommandInterpreter
from .listener import ListenEndpoint, StartupError, close_listener, open_listener
from .pins import PinRegister
from .protocol import MAX_REQUEST, decode_request, encode_reply

log = logging.getLogger(__name__)

DEFAULT_SOCK_PATH = "parserver.sock"
DEFAULT_PID_PATH = "parserver.pid"
DEFAULT_LISTEN_IP = "127.0.0.1"
DEFAULT_LISTEN_PORT = 7613
REQUEST_TIMEOUT = 5.0  # seconds a client gets to send its request


@dataclass(frozen=True)
class ServerConfig:
    endpoint: ListenEndpoint
    pid_path: Path | None = None
    request_timeout: float = REQUEST_TIMEOUT


class ParServer:
    """Serves one client at a time against a single port device.

    Owns the pin register, the device, the listening socket and the stop
    event. Clients are never handled concurrently: each connection is read,
    answered and closed before the next accept.
    """

    def __init__(self, config: ServerConfig, device: PortDevice):
        self.config = config
        self.device = device
        self.register = PinRegister()
        self.interpreter = CommandInterpreter(self.register, device)
        self._sock: socket.socket | None = None
        self._stop_event = asyncio.Event()
        self._device_open = False

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self):
        """Acquire the listening socket, then the device.

        Raises AlreadyRunningError or StartupError. Anything acquired before
        a StartupError is released again.
        """
        self._sock = open_listener(self.config.endpoint)
        log.debug("Opening device %r", self.device)
        try:
            open_port(self.device)
        except PortError as e:
            self.close()
            raise StartupError(str(e)) from e
        self._device_open = True

    def close(self):
        """Release the device, the socket (and its path) and the pid file."""
        if self._device_open:
            self.device.release()
            self._device_open = False
        if self._sock is not None:
            close_listener(self._sock, self.config.endpoint)
            self._sock = None
        pid_path = self.config.pid_path
        if pid_path and pid_path.exists():
            try:
                if pid_path.read_text().strip() == str(os.getpid()):
                    pid_path.unlink()
            except OSError as e:
                log.warning("Could not remove pid file %s: %s", pid_path, e)

    def stop(self):
        """Ask the connection loop to finish. Safe from a signal handler."""
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    @property
    def address(self):
        """Bound socket address: a path, or (host, port) for TCP."""
        return self._sock.getsockname() if self._sock is not None else None

    # ── Connection loop ───────────────────────────────────────────────

    def _refresh(self):
        log.debug("current output: 0x%02x", self.register.data_byte)
        try:
            self.register.write_to(self.device)
        except PortError as e:
            log.error("device write failed: %s", e)

    async def serve(self):
        """Run the accept loop until stop() is called or accept fails."""
        if self._sock is None:
            raise RuntimeError("serve() called before start()")
        loop = asyncio.get_running_loop()

        while not self._stop_event.is_set():
            self._refresh()
            client = await self._wait_for_client(loop)
            if client is None:
                break
            await self._handle_client(loop, client)

    async def _wait_for_client(self, loop) -> socket.socket | None:
        accept = asyncio.ensure_future(loop.sock_accept(self._sock))
        stopped = asyncio.ensure_future(self._stop_event.wait())
        await asyncio.wait({accept, stopped}, return_when=asyncio.FIRST_COMPLETED)
        stopped.cancel()

        if self._stop_event.is_set():
            if accept.done():
                if not accept.cancelled() and accept.exception() is None:
                    accept.result()[0].close()
            else:
                accept.cancel()
                try:
                    await accept
                except asyncio.CancelledError:
                    pass
            return None

        try:
            client, _ = accept.result()
        except OSError as e:
            log.error("accept error: %s", e)
            self._stop_event.set()
            return None
        return client

    async def _handle_client(self, loop, client: socket.socket):
        try:
            try:
                data = await asyncio.wait_for(
                    loop.sock_recv(client, MAX_REQUEST), self.config.request_timeout
                )
            except asyncio.TimeoutError:
                log.warning("client sent nothing within %.1fs, dropping it", self.config.request_timeout)
                return
            except OSError as e:
                log.error("failed to read client data: %s", e)
                return
            if not data:
                log.debug("client closed without sending a request")
                return

            line = decode_request(data)
            log.debug("client data: %s", line)
            reply = await self.interpreter.execute(line)

            try:
                await loop.sock_sendall(client, encode_reply(reply))
            except OSError as e:
                log.warning("failed to send reply: %s", e)
        finally:
            _shutdown(client)

    # ── Entry point ───────────────────────────────────────────────────

    async def run_forever(self):
        """Serve until SIGINT/SIGTERM. A second signal aborts immediately."""
        loop = asyncio.get_running_loop()

        def _signal_handler(sig):
            if self.stopping:
                log.critical("got signal %d again, aborting", sig)
                os.abort()
            log.info("got signal %d", sig)
            self.stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _signal_handler, sig)
        try:
            await self.serve()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
        log.info("Shutting down")


def _shutdown(client: socket.socket):
    try:
        client.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass  # peer already gone
    client.close()
