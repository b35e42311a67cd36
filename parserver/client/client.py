"""ParClient — async one-shot client for the parserver socket protocol."""

import asyncio
import logging

from parserver.server.listener import TcpEndpoint, UnixEndpoint
from parserver.server.protocol import Reply, encode_request, parse_reply

log = logging.getLogger(__name__)


class ParClient:
    """Talks to a parserver over a Unix socket or TCP.

    The server closes every connection after one reply, so each call opens
    a fresh connection.
    """

    def __init__(self, endpoint: UnixEndpoint | TcpEndpoint, timeout: float = 5.0):
        self._endpoint = endpoint
        self._timeout = timeout

    async def _open(self):
        if isinstance(self._endpoint, UnixEndpoint):
            return await asyncio.open_unix_connection(self._endpoint.path)
        return await asyncio.open_connection(self._endpoint.host, self._endpoint.port)

    async def call(self, line: str) -> Reply:
        """Send ``line`` and wait for the reply.

        Raises OSError when the server is unreachable, asyncio.TimeoutError
        when it does not answer in time and ProtocolError on a garbled reply.
        """
        request = encode_request(line)
        reader, writer = await asyncio.wait_for(self._open(), self._timeout)
        try:
            writer.write(request)
            await writer.drain()
            raw = await asyncio.wait_for(reader.readline(), self._timeout)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass
        log.debug("%s → %r", line, raw)
        return parse_reply(raw)

    async def set(self, pin: int, action: str) -> Reply:
        return await self.call(f"set p{pin} {action}")

    async def strobe(self, pin: int, duration_ms: int) -> Reply:
        return await self.call(f"strobe p{pin} {duration_ms}")


def send_command(endpoint: UnixEndpoint | TcpEndpoint, line: str, timeout: float = 5.0) -> Reply:
    """Blocking wrapper around ParClient.call for scripts."""
    return asyncio.run(ParClient(endpoint, timeout=timeout).call(line))
