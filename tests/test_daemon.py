"""Tests for parserver.server.daemon.ParServer — the connection loop end to end."""

import asyncio
import os
import signal
import socket
import time

import pytest

from parserver.client import ParClient
from parserver.port import MemoryPort, PortError
from parserver.server.daemon import ParServer, ServerConfig
from parserver.server.listener import AlreadyRunningError, StartupError, TcpEndpoint, UnixEndpoint


@pytest.fixture
def endpoint(sock_dir):
    return UnixEndpoint(str(sock_dir / "t.sock"))


@pytest.fixture
def server(endpoint):
    srv = ParServer(ServerConfig(endpoint=endpoint, request_timeout=0.5), MemoryPort())
    srv.start()
    yield srv
    srv.close()


async def _serving(server, body):
    """Run ``body(client)`` against a live connection loop, then stop it."""
    endpoint = server.config.endpoint
    if isinstance(endpoint, TcpEndpoint):
        host, port = server.address
        endpoint = TcpEndpoint(host, port)
    task = asyncio.create_task(server.serve())
    try:
        return await body(ParClient(endpoint, timeout=2.0))
    finally:
        server.stop()
        await asyncio.wait_for(task, 2.0)


async def _until(predicate, timeout=1.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestScenario:
    def test_set_strobe_unknown(self, server):
        """set hi, set low, strobe, unknown verb — the full happy path."""
        port = server.device
        reg = server.register

        async def body(client):
            reply = await client.call("set p3 hi")
            assert (reply.ok, reply.message) == (True, "ok")
            assert reg.is_high(3)

            await client.call("set p3 low")
            assert not reg.is_high(3)

            start = time.monotonic()
            reply = await client.call("strobe p5 10")
            assert reply.ok
            assert time.monotonic() - start >= 0.009
            assert any(b & (1 << 5) for b in port.writes)
            assert not reg.is_high(5)

            reply = await client.call("ping")
            assert (reply.ok, reply.message) == (False, "unknown command: ping")

        asyncio.run(_serving(server, body))

    def test_refresh_writes_register_every_iteration(self, server):
        """The top of each loop pushes status then data to the device."""
        port = server.device

        async def body(client):
            await _until(lambda: port.writes[-2:] == [0x00, 0x00])
            await client.call("set p0 hi")
            await _until(lambda: port.writes[-2:] == [0x00, 0x01])
            await client.call("set p7 toggle")
            await _until(lambda: port.writes[-2:] == [0x00, 0x81])

        asyncio.run(_serving(server, body))

    def test_strobe_clear_reaches_device_on_refresh(self, server):
        port = server.device

        async def body(client):
            await client.call("strobe p2 0")
            assert 0x04 in port.writes
            await _until(lambda: port.writes[-1] == 0x00)

        asyncio.run(_serving(server, body))

    def test_malformed_request_rejected(self, server):
        async def body(client):
            reply = await client.call("set p3")
            assert not reply.ok
            assert reply.message.startswith("usage")
            # The server is still alive afterwards.
            assert (await client.call("set p1 hi")).ok

        asyncio.run(_serving(server, body))
        assert server.register.data_byte == 0x02

    def test_tcp_endpoint(self):
        srv = ParServer(ServerConfig(endpoint=TcpEndpoint("127.0.0.1", 0)), MemoryPort())
        srv.start()
        try:
            async def body(client):
                return await client.call("set p6 hi")

            assert asyncio.run(_serving(srv, body)).ok
            assert srv.register.is_high(6)
        finally:
            srv.close()

    def test_client_helpers(self, server):
        """ParClient.set and ParClient.strobe build the wire commands."""
        port = server.device

        async def body(client):
            assert (await client.set(1, "hi")).ok
            assert server.register.is_high(1)
            assert (await client.strobe(6, 0)).ok
            assert 0x42 in port.writes
            assert not server.register.is_high(6)
            assert not (await client.set(1, "sideways")).ok

        asyncio.run(_serving(server, body))


class TestMisbehavingClients:
    def test_silent_client_dropped(self, server):
        """A client that never sends is dropped after the request timeout."""
        async def body(client):
            reader, writer = await asyncio.open_unix_connection(server.config.endpoint.path)
            try:
                assert await asyncio.wait_for(reader.read(), 2.0) == b""
            finally:
                writer.close()
            assert (await client.call("set p4 hi")).ok

        asyncio.run(_serving(server, body))
        assert server.register.is_high(4)

    def test_client_closes_without_request(self, server):
        async def body(client):
            s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            s.connect(server.config.endpoint.path)
            s.close()
            assert (await client.call("set p1 hi")).ok

        asyncio.run(_serving(server, body))

    def test_raw_newline_terminated_request(self, server):
        async def body(client):
            reader, writer = await asyncio.open_unix_connection(server.config.endpoint.path)
            writer.write(b"SET p2 HI\n")
            await writer.drain()
            reply = await asyncio.wait_for(reader.read(), 2.0)
            writer.close()
            return reply

        assert asyncio.run(_serving(server, body)) == b"1;ok\n"

    def test_read_error_skips_request(self, server, monkeypatch):
        """A failed read drops that client only; the next one is served."""
        async def body(client):
            loop = asyncio.get_running_loop()
            real_recv = loop.sock_recv
            failures = []

            async def flaky_recv(sock, n):
                if not failures:
                    failures.append(sock)
                    raise ConnectionResetError(104, "Connection reset by peer")
                return await real_recv(sock, n)

            monkeypatch.setattr(loop, "sock_recv", flaky_recv)
            reader, writer = await asyncio.open_unix_connection(server.config.endpoint.path)
            writer.write(b"set p2 hi\n")
            await writer.drain()
            assert await asyncio.wait_for(reader.read(), 2.0) == b""
            writer.close()
            assert not server.register.is_high(2)

            assert (await client.call("set p3 hi")).ok
            assert len(failures) == 1

        asyncio.run(_serving(server, body))
        assert server.register.data_byte == 0x08


class TestLifecycle:
    def test_stop_before_any_client(self, server):
        async def main():
            task = asyncio.create_task(server.serve())
            await asyncio.sleep(0.01)
            server.stop()
            await asyncio.wait_for(task, 1.0)

        asyncio.run(main())
        assert server.stopping

    def test_close_removes_socket_and_releases_device(self, endpoint):
        port = MemoryPort()
        srv = ParServer(ServerConfig(endpoint=endpoint), port)
        srv.start()
        assert os.path.exists(endpoint.path)
        assert port.claimed

        srv.close()
        assert not os.path.exists(endpoint.path)
        assert not port.claimed

    def test_device_failure_cleans_up_socket(self, endpoint):
        class Unclaimable(MemoryPort):
            def claim(self):
                raise PortError(16, "Could not claim parallel port")

        srv = ParServer(ServerConfig(endpoint=endpoint), Unclaimable())
        with pytest.raises(StartupError, match="claim"):
            srv.start()
        assert not os.path.exists(endpoint.path)

    def test_second_instance_refused(self, server, endpoint):
        other = ParServer(ServerConfig(endpoint=endpoint), MemoryPort())
        with pytest.raises(AlreadyRunningError):
            other.start()
        assert os.path.exists(endpoint.path)

    def test_pid_file_removed_on_close(self, endpoint, tmp_path):
        pid_path = tmp_path / "parserver.pid"
        pid_path.write_text(f"{os.getpid()}\n")
        srv = ParServer(ServerConfig(endpoint=endpoint, pid_path=pid_path), MemoryPort())
        srv.start()
        srv.close()
        assert not pid_path.exists()

    def test_foreign_pid_file_kept(self, endpoint, tmp_path):
        pid_path = tmp_path / "parserver.pid"
        pid_path.write_text("1\n")
        srv = ParServer(ServerConfig(endpoint=endpoint, pid_path=pid_path), MemoryPort())
        srv.start()
        srv.close()
        assert pid_path.exists()

    def test_sigterm_stops_run_forever(self, server):
        async def main():
            task = asyncio.create_task(server.run_forever())
            client = ParClient(server.config.endpoint, timeout=2.0)
            assert (await client.call("set p0 hi")).ok
            os.kill(os.getpid(), signal.SIGTERM)
            await asyncio.wait_for(task, 2.0)

        asyncio.run(main())
        assert server.stopping

    def test_stop_during_strobe_deferred(self, server):
        """A stop mid-strobe waits for the hold to finish and the reply to go out."""
        async def main():
            task = asyncio.create_task(server.serve())
            client = ParClient(server.config.endpoint, timeout=2.0)
            start = time.monotonic()
            call = asyncio.create_task(client.call("strobe p3 200"))
            await asyncio.sleep(0.05)
            server.stop()
            assert not task.done()
            reply = await call
            elapsed = time.monotonic() - start
            await asyncio.wait_for(task, 2.0)
            return reply, elapsed

        reply, elapsed = asyncio.run(main())
        assert (reply.ok, reply.message) == (True, "ok")
        assert elapsed >= 0.19
        assert server.register.data_byte == 0x00
        assert server.stopping

    def test_accept_failure_ends_loop(self, server):
        """A broken listening socket ends the loop instead of spinning."""
        server._sock.close()

        async def main():
            await asyncio.wait_for(server.serve(), 2.0)

        asyncio.run(main())
        assert server.stopping
