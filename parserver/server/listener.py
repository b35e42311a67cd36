"""Listening socket acquisition — Unix domain socket or TCP."""

import errno
import logging
import os
import socket
import stat
from dataclasses import dataclass

log = logging.getLogger(__name__)

BIND_ATTEMPTS = 3
UNIX_BACKLOG = 1
TCP_BACKLOG = 3
SOCKET_MODE = 0o666


class StartupError(RuntimeError):
    """The server could not acquire a resource it needs to run."""


class AlreadyRunningError(RuntimeError):
    """A live server already answers on the requested socket path."""


@dataclass(frozen=True, slots=True)
class UnixEndpoint:
    path: str

    def __str__(self):
        return f"socket `{self.path}'"


@dataclass(frozen=True, slots=True)
class TcpEndpoint:
    host: str
    port: int

    def __str__(self):
        return f"TCP {self.host}:{self.port}"


ListenEndpoint = UnixEndpoint | TcpEndpoint


def open_listener(endpoint: ListenEndpoint) -> socket.socket:
    """Return a bound, listening, non-blocking socket for ``endpoint``."""
    if isinstance(endpoint, UnixEndpoint):
        sock = open_unix_socket(endpoint.path)
    else:
        sock = open_tcp_socket(endpoint.host, endpoint.port)
    sock.setblocking(False)
    return sock


def close_listener(sock: socket.socket | None, endpoint: ListenEndpoint):
    """Close the listening socket and remove a Unix socket path."""
    if sock is not None:
        sock.close()
    if isinstance(endpoint, UnixEndpoint):
        try:
            os.unlink(endpoint.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("Could not remove socket `%s': %s", endpoint.path, e)


def probe_unix_socket(path: str) -> bool:
    """True when something accepts connections on ``path``."""
    probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        probe.connect(path)
        return True
    except OSError:
        return False
    finally:
        probe.close()


def probe_tcp(host: str, port: int, timeout: float = 1.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def _remove_stale(path: str):
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return
    if not stat.S_ISSOCK(st.st_mode):
        raise StartupError(f"`{path}' exists and is not a socket, refusing to remove it")
    log.warning("dead daemon detected, removing socket `%s'", path)
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def open_unix_socket(path: str) -> socket.socket:
    """Bind a Unix domain socket, recovering from a stale socket file.

    If the path is taken, a connect probe tells a live server (raise
    AlreadyRunningError, leave the file alone) from a dead one (unlink and
    retry). Gives up after BIND_ATTEMPTS binds.
    """
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        for attempt in range(1, BIND_ATTEMPTS + 1):
            try:
                sock.bind(path)
                break
            except OSError as e:
                if e.errno != errno.EADDRINUSE:
                    raise StartupError(f"failed to bind socket `{path}': {e.strerror or e}") from e
                if probe_unix_socket(path):
                    raise AlreadyRunningError(f"daemon already running on `{path}'") from None
                log.debug("bind attempt %d/%d on `%s' found a dead socket", attempt, BIND_ATTEMPTS, path)
                _remove_stale(path)
        else:
            raise StartupError(f"failed to bind socket `{path}' after {BIND_ATTEMPTS} attempts")
    except Exception:
        sock.close()
        raise

    try:
        os.chmod(path, SOCKET_MODE)
        sock.listen(UNIX_BACKLOG)
    except OSError as e:
        sock.close()
        close_listener(None, UnixEndpoint(path))
        raise StartupError(f"failed to listen on `{path}': {e.strerror or e}") from e

    log.info("Listening on socket `%s'", path)
    return sock


def open_tcp_socket(host: str, port: int) -> socket.socket:
    """Bind and listen on ``host:port`` with SO_REUSEADDR."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
        sock.listen(TCP_BACKLOG)
    except OSError as e:
        sock.close()
        raise StartupError(f"failed to listen on TCP {host}:{port}: {e.strerror or e}") from e

    bound_host, bound_port = sock.getsockname()[:2]
    log.info("Listening on TCP %s:%d", bound_host, bound_port)
    return sock
