"""parserver server — parallel port output over a Unix domain or TCP socket."""

from .daemon import ParServer, ServerConfig, DEFAULT_SOCK_PATH, DEFAULT_PID_PATH, DEFAULT_LISTEN_PORT
from .listener import UnixEndpoint, TcpEndpoint, StartupError, AlreadyRunningError
from .protocol import parse_command, format_reply, ProtocolError
