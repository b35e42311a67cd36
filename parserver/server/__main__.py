"""parserver CLI — run with: python3 -m parserver.server [OPTIONS] DEVICE"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from parserver import __version__
from parserver.port import MemoryPort, PpdevPort
from .daemon import (
    DEFAULT_LISTEN_IP, DEFAULT_LISTEN_PORT, DEFAULT_PID_PATH, DEFAULT_SOCK_PATH,
    ParServer, ServerConfig,
)
from .listener import (
    AlreadyRunningError, StartupError, TcpEndpoint, UnixEndpoint,
    probe_tcp, probe_unix_socket,
)

log = logging.getLogger("parserver")
console = Console(stderr=True, highlight=False)


def _read_pid(pid_path: Path) -> int | None:
    """Read PID from pidfile. Returns None if missing, unreadable or stale."""
    try:
        text = pid_path.read_text()
    except FileNotFoundError:
        return None
    except OSError as e:
        log.warning("Could not read pid file %s: %s", pid_path, e.strerror or e)
        return None
    try:
        pid = int(text.strip())
    except ValueError:
        pid_path.unlink(missing_ok=True)
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        pid_path.unlink(missing_ok=True)
        return None
    except PermissionError:
        # Alive, but owned by someone else.
        pass
    return pid


def _endpoint(args) -> UnixEndpoint | TcpEndpoint:
    if args.listen is not None:
        return TcpEndpoint(args.listen, args.port)
    return UnixEndpoint(args.path)


def cmd_status(args):
    """Probe the endpoint and exit 0 if a server answers, 1 otherwise."""
    endpoint = _endpoint(args)
    if isinstance(endpoint, TcpEndpoint):
        alive = probe_tcp(endpoint.host, endpoint.port)
    else:
        alive = probe_unix_socket(endpoint.path)
    if alive:
        console.print(f"parserver is [green]running[/] on {escape(str(endpoint))}")
        pid = _read_pid(Path(args.pidfile))
        if pid:
            console.print(f"  PID file: {args.pidfile} ({pid})")
        sys.exit(0)
    console.print(f"parserver is [red]not running[/] on {escape(str(endpoint))}")
    sys.exit(1)


def cmd_stop(args):
    """Send SIGTERM to the daemon named in the pid file."""
    pid = _read_pid(Path(args.pidfile))
    if not pid:
        console.print(f"parserver is not running (no live pid in {args.pidfile}).")
        sys.exit(1)
    console.print(f"Stopping parserver (PID {pid})...")
    try:
        os.kill(pid, signal.SIGTERM)
    except PermissionError:
        console.print(f"[red]Not allowed to signal PID {pid}.[/]")
        sys.exit(1)
    console.print("Stop signal sent.")


def _daemonize(pid_path: Path):
    """Fork. The parent records the child's pid and exits; the child detaches."""
    child_pid = os.fork()
    if child_pid > 0:
        try:
            pid_path.write_text(f"{child_pid}\n")
        except OSError as e:
            console.print(
                f"[red]Failed to write pidfile `{pid_path}': {e.strerror or e}[/] "
                f"(child is still running as {child_pid})"
            )
            os._exit(1)
        # _exit: the child owns the socket and device now, skip cleanup.
        os._exit(0)

    os.setsid()
    devnull = os.open(os.devnull, os.O_RDWR)
    os.dup2(devnull, 0)
    os.dup2(devnull, 1)
    os.dup2(devnull, 2)
    os.close(devnull)


def cmd_run(args):
    """Bind, open the device, optionally fork, then serve until signalled."""
    if args.simulate:
        device = MemoryPort()
    else:
        device = PpdevPort(args.device)

    pid_path = Path(args.pidfile) if args.daemon else None
    config = ServerConfig(endpoint=_endpoint(args), pid_path=pid_path)
    server = ParServer(config, device)

    try:
        server.start()
    except AlreadyRunningError as e:
        log.warning("%s", e)
        sys.exit(0)
    except StartupError as e:
        log.error("%s", e)
        sys.exit(1)

    if args.daemon:
        _daemonize(pid_path)

    try:
        asyncio.run(server.run_forever())
    finally:
        server.close()
    sys.exit(0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="parserver",
        description="parserver — parallel port interface server",
        epilog="Unless -l is given it listens on a Unix domain socket. "
               "DEVICE is usually /dev/parport0.",
    )
    parser.add_argument("device", nargs="?", metavar="DEVICE", help="Parallel port device")
    parser.add_argument("--port", "-p", type=int, default=DEFAULT_LISTEN_PORT,
                        help=f"Port to use for TCP [default: {DEFAULT_LISTEN_PORT}]")
    parser.add_argument("--listen", "-l", nargs="?", const=DEFAULT_LISTEN_IP, metavar="IP",
                        help=f"Listen on TCP [default ip: {DEFAULT_LISTEN_IP}]")
    parser.add_argument("--path", "-s", default=DEFAULT_SOCK_PATH, metavar="FILE",
                        help=f"Path to Unix domain socket [default: {DEFAULT_SOCK_PATH}]")
    parser.add_argument("--pidfile", "-n", default=DEFAULT_PID_PATH, metavar="FILE",
                        help=f"Path to pidfile when using --daemon [default: {DEFAULT_PID_PATH}]")
    parser.add_argument("--simulate", action="store_true",
                        help="Drive an in-memory port instead of DEVICE")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--daemon", "-d", action="store_true", help="Fork to background")
    group.add_argument("--status", action="store_true", help="Check whether a server answers")
    group.add_argument("--stop", action="store_true", help="Stop the daemon named in the pidfile")
    noise = parser.add_mutually_exclusive_group()
    noise.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    noise.add_argument("--quiet", "-q", action="store_true", help="Only warnings and errors")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def parse_args(argv=None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)

    # `-l /dev/parport0`: the optional IP swallowed the device.
    if args.listen is not None and not args.listen[:1].isdigit():
        if args.device is not None:
            console.print(f"Invalid listen address `{escape(args.listen)}', expected a numeric IPv4 address.")
            sys.exit(1)
        args.device = args.listen
        args.listen = DEFAULT_LISTEN_IP

    if args.device is None and not (args.simulate or args.status or args.stop):
        console.print("Missing device, see --help for usage.")
        sys.exit(1)
    return args


def setup_logging(verbose: bool = False, quiet: bool = False):
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="%H:%M:%S",
        handlers=[RichHandler(console=console, show_path=False, markup=False)],
    )


def main(argv=None):
    args = parse_args(argv)
    setup_logging(verbose=args.verbose, quiet=args.quiet)

    if args.status:
        cmd_status(args)
    elif args.stop:
        cmd_stop(args)
    else:
        if not args.quiet:
            console.print(f"[bold cyan]parserver-{__version__}[/] Parallel port interface server.\n")
        cmd_run(args)


if __name__ == "__main__":
    main()
