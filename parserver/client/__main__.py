"""parserver client CLI — run with: python3 -m parserver.client set p3 hi"""

import argparse
import asyncio
import logging
import sys

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from parserver.server.daemon import DEFAULT_LISTEN_IP, DEFAULT_LISTEN_PORT, DEFAULT_SOCK_PATH
from parserver.server.listener import TcpEndpoint, UnixEndpoint
from parserver.server.protocol import ProtocolError
from .client import send_command

console = Console(highlight=False)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="parserver-client",
        description="Send one command to a parserver",
        epilog="Examples: `set p3 hi`, `set p0 toggle`, `strobe p5 250`.",
    )
    parser.add_argument("words", nargs="+", metavar="WORD", help="Command, e.g. set p3 hi")
    parser.add_argument("--path", "-s", default=DEFAULT_SOCK_PATH, metavar="FILE",
                        help=f"Unix domain socket [default: {DEFAULT_SOCK_PATH}]")
    parser.add_argument("--listen", "-l", nargs="?", const=DEFAULT_LISTEN_IP, metavar="IP",
                        help=f"Connect over TCP [default ip: {DEFAULT_LISTEN_IP}]")
    parser.add_argument("--port", "-p", type=int, default=DEFAULT_LISTEN_PORT,
                        help=f"TCP port [default: {DEFAULT_LISTEN_PORT}]")
    parser.add_argument("--timeout", type=float, default=5.0, help="Seconds to wait for the reply")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(message)s",
        datefmt="%H:%M:%S",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False, markup=False)],
    )

    if args.listen is not None:
        endpoint = TcpEndpoint(args.listen, args.port)
    else:
        endpoint = UnixEndpoint(args.path)

    line = " ".join(args.words)
    try:
        reply = send_command(endpoint, line, timeout=args.timeout)
    except (OSError, asyncio.TimeoutError) as e:
        console.print(f"[red]Cannot reach parserver on {escape(str(endpoint))}:[/] {escape(str(e))}")
        sys.exit(2)
    except ProtocolError as e:
        console.print(f"[red]{escape(str(e))}[/]")
        sys.exit(2)

    if reply.ok:
        console.print(f"[green]{escape(reply.message)}[/]")
        sys.exit(0)
    console.print(f"[red]{escape(reply.message)}[/]")
    sys.exit(1)


if __name__ == "__main__":
    main()
