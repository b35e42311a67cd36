"""
parserver — Parallel port interface server.
Drives the eight data lines of a parallel port from a tiny text protocol
served over a Unix domain socket or TCP.

Usage:
    python3 -m parserver.server /dev/parport0
    python3 -m parserver.client set p3 hi
"""

__version__ = "1.8.0"
__author__ = "parserver contributors"
