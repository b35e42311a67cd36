"""parserver client — send one command, get one reply."""

from .client import ParClient, send_command
