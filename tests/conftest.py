"""Shared fixtures for the parserver test suite."""

import shutil
import tempfile
from pathlib import Path

import pytest

from parserver.port import MemoryPort
from parserver.server.interpreter import CommandInterpreter
from parserver.server.pins import PinRegister


@pytest.fixture
def memory_port():
    """An opened, claimed in-memory port."""
    port = MemoryPort()
    port.open()
    port.claim()
    return port


@pytest.fixture
def register():
    return PinRegister()


@pytest.fixture
def interpreter(register, memory_port):
    return CommandInterpreter(register, memory_port)


@pytest.fixture
def sock_dir():
    """Short directory for Unix socket paths (sun_path is limited to ~108 bytes)."""
    path = Path(tempfile.mkdtemp(prefix="ps-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)
