"""Host checks run before anything touches the engine."""

import errno
import logging
import os
import socket
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List

from stackpilot.errors import InvalidInput, WorkspacePermissionError


logger = logging.getLogger(__name__)


class Preflight(ABC):
    """Pre-deployment host checks."""

    @abstractmethod
    async def check(self, working_dir: Path, ports: Iterable[int]) -> List[str]:
        """Raise on blocking problems; return warnings."""
        pass


def port_in_use(port: int, host: str = "0.0.0.0") -> bool:
    """True when a TCP listener already holds ``port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError as e:
            return e.errno == errno.EADDRINUSE
    return False


class HostPreflight(Preflight):
    """Working directory and host port checks."""

    async def check(self, working_dir: Path, ports: Iterable[int]) -> List[str]:
        working_dir = Path(working_dir)
        if not working_dir.is_dir():
            raise InvalidInput(f"Working directory does not exist: {working_dir}")
        if not os.access(working_dir, os.W_OK | os.X_OK):
            raise WorkspacePermissionError(
                f"Working directory {working_dir} is not writable by uid {os.getuid()}; "
                f"fix ownership (e.g. 'sudo chown -R $USER {working_dir}')"
            )

        warnings = []
        for port in ports:
            if port_in_use(port):
                warnings.append(f"Host port {port} is already in use")

        for warning in warnings:
            logger.warning(warning)
        logger.info(f"Preflight passed for {working_dir}")
        return warnings
