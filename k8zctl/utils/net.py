import logging
import socket
import threading
from typing import Optional

from ..modules.provisioning.health import HealthGate

logger = logging.getLogger("k8zctl.utils.net")


def port_open(host: str, port: int, dial_timeout: float = 2.0) -> bool:
    """Return True if a TCP connection to host:port succeeds."""
    try:
        with socket.create_connection((host, port), timeout=dial_timeout):
            return True
    except OSError:
        return False


def wait_for_port(host: str, port: int, timeout: float, interval: float = 5.0,
                  dial_timeout: float = 2.0, cancel: Optional[threading.Event] = None) -> None:
    """Wait until host:port accepts TCP connections."""
    logger.info(f"⏳ Waiting for {host}:{port} to accept connections...")
    HealthGate(cancel).wait(
        lambda: port_open(host, port, dial_timeout),
        timeout=timeout,
        interval=interval,
        description=f"{host}:{port}",
    )
