"""Startup cleanup for a bind port left held by a previous host process."""

import logging
import os
import signal
import socket
import subprocess
import sys
import time

logger = logging.getLogger(__name__)

# Seconds to wait for the OS to release a port after terminating its holder
PORT_RELEASE_WAIT = 0.5


def bind_address(host: str) -> str:
    """Map a ZeroMQ wildcard host to an address socket.bind accepts."""
    return "0.0.0.0" if host in ("", "*") else host


def is_port_in_use(host: str, port: int) -> bool:
    """Check if a TCP port is currently in use."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((bind_address(host), port))
            return False
        except OSError:
            return True


def find_pid_using_port(port: int) -> int | None:
    """Find the PID of the process listening on the given port.

    Returns:
        PID if found, None otherwise
    """
    if sys.platform == "win32":
        return _find_pid_windows(port)
    return _find_pid_unix(port)


def _find_pid_windows(port: int) -> int | None:
    try:
        result = subprocess.run(
            ["netstat", "-ano"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        logger.warning(f"netstat failed: {e}")
        return None

    for line in result.stdout.splitlines():
        if f":{port} " in line and "LISTENING" in line:
            try:
                return int(line.split()[-1])
            except (ValueError, IndexError):
                continue
    return None


def _find_pid_unix(port: int) -> int | None:
    try:
        result = subprocess.run(
            ["lsof", "-i", f"TCP:{port}", "-s", "TCP:LISTEN", "-t"],
            capture_output=True,
            text=True,
            timeout=10,
        )
        output = result.stdout.strip()
        if output:
            return int(output.split()[0])
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError, ValueError) as e:
        logger.warning(f"lsof failed: {e}")
    return None


def kill_process(pid: int) -> bool:
    """Ask a process to terminate.

    Returns:
        True if the signal (or taskkill) succeeded, False otherwise
    """
    if sys.platform == "win32":
        try:
            result = subprocess.run(
                ["taskkill", "/PID", str(pid), "/F"],
                capture_output=True,
                timeout=10,
            )
            return result.returncode == 0
        except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
            logger.warning(f"taskkill {pid} failed: {e}")
            return False

    try:
        os.kill(pid, signal.SIGTERM)
        return True
    except (ProcessLookupError, PermissionError) as e:
        logger.warning(f"Failed to terminate process {pid}: {e}")
        return False


def cleanup_stale_port(host: str, port: int) -> bool:
    """Free a bind port held by a stale bridge process.

    Args:
        host: The bind host (ZeroMQ "*" is accepted)
        port: The port number

    Returns:
        True if the port is now available, False otherwise
    """
    if not is_port_in_use(host, port):
        return True

    logger.info(f"Port {port} is in use, looking for a stale holder...")

    pid = find_pid_using_port(port)
    if pid is None:
        logger.warning(f"Could not find the process holding port {port}")
        return False

    if pid == os.getpid():
        logger.warning(f"Port {port} is held by this process (PID {pid}), not cleaning")
        return False

    logger.info(f"Terminating process {pid} holding port {port}")
    if not kill_process(pid):
        return False

    time.sleep(PORT_RELEASE_WAIT)
    if is_port_in_use(host, port):
        logger.warning(f"Process {pid} terminated but port {port} is still in use")
        return False

    logger.info(f"Port {port} released")
    return True
