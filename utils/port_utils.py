import socket
import psutil
import logging
from typing import Optional, Dict

logger = logging.getLogger(__name__)


def is_port_in_use(port: int, host: str = '127.0.0.1') -> bool:
    """True if the port cannot be bound on host"""
    bind_host = '127.0.0.1' if host in ('', '0.0.0.0') else host
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.settimeout(1)
            s.bind((bind_host, port))
            return False
        except OSError:
            return True


def get_process_using_port(port: int) -> Optional[Dict]:
    """Info about the process listening on the port, if it can be determined"""
    try:
        for conn in psutil.net_connections(kind='inet'):
            try:
                if (conn.laddr and conn.laddr.port == port and
                        conn.status == psutil.CONN_LISTEN and conn.pid):

                    process = psutil.Process(conn.pid)
                    if process.is_running():
                        return {
                            'name': process.name(),
                            'pid': process.pid,
                            'username': process.username(),
                        }
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
    except (psutil.AccessDenied, OSError) as e:
        # Listing sockets of other users needs elevated rights on some platforms
        logger.debug(f"Could not inspect listeners on port {port}: {e}")
    return None


def check_port_availability(port: int, host: str = '127.0.0.1') -> tuple[bool, str]:
    """Return (available, human readable reason)"""
    if not is_port_in_use(port, host):
        return True, "Port is free"

    process_info = get_process_using_port(port)
    if process_info:
        return False, (
            f"Port {port} is used by {process_info['name']} "
            f"(PID: {process_info['pid']}, user: {process_info['username']})"
        )
    return False, f"Port {port} is in use"
