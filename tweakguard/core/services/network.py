"""
Network guard — "are we online enough to download something?"

Online means at least one interface is up and carries a non-loopback
address. This is a local check only; nothing is contacted.
"""

from __future__ import annotations

import ipaddress
import logging
import socket

import psutil

logger = logging.getLogger(__name__)

_ADDRESS_FAMILIES = (socket.AF_INET, socket.AF_INET6)


def _is_loopback(address: str) -> bool:
    try:
        return ipaddress.ip_address(address.split("%", 1)[0]).is_loopback
    except ValueError:
        return False


def is_network_available() -> bool:
    try:
        stats = psutil.net_if_stats()
        addresses = psutil.net_if_addrs()
    except OSError as e:
        logger.debug("Network probe failed: %s", e)
        return False

    for name, stat in stats.items():
        if not stat.isup:
            continue
        for addr in addresses.get(name, []):
            if addr.family in _ADDRESS_FAMILIES and not _is_loopback(addr.address):
                return True
    return False
