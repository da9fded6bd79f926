"""Origin address classification.

Decides whether a request origin sits on a private network. Anything that
cannot be positively matched against a private range is treated as
external, so an unknown origin always has to authenticate.
"""

import ipaddress
from enum import Enum
from typing import Optional

IPV4_MAPPED_PREFIX = "::ffff:"

PRIVATE_NETWORKS = (
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
    ipaddress.IPv4Network("127.0.0.0/8"),
)


class Classification(str, Enum):
    PRIVATE = "private"
    EXTERNAL = "external"


def normalize_address(address: Optional[str]) -> str:
    """Strip whitespace and an IPv6-mapped-IPv4 prefix."""
    if not address:
        return ""
    address = address.strip()
    if address.lower().startswith(IPV4_MAPPED_PREFIX):
        address = address[len(IPV4_MAPPED_PREFIX):]
    return address


def classify(address: Optional[str]) -> Classification:
    """Classify an origin address as PRIVATE or EXTERNAL.

    Args:
        address: Client address as seen by the server (may be None/empty)

    Returns:
        Classification.PRIVATE for 10/8, 172.16/12, 192.168/16, 127/8;
        Classification.EXTERNAL for everything else, including garbage
    """
    try:
        ip = ipaddress.IPv4Address(normalize_address(address))
    except ValueError:
        return Classification.EXTERNAL

    if any(ip in network for network in PRIVATE_NETWORKS):
        return Classification.PRIVATE
    return Classification.EXTERNAL


def is_private(address: Optional[str]) -> bool:
    return classify(address) is Classification.PRIVATE
