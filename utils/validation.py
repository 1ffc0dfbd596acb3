"""Input validation utilities for ragent."""

import ipaddress
from typing import Optional, Tuple


def validate_port(port: int) -> Tuple[bool, Optional[str]]:
    """Validate a port number.

    Args:
        port: Port number to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(port, int) or isinstance(port, bool):
        return False, f"Port must be an integer, got {type(port).__name__}"

    if port < 0 or port > 65535:
        return False, f"Port must be between 0 and 65535, got {port}"

    return True, None


def validate_host(host: str) -> Tuple[bool, Optional[str]]:
    """Validate a host given as an IP address or hostname.

    Args:
        host: IP address or hostname

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not host:
        return False, "Host cannot be empty"

    try:
        ipaddress.ip_address(host)
        return True, None
    except ValueError:
        pass

    if len(host) > 253:
        return False, "Hostname too long"

    for label in host.rstrip(".").split("."):
        if not label or len(label) > 63:
            return False, f"Invalid hostname label in {host!r}"
        if label.startswith("-") or label.endswith("-"):
            return False, f"Invalid hostname label in {host!r}"
        if not all(c.isalnum() or c == "-" for c in label):
            return False, f"Invalid character in hostname {host!r}"

    return True, None


def parse_host_port(text: str, default_host: Optional[str] = None) -> Tuple[str, int]:
    """Parse ``host:port`` (or ``[v6]:port``) into a tuple.

    A bare ``:port`` uses *default_host*. Raises ValueError on bad input.
    """
    if not text:
        raise ValueError("Address cannot be empty")

    if text.startswith("["):
        end = text.find("]")
        if end < 0 or text[end + 1:end + 2] != ":":
            raise ValueError(f"Invalid address: {text!r}")
        host, port_text = text[1:end], text[end + 2:]
    else:
        host, sep, port_text = text.rpartition(":")
        if not sep:
            raise ValueError(f"Address must be host:port, got {text!r}")

    if not host:
        if default_host is None:
            raise ValueError(f"Address is missing a host: {text!r}")
        host = default_host

    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"Invalid port in {text!r}") from None

    valid, err = validate_port(port)
    if not valid:
        raise ValueError(err)
    valid, err = validate_host(host)
    if not valid:
        raise ValueError(err)

    return host, port
