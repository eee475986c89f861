"""IPv4 allowlist matching.

Rules are either a bare address (exact match, implicit ``/32``) or
``address/prefix``. Anything that does not parse never matches, so a typo in
the allowlist denies traffic instead of letting it through.

IPv6 is not supported: IPv6 clients and IPv6 rules never match.
"""

from __future__ import annotations

from collections.abc import Iterable

FULL_MASK = 0xFFFFFFFF
IPV4_BITS = 32
OCTET_MAX = 255


def _is_number(text: str) -> bool:
    return text.isascii() and text.isdigit()


def parse_ipv4(address: str) -> int | None:
    """Return the 32-bit integer value of a dotted-quad address, or None."""
    parts = address.strip().split(".")
    if len(parts) != 4:
        return None

    value = 0
    for part in parts:
        if not _is_number(part) or len(part) > 3:
            return None
        octet = int(part)
        if octet > OCTET_MAX:
            return None
        value = (value << 8) | octet
    return value


def prefix_mask(prefix_length: int) -> int:
    """Return the network mask for a prefix length between 0 and 32."""
    return (FULL_MASK << (IPV4_BITS - prefix_length)) & FULL_MASK


def matches(ip: str, rule: str) -> bool:
    """Return True if ``ip`` falls inside ``rule``.

    Args:
        ip: Client address in dotted-quad form.
        rule: Bare address or ``address/prefix`` network.

    Returns:
        False for malformed input on either side; never raises.
    """
    candidate = parse_ipv4(ip)
    if candidate is None:
        return False

    network_part, sep, prefix_part = rule.strip().partition("/")
    network = parse_ipv4(network_part)
    if network is None:
        return False

    prefix_length = IPV4_BITS
    if sep:
        prefix_part = prefix_part.strip()
        if not _is_number(prefix_part):
            return False
        prefix_length = int(prefix_part)
        if prefix_length > IPV4_BITS:
            return False

    mask = prefix_mask(prefix_length)
    return (candidate & mask) == (network & mask)


def ip_allowed(ip: str, rules: Iterable[str]) -> bool:
    """Apply an allowlist to a client address.

    An empty allowlist places no restriction on the caller.
    """
    rule_list = [rule for rule in rules if rule.strip()]
    if not rule_list:
        return True
    return any(matches(ip, rule) for rule in rule_list)
