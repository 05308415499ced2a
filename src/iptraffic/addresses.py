"""Address normalization shared by the parsers and the connection table."""

from __future__ import annotations

import ipaddress
import re

from iptraffic.errors import AddressError

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


def normalize_ip(text: str) -> str:
    """Return the canonical textual form of an address.

    Accepts dotted-decimal IPv4, IPv6, kernel-order hex as found in
    ``/proc/net/tcp`` (8 or 32 digits, optionally ``0x``-prefixed), and a
    decimal integer holding a raw ``__be32`` read as a little-endian host
    integer. IPv4-mapped IPv6 addresses collapse to IPv4.
    """
    raw = text.strip().strip("[]")
    if not raw:
        raise AddressError("empty address")

    if "." in raw or ":" in raw:
        try:
            addr = ipaddress.ip_address(raw)
        except ValueError as exc:
            raise AddressError(f"not an IP address: {text!r}") from exc
        return _canonical(addr)

    if raw.lower().startswith("0x"):
        digits = raw[2:]
        if not digits or not _HEX_RE.match(digits) or len(digits) > 32:
            raise AddressError(f"bad hex address: {text!r}")
        return _from_kernel_hex(digits.rjust(8 if len(digits) <= 8 else 32, "0"))

    if len(raw) in (8, 32) and _HEX_RE.match(raw):
        return _from_kernel_hex(raw)

    if raw.isdigit():
        value = int(raw)
        if value > 0xFFFFFFFF:
            raise AddressError(f"integer address out of range: {text!r}")
        return str(ipaddress.IPv4Address(value.to_bytes(4, "little")))

    raise AddressError(f"unrecognized address: {text!r}")


def _from_kernel_hex(digits: str) -> str:
    """Decode /proc-style hex: each 32-bit word is stored host (little-endian) order."""
    packed = bytes.fromhex(digits)
    if len(packed) == 4:
        return str(ipaddress.IPv4Address(packed[::-1]))
    if len(packed) == 16:
        words = b"".join(packed[i : i + 4][::-1] for i in range(0, 16, 4))
        return _canonical(ipaddress.IPv6Address(words))
    raise AddressError(f"bad hex address length: {digits!r}")


def _canonical(addr: ipaddress.IPv4Address | ipaddress.IPv6Address) -> str:
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return str(addr.ipv4_mapped)
    return str(addr)


def is_public_address(ip: str) -> bool:
    """Whether ``ip`` is routable on the public internet."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_multicast
        or addr.is_reserved
        or addr.is_unspecified
    )


