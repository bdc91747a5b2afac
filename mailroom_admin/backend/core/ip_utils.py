"""Client IP resolution and IP/CIDR arithmetic for the admin IP gate.

Whitelist CIDRs are stored in canonical ``<address>/<prefix>`` form:

* IPv4 as four decimal octets, ``/32`` when no prefix was given;
* IPv6 as eight lower-case hextets without ``::`` compression or leading
  zeros (``2001:db8:0:0:0:0:0:1/128``), ``/128`` when no prefix was given.

Host bits are kept as entered (``203.0.113.10/24`` stays as is); matching
only ever compares the top ``prefix`` bits.
"""
import ipaddress
import logging
import re
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from mailroom_admin.backend.core.errors import InvalidAddressError, InvalidInputError

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

LOOPBACK_ADDRESSES = frozenset({"127.0.0.1", "::1"})

MAX_CIDR_LENGTH = 100

# Consulted (in order) when X-Forwarded-For / peer address is missing or loopback
_ALT_CLIENT_IP_HEADERS = ("x-real-ip", "cf-connecting-ip")

_IPV4_SHAPE = re.compile(r"[0-9]{1,3}(?:\.[0-9]{1,3}){3}")


# ── Address Resolver ────────────────────────────────────────────

def _get_header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    """Case-insensitive header lookup that works for Starlette Headers and plain dicts."""
    if not headers:
        return None
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, item in headers.items():
            if key.lower() == lowered:
                return item
    return value


def resolve_client_ip(
    headers: Optional[Mapping[str, str]],
    fallback: Optional[str] = None,
) -> Optional[str]:
    """Best-effort real client address behind proxies.

    1. First token of X-Forwarded-For.
    2. Otherwise ``fallback`` (usually the transport peer address).
    3. If still missing or loopback, prefer X-Real-IP, then Cf-Connecting-IP.

    Returns None when nothing usable was found. Never raises.
    """
    candidate: Optional[str] = None

    forwarded = _get_header(headers, "x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip() or None

    if not candidate and fallback:
        candidate = str(fallback).strip() or None

    if candidate is None or candidate in LOOPBACK_ADDRESSES:
        for name in _ALT_CLIENT_IP_HEADERS:
            alt = (_get_header(headers, name) or "").strip()
            if alt:
                candidate = alt
                break

    return candidate


# ── CIDR Canonicalizer ──────────────────────────────────────────

def _parse_address(text: str) -> IPAddress:
    """Parse a bare IPv4 (dotted-decimal) or IPv6 address."""
    if ":" in text:
        try:
            address = ipaddress.IPv6Address(text)
        except ValueError as e:
            raise InvalidAddressError(f"Invalid IPv6 address: {text}") from e
        if address.scope_id:
            raise InvalidAddressError(f"Scoped IPv6 addresses are not supported: {text}")
        return address

    if not _IPV4_SHAPE.fullmatch(text):
        raise InvalidAddressError(f"Invalid IP address: {text}")
    if any(int(octet) > 255 for octet in text.split(".")):
        raise InvalidAddressError(f"IPv4 octet out of range: {text}")
    try:
        # Rejects ambiguous leading zeros ("010.0.0.1")
        return ipaddress.IPv4Address(text)
    except ValueError as e:
        raise InvalidAddressError(f"Invalid IPv4 address: {text}") from e


def _parse_prefix(text: str, max_prefix: int) -> int:
    text = text.strip()
    if not (text.isascii() and text.isdigit()):
        raise InvalidAddressError(f"Invalid prefix length: {text or '(empty)'}")
    prefix = int(text)
    if prefix > max_prefix:
        raise InvalidAddressError(f"Prefix length must be between 0 and {max_prefix}")
    return prefix


def format_address(address: IPAddress) -> str:
    """Canonical text for an address (IPv6 fully expanded, no zero padding)."""
    if address.version == 4:
        return str(address)
    value = int(address)
    return ":".join(f"{(value >> shift) & 0xFFFF:x}" for shift in range(112, -1, -16))


def parse_cidr(value: Any) -> Tuple[IPAddress, int]:
    """Split and validate ``address[/prefix]``; bare addresses get a full-length prefix.

    ``value`` may be any decoded JSON value: None and blank text are
    InvalidInputError, non-text and over-long text are InvalidAddressError.
    """
    if value is None:
        raise InvalidInputError()
    if not isinstance(value, str):
        raise InvalidAddressError(f"IP or CIDR must be text, got {type(value).__name__}")
    trimmed = value.strip()
    if not trimmed:
        raise InvalidInputError()
    if len(trimmed) > MAX_CIDR_LENGTH:
        raise InvalidAddressError(f"IP or CIDR longer than {MAX_CIDR_LENGTH} characters")

    address_text, slash, prefix_text = trimmed.partition("/")
    address = _parse_address(address_text.strip())
    if not slash:
        return address, address.max_prefixlen
    return address, _parse_prefix(prefix_text, address.max_prefixlen)


def normalize_cidr(value: Any) -> str:
    """Canonicalize an IP or CIDR string.

    Raises:
        InvalidInputError: missing, empty or whitespace-only input.
        InvalidAddressError: non-text or over-long input, unparsable address,
            octet or prefix out of range.
    """
    address, prefix = parse_cidr(value)
    return f"{format_address(address)}/{prefix}"


def parse_ip_list(raw: Optional[str]) -> List[str]:
    """Parse comma-separated IP/CIDR string into a list of trimmed entries."""
    if not raw or not raw.strip():
        return []
    return [ip.strip() for ip in raw.split(",") if ip.strip()]


# ── Subnet Matcher ──────────────────────────────────────────────

def _parse_client_address(ip: str) -> Optional[IPAddress]:
    """Parse a client address, unwrapping ``::ffff:a.b.c.d`` to IPv4."""
    try:
        address = ipaddress.ip_address(ip.strip())
    except (ValueError, AttributeError):
        return None
    if address.version == 6 and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def is_ip_in_cidr(ip: str, cidr: str) -> bool:
    """Check whether ``ip`` lies in ``cidr`` by comparing the top prefix bits.

    Unparsable client addresses never match. A malformed ``cidr`` raises
    InvalidInputError / InvalidAddressError.
    """
    network, prefix = parse_cidr(cidr)
    address = _parse_client_address(ip)
    if address is None or address.version != network.version:
        return False
    shift = address.max_prefixlen - prefix
    return (int(address) >> shift) == (int(network) >> shift)


def find_matching_whitelist_ids(ip: str, entries: Iterable) -> List[str]:
    """Ids of every entry whose CIDR contains ``ip``, in input order.

    Entries only need ``id`` and ``cidr`` attributes. Malformed stored CIDRs
    are skipped with a warning.
    """
    matches = []
    for entry in entries:
        try:
            if is_ip_in_cidr(ip, entry.cidr):
                matches.append(entry.id)
        except ValueError:
            logger.warning("Invalid IP whitelist entry %s: %s", entry.id, entry.cidr)
    return matches
