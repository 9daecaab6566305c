"""
Nox Agent URL Guard — blocks server-side fetches of internal targets (SSRF).

The guard only looks at the literal URL text. It never resolves hostnames, so
a public name whose DNS record points at a private address (DNS rebinding) is
NOT caught here. Closing that gap needs the fetching side to resolve once, pin
the address, and compare it against the same policy before connecting.

Rules, first match wins:
  1. unparseable URL / no host           → "invalid URL"
  2. scheme outside allowed_schemes      → "scheme not allowed"
  3. hostname in blocked_hostnames       → "blocked host"
  4. hostname matches an address pattern → "internal address"
  5. internal-looking suffix / substring → "internal hostname"

Reasons are coarse categories on purpose; the matched range is never reported.
"""

import ipaddress
import re
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union
from urllib.parse import urlsplit


INVALID_URL = "invalid URL"
SCHEME_NOT_ALLOWED = "scheme not allowed"
BLOCKED_HOST = "blocked host"
INTERNAL_ADDRESS = "internal address"
INTERNAL_HOSTNAME = "internal hostname"

_IPV4_LOOSE = re.compile(r"^(0x[0-9a-f]*|[0-9]+)(\.(0x[0-9a-f]*|[0-9]+)){0,3}$")
_FORBIDDEN_CHARS = re.compile(r"[\s\x00-\x1f\x7f\\]")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


# ── Address patterns ────────────────────────────────────────────────────────

class PatternKind(str, Enum):
    EXACT = "exact"   # literal host text, e.g. "0.0.0.0"
    CIDR  = "cidr"    # network containment test on IP literals
    REGEX = "regex"   # regular expression over the hostname text


@dataclass(frozen=True)
class AddressPattern:
    kind: PatternKind
    value: str
    _network: Optional[Union[ipaddress.IPv4Network, ipaddress.IPv6Network]] = field(
        default=None, init=False, repr=False, compare=False)
    _regex: Optional[re.Pattern] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.kind == PatternKind.CIDR:
            object.__setattr__(self, "_network", ipaddress.ip_network(self.value, strict=False))
        elif self.kind == PatternKind.REGEX:
            object.__setattr__(self, "_regex", re.compile(self.value, re.IGNORECASE))

    @classmethod
    def exact(cls, value: str) -> "AddressPattern":
        return cls(PatternKind.EXACT, value.lower())

    @classmethod
    def cidr(cls, value: str) -> "AddressPattern":
        return cls(PatternKind.CIDR, value)

    @classmethod
    def regex(cls, value: str) -> "AddressPattern":
        return cls(PatternKind.REGEX, value)

    def matches(self, host: str, ip: Optional[IPAddress] = None) -> bool:
        if self.kind == PatternKind.EXACT:
            return host == self.value or (ip is not None and str(ip) == self.value)
        if self.kind == PatternKind.CIDR:
            return ip is not None and ip.version == self._network.version and ip in self._network
        return bool(self._regex.search(host))


DEFAULT_ADDRESS_PATTERNS = (
    AddressPattern.exact("0.0.0.0"),
    AddressPattern.exact("::"),
    AddressPattern.cidr("0.0.0.0/8"),         # "this" network
    AddressPattern.cidr("127.0.0.0/8"),       # loopback
    AddressPattern.cidr("10.0.0.0/8"),        # RFC1918
    AddressPattern.cidr("172.16.0.0/12"),     # RFC1918
    AddressPattern.cidr("192.168.0.0/16"),    # RFC1918
    AddressPattern.cidr("169.254.0.0/16"),    # link-local, cloud metadata
    AddressPattern.cidr("100.64.0.0/10"),     # carrier-grade NAT
    AddressPattern.cidr("::1/128"),           # IPv6 loopback
    AddressPattern.cidr("fe80::/10"),         # IPv6 link-local
    AddressPattern.cidr("fc00::/7"),          # IPv6 unique-local
    # wildcard DNS services that echo an embedded private address
    AddressPattern.regex(
        r"(^|[.-])(127|10|192\.168|172\.(1[6-9]|2[0-9]|3[01])|169\.254)(\.\d{1,3}){1,3}"
        r"\.(nip\.io|sslip\.io|xip\.io)$"),
)

DEFAULT_BLOCKED_HOSTNAMES = frozenset({
    "localhost",
    "localhost.localdomain",
    "ip6-localhost",
    "ip6-loopback",
    "metadata",
    "metadata.google.internal",
    "metadata.goog",
    "metadata.azure.com",
    "instance-data",
    "instance-data.ec2.internal",
})

DEFAULT_BLOCKED_SUFFIXES = (
    ".internal", ".local", ".localhost", ".localdomain",
    ".lan", ".intranet", ".corp", ".home.arpa",
)

DEFAULT_BLOCKED_SUBSTRINGS = ("metadata",)


# ── Policy ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ValidationPolicy:
    """Immutable fetch policy; build once and share across threads."""
    allowed_schemes: frozenset = frozenset({"http", "https"})
    blocked_hostnames: frozenset = DEFAULT_BLOCKED_HOSTNAMES
    blocked_address_patterns: tuple = DEFAULT_ADDRESS_PATTERNS
    blocked_hostname_suffixes: tuple = DEFAULT_BLOCKED_SUFFIXES
    blocked_hostname_substrings: tuple = DEFAULT_BLOCKED_SUBSTRINGS

    def __post_init__(self):
        object.__setattr__(self, "allowed_schemes",
                           frozenset(s.lower() for s in self.allowed_schemes))
        object.__setattr__(self, "blocked_hostnames",
                           frozenset(h.lower().rstrip(".") for h in self.blocked_hostnames))
        object.__setattr__(self, "blocked_address_patterns", tuple(self.blocked_address_patterns))
        object.__setattr__(self, "blocked_hostname_suffixes",
                           tuple(s.lower() for s in self.blocked_hostname_suffixes))
        object.__setattr__(self, "blocked_hostname_substrings",
                           tuple(s.lower() for s in self.blocked_hostname_substrings))


@dataclass(frozen=True)
class Outcome:
    """Safe (reason is None) or Unsafe(reason)."""
    safe: bool
    reason: Optional[str] = None

    @classmethod
    def unsafe(cls, reason: str) -> "Outcome":
        return cls(safe=False, reason=reason)

    def __bool__(self) -> bool:
        return self.safe


SAFE = Outcome(safe=True)


def parse_ip_literal(host: str) -> Optional[IPAddress]:
    """
    Interpret host as an IP literal the way socket APIs would.

    Catches shorthand IPv4 ("127.1"), integer ("2130706433"), octal and hex
    forms, and unwraps IPv4-mapped IPv6 ("::ffff:127.0.0.1").
    """
    if _IPV4_LOOSE.match(host):
        # inet_aton semantics: "0177.0.0.1" is octal, i.e. 127.0.0.1
        try:
            return ipaddress.IPv4Address(socket.inet_aton(host))
        except (OSError, ValueError):
            return None
    try:
        ip = ipaddress.ip_address(host.split("%", 1)[0])
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


# ── Validator ───────────────────────────────────────────────────────────────

class TargetValidator:
    """Stateless outbound-URL classifier. Safe to call from any thread."""

    def __init__(self, policy: Optional[ValidationPolicy] = None):
        self.policy = policy or ValidationPolicy()

    def check_safe(self, url: str) -> Outcome:
        host = self._parse(url)
        if host is None:
            return Outcome.unsafe(INVALID_URL)
        scheme, host = host
        policy = self.policy

        if scheme not in policy.allowed_schemes:
            return Outcome.unsafe(SCHEME_NOT_ALLOWED)
        if host in policy.blocked_hostnames:
            return Outcome.unsafe(BLOCKED_HOST)

        ip = parse_ip_literal(host)
        for pattern in policy.blocked_address_patterns:
            if pattern.matches(host, ip):
                return Outcome.unsafe(INTERNAL_ADDRESS)

        if ip is None:
            if any(host.endswith(s) for s in policy.blocked_hostname_suffixes):
                return Outcome.unsafe(INTERNAL_HOSTNAME)
            if any(s in host for s in policy.blocked_hostname_substrings):
                return Outcome.unsafe(INTERNAL_HOSTNAME)
        return SAFE

    def is_safe(self, url: str) -> bool:
        return self.check_safe(url).safe

    @staticmethod
    def _parse(url) -> Optional[tuple[str, str]]:
        """Return (scheme, normalised hostname) or None if the URL is malformed."""
        if not isinstance(url, str) or not url or _FORBIDDEN_CHARS.search(url):
            return None
        try:
            parts = urlsplit(url)
            parts.port  # raises ValueError on a malformed port
        except ValueError:
            return None
        host = parts.hostname or ""
        if not host.isascii():
            # Compare what the resolver will see: IDNA applies NFKC and maps
            # "。" "．" "｡" to ".", so "１２７。０。０。１" is 127.0.0.1
            try:
                host = host.encode("idna").decode("ascii")
            except UnicodeError:
                return None
        host = host.rstrip(".")
        if not parts.scheme or not host:
            return None
        return parts.scheme.lower(), host.lower()


_default_validator = TargetValidator()


def check_safe(url: str) -> Outcome:
    """Classify url against the default policy."""
    return _default_validator.check_safe(url)
