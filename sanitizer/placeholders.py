import hashlib
import ipaddress
import random
import re
import string

from .utils import SanitizerError


PLACEHOLDER_NETWORK = ipaddress.IPv4Network("111.0.0.0/8")
PLACEHOLDER_HOST_DOMAIN = "example.test"

# \b keeps "1.2.3.4" from matching inside "11.2.3.45".
IPV4_RE = re.compile(
    r"\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
    r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b"
)

_HOST_CHARS = string.ascii_lowercase + string.digits
_MAX_ATTEMPTS = 10000


def is_excluded_ip(value) -> bool:
    """True for addresses that are never treated as sensitive."""
    try:
        ip = ipaddress.IPv4Address(str(value))
    except ValueError:
        return True
    if ip in PLACEHOLDER_NETWORK:
        return True
    # is_reserved covers 240.0.0.0/4, which holds the broadcast address and netmasks.
    return (
        ip.is_loopback
        or ip.is_unspecified
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
    )


def find_ips(text):
    """Return the distinct non-excluded IPv4 addresses in ``text``, in order."""
    seen = []
    for match in IPV4_RE.finditer(text):
        ip = match.group(0)
        if ip not in seen and not is_excluded_ip(ip):
            seen.append(ip)
    return seen


def _octets_to_ip(b2, b3, b4):
    prefix = PLACEHOLDER_NETWORK.network_address.packed[0]
    return f"{prefix}.{b2 % 254 + 1}.{b3 % 254 + 1}.{b4 % 254 + 1}"


def _digest(kind, value, counter=0):
    tagged = f"{kind}:{value}" if counter == 0 else f"{kind}:{value}#{counter}"
    return hashlib.md5(tagged.encode("utf-8")).digest()


def deterministic_ip(real_ip, counter=0):
    digest = _digest("ip", real_ip, counter)
    return _octets_to_ip(digest[0], digest[1], digest[2])


def deterministic_hostname(real_hostname, counter=0):
    digest = _digest("host", real_hostname, counter)
    return f"host-{digest[:4].hex()}.{PLACEHOLDER_HOST_DOMAIN}"


def sanitize_ips(text):
    """Replace every non-excluded IPv4 address with its deterministic placeholder."""

    def _replace(match):
        ip = match.group(0)
        if is_excluded_ip(ip):
            return ip
        return deterministic_ip(ip)

    return IPV4_RE.sub(_replace, text)


class PlaceholderGenerator:
    """Allocates placeholders that are not already in ``used``."""

    policy = ""

    def ip(self, real, used) -> str:
        raise NotImplementedError

    def hostname(self, real, used) -> str:
        raise NotImplementedError


class DeterministicGenerator(PlaceholderGenerator):
    """Hash-derived placeholders; a collision re-hashes with a counter suffix."""

    policy = "deterministic"

    def _allocate(self, make, real, used):
        for counter in range(_MAX_ATTEMPTS):
            candidate = make(real, counter)
            if candidate not in used:
                return candidate
        raise SanitizerError(f"No free placeholder for value after {_MAX_ATTEMPTS} attempts.")

    def ip(self, real, used):
        return self._allocate(deterministic_ip, real, used)

    def hostname(self, real, used):
        return self._allocate(deterministic_hostname, real, used)


class RandomGenerator(PlaceholderGenerator):
    """Uniformly random placeholders, retried until unused."""

    policy = "random"

    def __init__(self, rng=None):
        self.rng = rng or random.SystemRandom()

    def _random_ip(self):
        return _octets_to_ip(*(self.rng.randrange(254) for _ in range(3)))

    def _random_hostname(self):
        token = "".join(self.rng.choice(_HOST_CHARS) for _ in range(8))
        return f"host-{token}.{PLACEHOLDER_HOST_DOMAIN}"

    def _allocate(self, make, used):
        for _ in range(_MAX_ATTEMPTS):
            candidate = make()
            if candidate not in used:
                return candidate
        raise SanitizerError(f"No free placeholder after {_MAX_ATTEMPTS} attempts.")

    def ip(self, real, used):
        return self._allocate(self._random_ip, used)

    def hostname(self, real, used):
        return self._allocate(self._random_hostname, used)


def generator_for(policy) -> PlaceholderGenerator:
    if policy == "random":
        return RandomGenerator()
    if policy == "deterministic":
        return DeterministicGenerator()
    raise SanitizerError(f"Unknown placeholder policy: {policy}")
