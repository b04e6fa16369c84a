"""
geoproxy.config
~~~~~~~~~~~~~~~
Environment-driven settings.  Values may come from a ``.env`` file.

The geoblock policy is an immutable snapshot.  To change it at runtime,
build a new one and hand it to :meth:`PolicyStore.replace`.
"""

from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional, Tuple, Union

from dotenv import load_dotenv

DEFAULT_ALLOWED_COUNTRIES: FrozenSet[str] = frozenset({"RU"})

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def parse_networks(entries: Iterable[str]) -> Tuple[IPNetwork, ...]:
    """Addresses or CIDR ranges; a bare address becomes a /32 or /128."""
    return tuple(ipaddress.ip_network(e.strip(), strict=False) for e in entries)


DEFAULT_TRUSTED_EDGE: Tuple[IPNetwork, ...] = parse_networks(("127.0.0.1", "::1"))


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _split_csv(raw: str) -> Tuple[str, ...]:
    return tuple(x.strip() for x in (raw or "").split(",") if x.strip())


@dataclass(frozen=True, slots=True)
class GeoblockPolicy:
    enabled: bool = False
    # None means "not configured"; the effective list then falls back to RU.
    allowed_countries: Optional[FrozenSet[str]] = None

    def effective_allowed_countries(self) -> FrozenSet[str]:
        return self.allowed_countries or DEFAULT_ALLOWED_COUNTRIES


@dataclass(frozen=True, slots=True)
class Config:
    listen_host: str = "0.0.0.0"
    listen_port: int = 8080
    upstream_host: str = "127.0.0.1"
    upstream_port: int = 8000
    trust_proxy: bool = False
    trusted_edge_ips: Tuple[IPNetwork, ...] = DEFAULT_TRUSTED_EDGE
    log_path: str = "proxy.log"
    log_level: str = "INFO"
    geoblock: GeoblockPolicy = field(default_factory=GeoblockPolicy)


class PolicyStore:
    """Holds the current policy; readers take one snapshot per request."""

    def __init__(self, policy: GeoblockPolicy | None = None) -> None:
        self._policy = policy or GeoblockPolicy()

    def current(self) -> GeoblockPolicy:
        return self._policy

    def replace(self, policy: GeoblockPolicy) -> GeoblockPolicy:
        """Swap in *policy* and return the one it replaced."""
        previous, self._policy = self._policy, policy
        return previous


def load_policy() -> GeoblockPolicy:
    codes = frozenset(c.upper() for c in _split_csv(os.getenv("GEOBLOCK_ALLOWED_COUNTRIES", "")))
    return GeoblockPolicy(
        enabled=_env_bool("GEOBLOCK_ENABLED"),
        allowed_countries=codes or None,
    )


def load_config() -> Config:
    load_dotenv(override=True)
    return Config(
        listen_host=os.getenv("PROXY_LISTEN_HOST", "0.0.0.0"),
        listen_port=int(os.getenv("PROXY_LISTEN_PORT", 8080)),
        upstream_host=os.getenv("PROXY_UPSTREAM_HOST", "127.0.0.1"),
        upstream_port=int(os.getenv("PROXY_UPSTREAM_PORT", 8000)),
        trust_proxy=_env_bool("PROXY_TRUST_PROXY"),
        trusted_edge_ips=parse_networks(_split_csv(os.getenv("PROXY_TRUSTED_EDGE_IPS", "127.0.0.1,::1"))),
        log_path=os.getenv("PROXY_LOG_PATH", "proxy.log"),
        log_level=os.getenv("PROXY_LOG_LEVEL", "INFO").upper(),
        geoblock=load_policy(),
    )
