"""
geoproxy.http
~~~~~~~~~~~~~
The request / response objects handed to middleware.
"""

from __future__ import annotations

import ipaddress
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, MutableMapping, Optional, Tuple


class CaseInsensitiveHeaders(MutableMapping[str, str]):
    """Header map keyed by lower-cased name."""

    def __init__(self, items: Iterable[Tuple[str, str]] | Dict[str, str] = ()) -> None:
        self._data: Dict[str, str] = {}
        pairs = items.items() if isinstance(items, dict) else items
        for k, v in pairs:
            self[k] = v

    def __getitem__(self, key: str) -> str:
        return self._data[key.lower()]

    def __setitem__(self, key: str, value: str) -> None:
        self._data[key.lower()] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key.lower()]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"CaseInsensitiveHeaders({self._data!r})"


@dataclass(slots=True)
class Request:
    method: str
    target: str
    headers: CaseInsensitiveHeaders = field(default_factory=CaseInsensitiveHeaders)
    ip: Optional[str] = None
    ips: Tuple[str, ...] = ()
    peer: Optional[str] = None


class Response:
    """Collects what a middleware wants sent back instead of forwarding."""

    def __init__(self) -> None:
        self.status_code: Optional[int] = None
        self.headers: Dict[str, str] = {}
        self.body: bytes = b""

    def status(self, code: int) -> "Response":
        self.status_code = code
        return self

    def json(self, payload: Any) -> "Response":
        if self.status_code is None:
            self.status_code = 200
        self.headers["Content-Type"] = "application/json"
        self.body = json.dumps(payload, separators=(",", ":")).encode()
        return self


def resolve_client_ips(
    peer_ip: Optional[str],
    headers: CaseInsensitiveHeaders,
    trust_proxy: bool,
) -> Tuple[Optional[str], Tuple[str, ...]]:
    """Return ``(ip, ips)`` for a request.

    Without *trust_proxy* the socket peer is the client and the chain is
    empty.  With it, the X-Forwarded-For chain is used, client first.
    """
    if not trust_proxy:
        return peer_ip, ()
    chain = tuple(p.strip() for p in headers.get("x-forwarded-for", "").split(",") if p.strip())
    if not chain:
        return peer_ip, ()
    return chain[0], chain


def is_trusted_peer(peer_ip: Optional[str], networks: Iterable[Any]) -> bool:
    """True when *peer_ip* falls inside one of *networks*.

    IPv4-mapped IPv6 peers (``::ffff:10.0.0.1``) are matched as IPv4.
    """
    if not peer_ip:
        return False
    try:
        addr = ipaddress.ip_address(peer_ip.split("%", 1)[0])
    except ValueError:
        return False
    mapped = getattr(addr, "ipv4_mapped", None)
    if mapped is not None:
        addr = mapped
    return any(addr in net for net in networks)
