"""
geoproxy.geoblock
~~~~~~~~~~~~~~~~~
Country allow-list check, run before anything is forwarded upstream.

The country comes from the ``cf-ipcountry`` header and is taken as is.
This module does not verify it: the server in :mod:`geoproxy.core` drops
the header from peers outside ``trusted_edge_ips``, and without that the
check can be spoofed by any client.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

from .config import GeoblockPolicy
from .http import Request, Response
from .logger import ModuleLogger, get_logger

COUNTRY_HEADER = "cf-ipcountry"
DENIED_MESSAGE = "Access denied. Your country is not permitted to access this service."

log = get_logger("geoblock")


@dataclass(frozen=True, slots=True)
class RequestSignal:
    client_ip: Optional[str] = None
    known_ips: Tuple[str, ...] = ()
    country: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Allow:
    pass


@dataclass(frozen=True, slots=True)
class Deny:
    country_code: str


Decision = Union[Allow, Deny]


def signal_from_request(request: Request) -> RequestSignal:
    return RequestSignal(
        client_ip=request.ip,
        known_ips=tuple(request.ips or ()),
        country=request.headers.get(COUNTRY_HEADER),
    )


def decide(policy: GeoblockPolicy, signal: RequestSignal, logger: ModuleLogger = log) -> Decision:
    if not policy.enabled:
        return Allow()

    ip = signal.client_ip
    country = signal.country

    if not country:
        if ip and ip in signal.known_ips:
            logger.debug({"ip": ip}, "Client IP is private, cf-ipcountry header not found, skipping geoblock.")
        else:
            logger.warn({"ip": ip}, "cf-ipcountry header not found, allowing request.")
        return Allow()

    allowed = policy.effective_allowed_countries()
    if country in allowed:
        logger.debug({"ip": ip, "country": country, "source": COUNTRY_HEADER}, "Access granted by geoblock.")
        return Allow()

    logger.warn(
        {"ip": ip, "country": country, "source": COUNTRY_HEADER, "allowed": sorted(allowed)},
        "Access denied by geoblock.",
    )
    return Deny(country_code=country)


class GeoblockFilter:
    """Middleware: ``filter(request, response, next_)``.

    *policy_source* is either a fixed :class:`GeoblockPolicy` or a callable
    returning the current one (e.g. ``PolicyStore.current``).
    """

    def __init__(
        self,
        policy_source: Union[GeoblockPolicy, Callable[[], GeoblockPolicy]],
        logger: Optional[ModuleLogger] = None,
    ) -> None:
        if isinstance(policy_source, GeoblockPolicy):
            fixed = policy_source
            policy_source = lambda: fixed  # noqa: E731
        self._policy = policy_source
        self._log = logger or log

    def __call__(self, request: Request, response: Response, next_: Callable[[], None]) -> None:
        decision = decide(self._policy(), signal_from_request(request), self._log)
        if isinstance(decision, Deny):
            response.status(403).json({"error": DENIED_MESSAGE, "country_code": decision.country_code})
            return
        next_()
