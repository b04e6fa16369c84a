"""
geoproxy
~~~~~~~~
Reverse proxy with a country allow-list in front of the upstream.
"""

from .config import Config, GeoblockPolicy, PolicyStore, load_config, load_policy
from .geoblock import Allow, Deny, GeoblockFilter, RequestSignal, decide

__all__ = [
    "Allow",
    "Config",
    "Deny",
    "GeoblockFilter",
    "GeoblockPolicy",
    "PolicyStore",
    "RequestSignal",
    "decide",
    "load_config",
    "load_policy",
]
