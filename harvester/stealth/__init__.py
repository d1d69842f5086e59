"""Stealth module - fingerprint rotation and proxy management."""

from .proxy_pool import (
    Proxy,
    ProxyRotator,
    RotationStrategy,
    load_proxies_from_env,
    parse_proxy_string,
)
from .user_agents import BrowserProfile, UserAgentRotator

__all__ = [
    "BrowserProfile",
    "Proxy",
    "ProxyRotator",
    "RotationStrategy",
    "UserAgentRotator",
    "load_proxies_from_env",
    "parse_proxy_string",
]
