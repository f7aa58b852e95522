"""Building blocks for a mesh-network coordination server: peer descriptions,
map responses, update fan-out, counters, protocol upgrade helpers, OIDC checks
and client configuration profiles."""

__version__ = "0.1.0"

__all__ = [
    "mapper",
    "metrics",
    "noise",
    "notifier",
    "oidc",
    "platform_config",
    "tail",
]