"""Core package for the WLED LAN bridge - discovery and live state sync for WLED controllers."""

__all__ = [
    "color",
    "config",
    "logging",
    "metrics",
    "models",
    "observers",
    "timers",
    "client",
    "session",
    "verification",
    "discovery",
]
__version__ = "1.0.0"
