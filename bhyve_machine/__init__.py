"""bhyve-machine package."""

__all__ = [
    "bootloader",
    "cli",
    "config",
    "console",
    "constants",
    "dhcp",
    "discovery",
    "disk",
    "exceptions",
    "executor",
    "models",
    "network",
    "nmdm",
    "retry",
    "runtime",
    "utils",
    "vm",
]
