"""ssh-lab package."""

__all__ = [
    "cli",
    "cloudinit",
    "config",
    "constants",
    "disks",
    "exceptions",
    "images",
    "lab",
    "models",
    "network",
    "seed",
    "supervisor",
    "utils",
]
