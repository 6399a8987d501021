"""qemuclaw package."""

__all__ = [
    "cli",
    "config",
    "console",
    "constants",
    "exceptions",
    "images",
    "models",
    "net",
    "ports",
    "process",
    "qmp",
    "status",
    "supervisor",
    "utils",
]
