"""xenbuilder package."""

__all__ = [
    "artifact",
    "builder",
    "cli",
    "config",
    "constants",
    "download",
    "exceptions",
    "instance",
    "models",
    "pipeline",
    "provision",
    "session",
    "ssh",
    "state",
    "steps",
    "ui",
    "utils",
    "vnc",
]
