"""boxlink - attach to, install and supervise a remote server inside containers."""

__version__ = "0.4.0"
