"""Encrypted SOCKS relay helpers: addresses, replay filter, plugins and a multi-port manager."""

__version__ = "0.1.0"

__all__ = ["netutils", "ppbloom", "plugin", "manager_protocol", "manager"]