"""Forwarding DNS proxy library: upstream routing by domain, UDP/TCP listeners, rate limiting and DoH/DoQ message helpers."""

__version__ = "0.1.0"