"""Clients for the remote management API."""

from .management import ManagementClient

__all__ = ["ManagementClient"]
