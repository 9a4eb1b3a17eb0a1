"""Remote job API adapters."""

from .base import RemoteJobClient
from .fal_client import FalRemoteJobClient

__all__ = ["FalRemoteJobClient", "RemoteJobClient"]
