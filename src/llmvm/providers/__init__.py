"""
Provisioners — backends that converge live infrastructure to a stack.

Each provisioner implements the Provisioner interface from ``base``.
The engine doesn't care which cloud it talks to; provisioners handle
the API details.
"""

from .base import Provisioner
from .gcp import GCPProvisioner

__all__ = ["Provisioner", "GCPProvisioner"]
