"""
Provisioner interface (abstract base).

The engine calls these methods while walking a stack in dependency
order. Implementations raise ``ProvisioningError`` for any failure the
operator has to act on; ``delete`` of something already gone is not a
failure.
"""

from __future__ import annotations

from ..resources import Instance, Resource, ResourceStatus, StackOutputs


class Provisioner:
    """Abstract base for infrastructure backends."""

    name: str = "abstract"

    def exists(self, resource: Resource) -> bool:
        """Check whether the resource is present in the live project.

        Args:
            resource: Desired-state descriptor.

        Returns:
            True if a resource with the same identity exists.
        """
        raise NotImplementedError

    def create(self, resource: Resource) -> None:
        """Create the resource and wait until the operation completes.

        Args:
            resource: Desired-state descriptor.
        """
        raise NotImplementedError

    def update(self, resource: Resource) -> None:
        """Bring an existing resource in line with its descriptor.

        Args:
            resource: Desired-state descriptor.
        """
        raise NotImplementedError

    def delete(self, resource: Resource) -> None:
        """Delete the resource and wait until the operation completes.

        Args:
            resource: Desired-state descriptor.
        """
        raise NotImplementedError

    def status(self, instance: Instance) -> ResourceStatus:
        """Report the live state of the instance.

        Args:
            instance: Instance descriptor.

        Returns:
            Current ResourceStatus.
        """
        raise NotImplementedError

    def fetch_outputs(self, instance: Instance) -> StackOutputs:
        """Read the instance name and public address from the live project.

        Args:
            instance: Instance descriptor.

        Returns:
            StackOutputs (empty address until one is assigned).
        """
        raise NotImplementedError
