"""
GCP Compute Engine provisioner using the google-cloud-compute library.

Converts llmvm descriptors into ``compute_v1`` messages and drives the
Networks, Subnetworks, Firewalls and Instances APIs. Every mutating call
waits on the returned extended operation, so a resource is usable by
the time the next wave starts.

Expects GCP credentials via:
    GOOGLE_APPLICATION_CREDENTIALS (service account JSON) or
    Application Default Credentials (gcloud auth application-default login).
"""

from __future__ import annotations

import concurrent.futures
import logging
from typing import Any, Callable, Dict, Optional

from google.api_core import exceptions as gapi_exceptions
from google.cloud import compute_v1

from ..errors import ProvisioningError
from ..resources import (
    FirewallRule,
    Instance,
    Network,
    Resource,
    ResourceStatus,
    StackOutputs,
    Subnet,
)
from .base import Provisioner

logger = logging.getLogger(__name__)

STARTUP_SCRIPT_KEY = "startup-script"

_CLIENT_FACTORIES: Dict[str, Callable[[], Any]] = {
    Network.kind: lambda: compute_v1.NetworksClient(),
    Subnet.kind: lambda: compute_v1.SubnetworksClient(),
    FirewallRule.kind: lambda: compute_v1.FirewallsClient(),
    Instance.kind: lambda: compute_v1.InstancesClient(),
}


# ---------------------------------------------------------------------------
# Descriptor -> compute_v1 message
# ---------------------------------------------------------------------------

def network_path(project: str, name: str) -> str:
    return f"projects/{project}/global/networks/{name}"


def subnetwork_path(project: str, region: str, name: str) -> str:
    return f"projects/{project}/regions/{region}/subnetworks/{name}"


def to_network_message(network: Network) -> compute_v1.Network:
    return compute_v1.Network(
        name=network.name,
        auto_create_subnetworks=network.auto_create_subnetworks,
        routing_config=compute_v1.NetworkRoutingConfig(
            routing_mode=network.routing_mode.value,
        ),
    )


def to_subnetwork_message(subnet: Subnet, project: str) -> compute_v1.Subnetwork:
    return compute_v1.Subnetwork(
        name=subnet.name,
        ip_cidr_range=subnet.ip_cidr_range,
        region=subnet.region,
        network=network_path(project, subnet.network),
    )


def to_firewall_message(rule: FirewallRule, project: str) -> compute_v1.Firewall:
    firewall = compute_v1.Firewall(
        name=rule.name,
        network=network_path(project, rule.network),
        direction=rule.direction.value,
        priority=rule.priority,
        description=rule.description,
        allowed=[
            compute_v1.Allowed(I_p_protocol=allow.protocol, ports=list(allow.ports))
            for allow in rule.allowed
        ],
    )
    if rule.source_ranges:
        firewall.source_ranges = list(rule.source_ranges)
    if rule.destination_ranges:
        firewall.destination_ranges = list(rule.destination_ranges)
    if rule.target_tags:
        firewall.target_tags = list(rule.target_tags)
    return firewall


def to_instance_message(instance: Instance, project: str) -> compute_v1.Instance:
    """Build the full instance resource for an insert call.

    Args:
        instance: Instance descriptor.
        project: GCP project ID.

    Returns:
        compute_v1.Instance.
    """
    zone = instance.zone

    # Boot disk.
    init_params = compute_v1.AttachedDiskInitializeParams(
        source_image=instance.boot_disk.image,
        disk_size_gb=instance.boot_disk.size_gb,
        disk_type=f"zones/{zone}/diskTypes/{instance.boot_disk.disk_type}",
    )
    disk = compute_v1.AttachedDisk(
        boot=True,
        auto_delete=instance.boot_disk.auto_delete,
        initialize_params=init_params,
    )

    # Network.
    attachment = instance.network_interface
    net_iface = compute_v1.NetworkInterface(
        subnetwork=subnetwork_path(project, attachment.region, attachment.subnet),
    )
    if attachment.external_ip:
        # Ephemeral public address, released with the instance.
        net_iface.access_configs = [
            compute_v1.AccessConfig(name="External NAT", type_="ONE_TO_ONE_NAT"),
        ]

    message = compute_v1.Instance(
        name=instance.name,
        machine_type=f"zones/{zone}/machineTypes/{instance.machine_type}",
        disks=[disk],
        network_interfaces=[net_iface],
        tags=compute_v1.Tags(items=list(instance.tags)),
        labels=dict(instance.labels),
        service_accounts=[
            compute_v1.ServiceAccount(
                email=instance.service_account,
                scopes=list(instance.scopes),
            ),
        ],
    )
    if instance.startup_script:
        message.metadata = compute_v1.Metadata(
            items=[compute_v1.Items(key=STARTUP_SCRIPT_KEY, value=instance.startup_script)],
        )
    return message


# ---------------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------------

class GCPProvisioner(Provisioner):
    """Converges descriptors against one GCP project.

    Args:
        project: GCP project ID.
        timeout: Seconds to wait on each extended operation.
        clients: Optional pre-built API clients keyed by resource kind
            (``network``, ``subnet``, ``firewall``, ``instance``).
    """

    name = "gcp"

    def __init__(
        self,
        project: str,
        timeout: float = 300,
        clients: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not project:
            raise ProvisioningError("project", "GCP project not configured")
        self._project = project
        self._timeout = timeout
        self._clients: Dict[str, Any] = dict(clients or {})

    @property
    def project(self) -> str:
        return self._project

    def _client(self, kind: str) -> Any:
        """Return (and cache) the API client for a resource kind."""
        if kind not in self._clients:
            self._clients[kind] = _CLIENT_FACTORIES[kind]()
        return self._clients[kind]

    def _wait(self, operation: Any, resource: Resource, action: str) -> None:
        try:
            operation.result(timeout=self._timeout)
        except concurrent.futures.TimeoutError:
            raise ProvisioningError(
                resource.key, f"{action} did not finish within {self._timeout}s",
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _get(self, resource: Resource) -> Any:
        client = self._client(resource.kind)
        if isinstance(resource, Network):
            return client.get(project=self._project, network=resource.name)
        if isinstance(resource, Subnet):
            return client.get(
                project=self._project, region=resource.region, subnetwork=resource.name,
            )
        if isinstance(resource, FirewallRule):
            return client.get(project=self._project, firewall=resource.name)
        if isinstance(resource, Instance):
            return client.get(
                project=self._project, zone=resource.zone, instance=resource.name,
            )
        raise ProvisioningError(resource.key, f"unsupported kind '{resource.kind}'")

    def exists(self, resource: Resource) -> bool:
        try:
            self._get(resource)
        except gapi_exceptions.NotFound:
            return False
        except gapi_exceptions.GoogleAPIError as exc:
            raise ProvisioningError(resource.key, f"lookup failed: {exc}")
        return True

    def status(self, instance: Instance) -> ResourceStatus:
        try:
            live = self._get(instance)
        except gapi_exceptions.NotFound:
            return ResourceStatus.DELETED
        except gapi_exceptions.GoogleAPIError as exc:
            logger.warning("Could not read %s: %s", instance.key, exc)
            return ResourceStatus.FAILED

        status = live.status
        if status == "RUNNING":
            return ResourceStatus.READY
        elif status in ("PROVISIONING", "STAGING"):
            return ResourceStatus.CREATING
        elif status in ("TERMINATED", "STOPPED", "SUSPENDED"):
            return ResourceStatus.STOPPED
        else:
            return ResourceStatus.DEGRADED

    def fetch_outputs(self, instance: Instance) -> StackOutputs:
        try:
            live = self._get(instance)
        except gapi_exceptions.NotFound:
            return StackOutputs(instance_name=instance.name)
        except gapi_exceptions.GoogleAPIError as exc:
            raise ProvisioningError(instance.key, f"could not read outputs: {exc}")
        return StackOutputs.from_instance(instance.name, live)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, resource: Resource) -> None:
        client = self._client(resource.kind)
        logger.info("Creating %s (project=%s)", resource.key, self._project)
        try:
            if isinstance(resource, Network):
                operation = client.insert(
                    project=self._project,
                    network_resource=to_network_message(resource),
                )
            elif isinstance(resource, Subnet):
                operation = client.insert(
                    project=self._project,
                    region=resource.region,
                    subnetwork_resource=to_subnetwork_message(resource, self._project),
                )
            elif isinstance(resource, FirewallRule):
                operation = client.insert(
                    project=self._project,
                    firewall_resource=to_firewall_message(resource, self._project),
                )
            elif isinstance(resource, Instance):
                operation = client.insert(
                    project=self._project,
                    zone=resource.zone,
                    instance_resource=to_instance_message(resource, self._project),
                )
            else:
                raise ProvisioningError(resource.key, f"unsupported kind '{resource.kind}'")
            self._wait(operation, resource, "create")
        except gapi_exceptions.GoogleAPIError as exc:
            raise ProvisioningError(resource.key, f"create failed: {exc}")
        logger.info("Created %s", resource.key)

    def update(self, resource: Resource) -> None:
        if not isinstance(resource, FirewallRule):
            raise ProvisioningError(
                resource.key,
                "changes require replacement; destroy the deployment and apply again",
            )
        client = self._client(resource.kind)
        logger.info("Patching %s", resource.key)
        try:
            operation = client.patch(
                project=self._project,
                firewall=resource.name,
                firewall_resource=to_firewall_message(resource, self._project),
            )
            self._wait(operation, resource, "patch")
        except gapi_exceptions.GoogleAPIError as exc:
            raise ProvisioningError(resource.key, f"patch failed: {exc}")

    def delete(self, resource: Resource) -> None:
        client = self._client(resource.kind)
        logger.info("Deleting %s", resource.key)
        try:
            if isinstance(resource, Network):
                operation = client.delete(project=self._project, network=resource.name)
            elif isinstance(resource, Subnet):
                operation = client.delete(
                    project=self._project, region=resource.region, subnetwork=resource.name,
                )
            elif isinstance(resource, FirewallRule):
                operation = client.delete(project=self._project, firewall=resource.name)
            elif isinstance(resource, Instance):
                operation = client.delete(
                    project=self._project, zone=resource.zone, instance=resource.name,
                )
            else:
                raise ProvisioningError(resource.key, f"unsupported kind '{resource.kind}'")
            self._wait(operation, resource, "delete")
        except gapi_exceptions.NotFound:
            logger.info("%s already gone", resource.key)
        except gapi_exceptions.GoogleAPIError as exc:
            raise ProvisioningError(resource.key, f"delete failed: {exc}")
