"""
Stack rendering — turn operator inputs into the full resource graph.

``render_stack`` is a pure function: equal inputs produce equal stacks.
The dependency order is computed from each descriptor's ``depends_on``
and grouped into waves. Resources in the same wave do not reference one
another and may be created in any order; each wave must finish before
the next starts. Destruction walks the same order backwards.

Default graph:

    network/llm-vpc-network
      -> subnet/llm-vpc-network-subnet
      -> firewall/llm-vpc-network-allow-ssh
      -> firewall/llm-vpc-network-allow-egress
           subnet -> instance/tinylama-vm
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from .config import StackInputs
from .errors import StackError
from .resources import (
    ANY_IPV4,
    AllowRule,
    BootDisk,
    Direction,
    FirewallRule,
    Instance,
    Network,
    NetworkAttachment,
    Resource,
    Subnet,
)
from .startup_script import build_startup_script

logger = logging.getLogger(__name__)

INSTANCE_NAME = "tinylama-vm"
MACHINE_TYPE = "e2-standard-4"
BOOT_IMAGE = "projects/debian-cloud/global/images/family/debian-12"
BOOT_DISK_SIZE_GB = 50
BOOT_DISK_TYPE = "pd-ssd"

LLM_TAG = "llm-instance"
SSH_TAG = "ssh"
INSTANCE_TAGS = [LLM_TAG, SSH_TAG]
MANAGED_BY_LABEL = {"managed-by": "llmvm"}

# Deletion falls back to this rank for resources no longer in the stack.
_KIND_RANK = {"network": 0, "subnet": 1, "firewall": 1, "instance": 2}


# ---------------------------------------------------------------------------
# Stack
# ---------------------------------------------------------------------------

@dataclass
class Stack:
    """A rendered, validated set of resources.

    Attributes:
        inputs: The inputs the stack was rendered from.
        resources: Descriptors keyed by ``kind/name``, in declaration order.
    """

    inputs: StackInputs
    resources: Dict[str, Resource] = field(default_factory=dict)

    def get(self, key: str) -> Optional[Resource]:
        return self.resources.get(key)

    def _of_kind(self, cls: type) -> List[Any]:
        return [r for r in self.resources.values() if isinstance(r, cls)]

    @property
    def network(self) -> Network:
        return self._of_kind(Network)[0]

    @property
    def subnet(self) -> Subnet:
        return self._of_kind(Subnet)[0]

    @property
    def firewall_rules(self) -> List[FirewallRule]:
        return self._of_kind(FirewallRule)

    @property
    def instance(self) -> Instance:
        return self._of_kind(Instance)[0]

    def waves(self) -> List[List[str]]:
        """Dependency waves; see ``resolve_waves``."""
        return resolve_waves(self.resources)

    def creation_order(self) -> List[str]:
        """All keys, each after everything it depends on."""
        return [key for wave in self.waves() for key in wave]

    def destruction_order(self) -> List[str]:
        """Exact reverse of ``creation_order``."""
        return list(reversed(self.creation_order()))

    def to_document(self) -> Dict[str, Any]:
        """JSON-safe description of the stack with sensitive values masked."""
        return {
            "inputs": self.inputs.redacted(),
            "resources": {
                key: {"kind": res.kind, **res.redacted()}
                for key, res in self.resources.items()
            },
            "waves": self.waves(),
        }


def resolve_waves(resources: Mapping[str, Resource]) -> List[List[str]]:
    """Topological sort of resources by ``depends_on``.

    Args:
        resources: Descriptors keyed by ``kind/name``.

    Returns:
        List of waves, each a list of keys in declaration order.

    Raises:
        StackError: On a reference to an unknown resource or a cycle.
    """
    for key, res in resources.items():
        missing = [dep for dep in res.depends_on if dep not in resources]
        if missing:
            raise StackError(f"{key} references unknown resources: {missing}")

    remaining = dict(resources)
    resolved: set = set()
    waves: List[List[str]] = []

    while remaining:
        wave = [
            key for key, res in remaining.items()
            if set(res.depends_on) <= resolved
        ]
        if not wave:
            raise StackError(
                f"Circular dependency detected among: {list(remaining)}"
            )
        for key in wave:
            del remaining[key]
            resolved.add(key)
        waves.append(wave)

    return waves


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render_stack(inputs: StackInputs, startup_script: Optional[str] = None) -> Stack:
    """Render every resource for the given inputs.

    Args:
        inputs: Validated operator inputs.
        startup_script: Boot payload override (defaults to the TinyLlama
            verification script).

    Returns:
        A validated Stack.

    Raises:
        StackError: If the rendered graph is inconsistent.
    """
    network = Network(name=inputs.network_name)

    subnet = Subnet(
        name=f"{inputs.network_name}-subnet",
        ip_cidr_range=inputs.subnet_cidr,
        region=inputs.region,
        network=network.name,
    )

    allow_ssh = FirewallRule(
        name=f"{inputs.network_name}-allow-ssh",
        network=network.name,
        direction=Direction.INGRESS,
        allowed=[AllowRule(protocol="tcp", ports=["22"])],
        source_ranges=[inputs.ssh_range],
        target_tags=[SSH_TAG],
        description="SSH from the administrator range only.",
        sensitive_ranges=True,
    )

    allow_egress = FirewallRule(
        name=f"{inputs.network_name}-allow-egress",
        network=network.name,
        direction=Direction.EGRESS,
        allowed=[AllowRule(protocol="all")],
        destination_ranges=[ANY_IPV4],
        description="All outbound traffic.",
    )

    instance = Instance(
        name=INSTANCE_NAME,
        machine_type=MACHINE_TYPE,
        zone=inputs.zone,
        tags=list(INSTANCE_TAGS),
        boot_disk=BootDisk(
            image=BOOT_IMAGE,
            size_gb=BOOT_DISK_SIZE_GB,
            disk_type=BOOT_DISK_TYPE,
        ),
        network_interface=NetworkAttachment(
            subnet=subnet.name,
            region=inputs.region,
            external_ip=True,
        ),
        startup_script=(
            startup_script if startup_script is not None else build_startup_script()
        ),
        labels=dict(MANAGED_BY_LABEL),
    )

    stack = Stack(inputs=inputs)
    for res in (network, subnet, allow_ssh, allow_egress, instance):
        if res.key in stack.resources:
            raise StackError(f"Duplicate resource {res.key}")
        stack.resources[res.key] = res

    waves = stack.waves()
    logger.debug("Rendered %d resources in %d waves", len(stack.resources), len(waves))
    return stack


# ---------------------------------------------------------------------------
# Diffing
# ---------------------------------------------------------------------------

def fingerprint(resource: Resource, key: bytes = b"") -> str:
    """Content hash over the full (unredacted) descriptor.

    Create-only fields are left out, so editing them never reads as a
    change. With a key the hash is an HMAC, so a stored fingerprint
    cannot be brute-forced back into the sensitive SSH range.
    """
    payload = json.dumps(
        {
            "kind": resource.kind,
            **resource.model_dump(mode="json", exclude=set(resource.create_only_fields)),
        },
        sort_keys=True,
    ).encode("utf-8")
    if key:
        return hmac.new(key, payload, hashlib.sha256).hexdigest()
    return hashlib.sha256(payload).hexdigest()


@dataclass(frozen=True)
class ResourceSnapshot:
    """What is remembered about a resource after it was applied.

    Attributes:
        kind: Resource kind.
        name: Resource name.
        fingerprint: Hash of the descriptor without create-only fields.
        spec: Redacted descriptor (safe to store and display).
    """

    kind: str
    name: str
    fingerprint: str
    spec: Dict[str, Any]

    @property
    def key(self) -> str:
        return f"{self.kind}/{self.name}"

    @classmethod
    def of(cls, resource: Resource, key: bytes = b"") -> "ResourceSnapshot":
        return cls(
            kind=resource.kind,
            name=resource.name,
            fingerprint=fingerprint(resource, key),
            spec=resource.redacted(),
        )


@dataclass
class StackDiff:
    """Changes needed to go from a previous state to a desired stack.

    Attributes:
        to_create: Keys present only in the desired stack (creation order).
        to_update: Keys present in both whose content changed, mapped to
            the names of the changed fields.
        to_delete: Keys present only in the previous state (deletion order).
        unchanged: Keys whose content is identical.
    """

    to_create: List[str] = field(default_factory=list)
    to_update: Dict[str, List[str]] = field(default_factory=dict)
    to_delete: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.to_create or self.to_update or self.to_delete)


def _changed_fields(old: Dict[str, Any], new: Dict[str, Any], ignore=frozenset()) -> List[str]:
    names = sorted(
        name for name in set(old) | set(new)
        if name not in ignore and old.get(name) != new.get(name)
    )
    # Only a masked value moved.
    return names or ["(sensitive)"]


def diff_stacks(
    previous: Union[Stack, Mapping[str, ResourceSnapshot], None],
    desired: Stack,
    key: bytes = b"",
) -> StackDiff:
    """Compare a previous stack or saved snapshots against a desired stack.

    Args:
        previous: The last applied Stack, saved snapshots keyed by resource
            key, or None when nothing was applied yet.
        desired: The freshly rendered stack.
        key: Fingerprint key; must match the one used for the snapshots.

    Returns:
        StackDiff.
    """
    if previous is None:
        before: Dict[str, ResourceSnapshot] = {}
    elif isinstance(previous, Stack):
        before = {k: ResourceSnapshot.of(r, key) for k, r in previous.resources.items()}
    else:
        before = dict(previous)

    diff = StackDiff()
    for res_key in desired.creation_order():
        current = ResourceSnapshot.of(desired.resources[res_key], key)
        old = before.get(res_key)
        if old is None:
            diff.to_create.append(res_key)
        elif old.fingerprint != current.fingerprint:
            diff.to_update[res_key] = _changed_fields(
                old.spec, current.spec, desired.resources[res_key].create_only_fields,
            )
        else:
            diff.unchanged.append(res_key)

    gone = [k for k in before if k not in desired.resources]
    diff.to_delete = sorted(
        gone, key=lambda k: _KIND_RANK.get(before[k].kind, 0), reverse=True,
    )
    return diff
