"""
Operator inputs for the LLM stack.

The whole deployment is driven by six values: the GCP project, region,
zone, the administrator's SSH source range, the VPC name and the subnet
range. Only the project and the SSH range are required; everything else
has a default that matches the reference deployment.

Values are merged from (lowest to highest priority):
1. Built-in defaults on ``StackInputs``
2. A YAML variables file (top-level mapping)
3. ``LLMVM_VAR_<NAME>`` environment variables
4. Explicit overrides (``--var name=value`` on the CLI)

The SSH source range is sensitive. It is held in a ``SecretStr`` and
never rendered into logs, error messages or saved state.
"""

from __future__ import annotations

import ipaddress
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator, model_validator

from .errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "LLMVM_VAR_"
REDACTED = "(sensitive)"

DEFAULT_REGION = "asia-southeast1"
DEFAULT_ZONE = "asia-southeast1-a"
DEFAULT_NETWORK_NAME = "llm-vpc-network"
DEFAULT_SUBNET_CIDR = "10.10.0.0/20"


def _parse_ipv4_network(value: str) -> ipaddress.IPv4Network:
    network = ipaddress.ip_network(value.strip(), strict=True)
    if not isinstance(network, ipaddress.IPv4Network):
        raise ValueError("only IPv4 ranges are supported")
    return network


class StackInputs(BaseModel):
    """Validated operator inputs for one stack."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    project_id: str = Field(min_length=1, description="GCP project identifier")
    region: str = Field(default=DEFAULT_REGION, description="Region for the subnet")
    zone: str = Field(default=DEFAULT_ZONE, description="Zone for the instance")
    ssh_source_ip: SecretStr = Field(
        description="Administrator SSH source range in CIDR notation",
    )
    network_name: str = Field(default=DEFAULT_NETWORK_NAME, description="VPC network name")
    subnet_cidr: str = Field(default=DEFAULT_SUBNET_CIDR, description="Subnet IPv4 range")

    @field_validator("ssh_source_ip")
    @classmethod
    def ssh_source_must_be_cidr(cls, v: SecretStr) -> SecretStr:
        """Ensure the SSH range parses without echoing it back."""
        try:
            network = _parse_ipv4_network(v.get_secret_value())
        except ValueError:
            raise ValueError("ssh_source_ip must be an IPv4 range in CIDR notation") from None
        return SecretStr(str(network))

    @field_validator("subnet_cidr")
    @classmethod
    def subnet_must_be_cidr(cls, v: str) -> str:
        """Normalize the subnet range (e.g. strip whitespace)."""
        try:
            return str(_parse_ipv4_network(v))
        except ValueError as exc:
            raise ValueError(f"subnet_cidr '{v}' is not a valid IPv4 range: {exc}")

    @model_validator(mode="after")
    def zone_must_be_in_region(self) -> "StackInputs":
        if not self.zone.startswith(self.region + "-"):
            raise ValueError(
                f"zone '{self.zone}' is not in region '{self.region}'"
            )
        return self

    @property
    def ssh_range(self) -> str:
        """The SSH source range in clear text (for rendering only)."""
        return self.ssh_source_ip.get_secret_value()

    def redacted(self) -> Dict[str, Any]:
        """Return a JSON-safe dict with the sensitive range masked."""
        data = self.model_dump(mode="json")
        data["ssh_source_ip"] = REDACTED
        return data


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def parse_var_assignments(pairs: Iterable[str]) -> Dict[str, str]:
    """Parse ``name=value`` pairs given on the command line.

    Args:
        pairs: Raw ``--var`` strings.

    Returns:
        Dict mapping variable name to value.

    Raises:
        ConfigError: If a pair has no ``=`` or an empty name.
    """
    result: Dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ConfigError(f"Expected name=value, got '{pair}'")
        result[name] = value.strip()
    return result


def _read_var_file(path: Path) -> Dict[str, Any]:
    """Read a YAML variables file.

    Raises:
        ConfigError: If the file is missing or not a mapping.
    """
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"Variables file not found: {path}")
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}")
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(
            f"Expected a YAML mapping in {path}, got {type(raw).__name__}"
        )
    return raw


def _read_env_vars(env: Mapping[str, str]) -> Dict[str, str]:
    found: Dict[str, str] = {}
    for name in StackInputs.model_fields:
        value = env.get(ENV_PREFIX + name.upper())
        if value:
            found[name] = value
    return found


def _format_validation_error(exc: ValidationError) -> str:
    """Summarize a ValidationError without the offending input values."""
    lines = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "inputs"
        if err["type"] == "missing":
            lines.append(f"{loc}: required variable is not set")
        else:
            lines.append(f"{loc}: {err['msg']}")
    return "; ".join(lines)


def load_inputs(
    path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> StackInputs:
    """Merge every input source and validate the result.

    Args:
        path: Optional YAML variables file.
        overrides: Explicit values that win over everything else.
        env: Environment mapping (defaults to ``os.environ``).

    Returns:
        Validated StackInputs.

    Raises:
        ConfigError: If a required value is missing or any value is invalid.
    """
    merged: Dict[str, Any] = {}
    if path is not None:
        merged.update(_read_var_file(Path(path).expanduser()))
    merged.update(_read_env_vars(os.environ if env is None else env))
    merged.update(overrides or {})

    try:
        inputs = StackInputs(**merged)
    except ValidationError as exc:
        raise ConfigError(_format_validation_error(exc)) from None

    logger.debug(
        "Loaded inputs for project %s (region=%s zone=%s network=%s)",
        inputs.project_id, inputs.region, inputs.zone, inputs.network_name,
    )
    return inputs
