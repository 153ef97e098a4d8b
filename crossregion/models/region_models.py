from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, ConfigDict


# This model represents a single security group rule.
# It defines the protocol, port range, and allowed IP ranges for inbound traffic.
class SecurityGroupRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    ip_protocol: str
    from_port: int
    to_port: int
    ip_ranges: Optional[List[str]] = None


class SecurityGroupRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    region: str
    group_id: str
    group_name: str
    rules: tuple[SecurityGroupRule, ...] = ()


class KeyPairRecord(BaseModel):
    """A key pair known to the provider; usable only while its local key file exists."""

    model_config = ConfigDict(frozen=True)

    region: str
    key_name: str
    key_path: str
    private_key_material: Optional[str] = None


class InstanceState(str, Enum):
    REQUESTED = "Requested"
    PENDING = "Pending"
    RUNNING = "Running"
    TERMINATED = "Terminated"

    @classmethod
    def from_provider(cls, name: Optional[str]) -> "InstanceState":
        if name is None:
            return cls.REQUESTED
        if name == "pending":
            return cls.PENDING
        if name == "running":
            return cls.RUNNING
        return cls.TERMINATED


class InstanceRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    region: str
    instance_id: str
    state: InstanceState = InstanceState.REQUESTED
    public_address: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.state != InstanceState.TERMINATED


class AmiReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    region: str
    image_id: str


# Region -> public address of its running node.
HostsMap = dict[str, str]


class RegionState(BaseModel):
    """Everything the orchestrator knows about one region.

    Instances are replaced, never mutated: every step produces a new
    RegionState through ``model_copy(update=...)``.
    """

    model_config = ConfigDict(frozen=True)

    region: str
    security_group: Optional[SecurityGroupRecord] = None
    key_pair: Optional[KeyPairRecord] = None
    # Result of the most recent status query (pending/running only).
    instances: tuple[InstanceRecord, ...] = ()
    # Instances launched by this orchestrator since the last teardown.
    created_instances: tuple[InstanceRecord, ...] = ()
    # Ids handed to terminate_instances and not yet confirmed terminated.
    terminating: tuple[str, ...] = ()
    ami: Optional[AmiReference] = None
    # Local copy of the node's probe log fetched by the last report.
    log_file: Optional[str] = None

    @property
    def has_live_instance(self) -> bool:
        return any(instance.is_live for instance in self.instances)

    def known_instance_ids(self) -> list[str]:
        """Created-this-run ids followed by observed ids, without duplicates."""
        ids: list[str] = []
        for instance in self.created_instances + self.instances:
            if instance.instance_id not in ids:
                ids.append(instance.instance_id)
        return ids

    def running_address(self) -> Optional[str]:
        for instance in self.instances:
            if instance.state == InstanceState.RUNNING and instance.public_address:
                return instance.public_address
        return None
