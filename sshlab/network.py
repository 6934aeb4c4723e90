"""Network topology allocation and QEMU network-device arguments."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import List, Sequence

from sshlab.constants import (
    INTERNAL_FIRST_HOST,
    INTERNAL_SUBNET,
    MAC_FIRST_OCTET,
    MAC_PREFIX,
    MCAST_ENDPOINT,
)
from sshlab.exceptions import ConfigError
from sshlab.models import LabInstance, NetworkTopology, SegmentAssignment
from sshlab.utils import deterministic_mac, log

NIC_MODEL = "virtio-net-pci"


@dataclass(frozen=True)
class TopologyPolicy:
    """Deterministic address plan for the isolated inter-VM segment.

    Instance ``i`` (in lab-definition order) gets host ``first_host + i`` of
    ``subnet`` and MAC ``<mac_prefix>:<mac_first_octet + i>``. Every
    participant joins the same multicast ``endpoint``.
    """

    subnet: str = INTERNAL_SUBNET
    first_host: int = INTERNAL_FIRST_HOST
    mac_prefix: str = MAC_PREFIX
    mac_first_octet: int = MAC_FIRST_OCTET
    endpoint: str = MCAST_ENDPOINT

    def allocate(self, names: Sequence[str]) -> NetworkTopology:
        if len(set(names)) != len(names):
            raise ConfigError(f"Instance names must be unique: {', '.join(names)}")
        network = ipaddress.IPv4Network(self.subnet)
        hosts = network.num_addresses - 2
        if self.first_host < 1 or self.first_host + len(names) > hosts + 1:
            raise ConfigError(f"Subnet {self.subnet} cannot hold {len(names)} instances from host .{self.first_host}")
        if self.mac_first_octet + len(names) > 0x100:
            raise ConfigError(f"MAC prefix {self.mac_prefix} cannot hold {len(names)} instances")

        topology = NetworkTopology(endpoint=self.endpoint)
        for index, name in enumerate(names):
            ip = network.network_address + self.first_host + index
            mac = f"{self.mac_prefix}:{self.mac_first_octet + index:02x}"
            topology.assignments[name] = SegmentAssignment(
                instance_name=name,
                mac=mac,
                ip=str(ip),
                prefix_len=network.prefixlen,
            )
        return topology


def build_topology(instances: Sequence[LabInstance], policy: TopologyPolicy = TopologyPolicy()) -> NetworkTopology:
    """Allocate the lab topology and record each assignment on its instance.

    The instance fields are what both the cloud-init renderer and the device
    arguments read, so they stay the one source of truth for IP and MAC.
    """
    if len(instances) < 2:
        return NetworkTopology(endpoint=None)
    topology = policy.allocate([inst.name for inst in instances])
    for inst in instances:
        assignment = topology.assignments[inst.name]
        inst.internal_ip = assignment.ip
        inst.mac_address = assignment.mac
        log("DEBUG", f"{inst.name}: segment {assignment.ip}/{assignment.prefix_len} mac {assignment.mac}")
    return topology


def nat_device_args(instance: LabInstance) -> List[str]:
    fwd = instance.ssh_forward
    mac = deterministic_mac(f"{instance.name}:nat")
    return [
        "-netdev",
        f"user,id=net0,hostfwd=tcp::{fwd.host_port}-:{fwd.guest_port}",
        "-device",
        f"{NIC_MODEL},netdev=net0,mac={mac}",
    ]


def segment_device_args(instance: LabInstance, topology: NetworkTopology) -> List[str]:
    assignment = topology.for_instance(instance.name)
    if assignment is None:
        raise ConfigError(f"{instance.name} has no address on the internal segment")
    if (instance.internal_ip, instance.mac_address) != (assignment.ip, assignment.mac):
        raise ConfigError(f"{instance.name}: instance address does not match the topology allocation")
    return [
        "-netdev",
        f"socket,id=net1,mcast={topology.endpoint}",
        "-device",
        f"{NIC_MODEL},netdev=net1,mac={assignment.mac}",
    ]


def assemble_network(instance: LabInstance, topology: NetworkTopology) -> List[str]:
    """Fill ``instance.extra_net_args`` with its NAT and (optional) segment devices."""
    args = nat_device_args(instance)
    if topology.isolated:
        args += segment_device_args(instance, topology)
    instance.extra_net_args = args
    return args
