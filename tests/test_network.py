"""Tests for sshlab.network (topology allocation and device arguments)."""

from __future__ import annotations

import pytest

from sshlab.exceptions import ConfigError
from sshlab.models import LabInstance
from sshlab.network import TopologyPolicy, assemble_network, build_topology


def _instances(count: int):
    roles = ["server"] + ["client"] * (count - 1)
    return [
        LabInstance(name=f"vm{i}", role=role, ssh_port=2300 + i, memory_mb=512)
        for i, role in enumerate(roles)
    ]


class TestTopologyPolicy:
    def test_default_allocation(self):
        topology = TopologyPolicy().allocate(["srv", "cli"])
        assert topology.endpoint == "230.0.0.1:1234"
        assert topology.assignments["srv"].ip == "192.168.100.10"
        assert topology.assignments["cli"].ip == "192.168.100.11"
        assert topology.assignments["srv"].mac == "52:54:00:aa:00:10"
        assert topology.assignments["cli"].mac == "52:54:00:aa:00:11"
        assert topology.assignments["cli"].prefix_len == 24

    @pytest.mark.parametrize("count", [2, 3, 8, 40])
    def test_addresses_are_pairwise_distinct(self, count):
        topology = TopologyPolicy().allocate([f"vm{i}" for i in range(count)])
        macs = [a.mac for a in topology.assignments.values()]
        ips = [a.ip for a in topology.assignments.values()]
        assert len(set(macs)) == count
        assert len(set(ips)) == count

    def test_allocation_is_deterministic(self):
        names = ["a", "b", "c"]
        assert TopologyPolicy().allocate(names) == TopologyPolicy().allocate(names)

    def test_custom_policy(self):
        policy = TopologyPolicy(subnet="10.9.0.0/29", first_host=2, mac_prefix="02:00:00:00:01", mac_first_octet=0xA0)
        topology = policy.allocate(["a", "b"])
        assert topology.assignments["b"].ip == "10.9.0.3"
        assert topology.assignments["b"].mac == "02:00:00:00:01:a1"
        assert topology.assignments["b"].prefix_len == 29

    def test_subnet_exhaustion(self):
        policy = TopologyPolicy(subnet="10.9.0.0/29", first_host=5)
        policy.allocate(["a", "b"])
        with pytest.raises(ConfigError, match="cannot hold"):
            policy.allocate(["a", "b", "c"])

    def test_mac_exhaustion(self):
        policy = TopologyPolicy(subnet="10.0.0.0/16", mac_first_octet=0xFE)
        with pytest.raises(ConfigError, match="MAC prefix"):
            policy.allocate(["a", "b", "c"])

    def test_duplicate_names(self):
        with pytest.raises(ConfigError, match="unique"):
            TopologyPolicy().allocate(["a", "a"])


class TestBuildTopology:
    def test_single_instance_has_no_segment(self):
        instances = _instances(1)
        topology = build_topology(instances)
        assert not topology.isolated
        assert instances[0].internal_ip is None
        assert instances[0].mac_address is None

    def test_multi_instance_records_assignment_on_instances(self):
        instances = _instances(3)
        topology = build_topology(instances)
        for inst in instances:
            assignment = topology.for_instance(inst.name)
            assert (inst.internal_ip, inst.mac_address) == (assignment.ip, assignment.mac)


class TestAssembleNetwork:
    def test_single_instance_nat_only(self):
        (inst,) = _instances(1)
        args = assemble_network(inst, build_topology([inst]))
        assert args[0:2] == ["-netdev", "user,id=net0,hostfwd=tcp::2300-:22"]
        assert args[2] == "-device"
        assert args[3].startswith("virtio-net-pci,netdev=net0,mac=52:54:00:")
        assert len(args) == 4
        assert inst.extra_net_args == args

    def test_nat_mac_is_stable(self):
        (a,) = _instances(1)
        (b,) = _instances(1)
        assert assemble_network(a, build_topology([a])) == assemble_network(b, build_topology([b]))

    def test_multi_instance_shares_rendezvous_endpoint(self):
        instances = _instances(2)
        topology = build_topology(instances)
        all_args = [assemble_network(inst, topology) for inst in instances]
        for inst, args in zip(instances, all_args):
            assert f"user,id=net0,hostfwd=tcp::{inst.ssh_port}-:22" in args
            assert "socket,id=net1,mcast=230.0.0.1:1234" in args
            assert f"virtio-net-pci,netdev=net1,mac={inst.mac_address}" in args
        nat_macs = {args[3] for args in all_args}
        assert len(nat_macs) == 2

    def test_divergent_instance_address_is_rejected(self):
        instances = _instances(2)
        topology = build_topology(instances)
        instances[1].mac_address = "52:54:00:ff:ff:ff"
        with pytest.raises(ConfigError, match="does not match"):
            assemble_network(instances[1], topology)
