"""Tests for agent pool topology normalization."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from provisioner.topology import (
    AgentPoolSpec,
    DuplicateAgentPool,
    EmptyTopology,
    OsType,
    PoolMode,
    TopologyError,
    agent_pools,
    default_topology,
    normalize_topology,
)


class TestNormalizeTopology:
    """Tests for normalize_topology."""

    def test_single_pool_is_wrapped_and_forced_to_system(self) -> None:
        """Test that a lone pool becomes a one-element System topology."""
        profiles = normalize_topology(AgentPoolSpec(name="p1", count=3, mode=PoolMode.USER))

        assert len(profiles) == 1
        assert profiles[0]["name"] == "p1"
        assert profiles[0]["mode"] == "System"

    def test_mapping_input(self) -> None:
        """Test that camelCase mappings are accepted."""
        profiles = normalize_topology({"name": "p1", "nodeCount": 2, "vmSize": "Standard_D4s_v5"})

        assert profiles == [
            {
                "name": "p1",
                "count": 2,
                "vmSize": "Standard_D4s_v5",
                "osType": "Linux",
                "mode": "System",
            }
        ]

    def test_first_of_many_forced_others_untouched(self) -> None:
        """Test the System override applies to the first pool only."""
        pools = [
            AgentPoolSpec(name="p1", count=1, mode=PoolMode.USER),
            AgentPoolSpec(name="p2", count=2, mode=PoolMode.USER),
            AgentPoolSpec(name="p3", count=4, mode=PoolMode.SYSTEM, os_type=OsType.WINDOWS),
        ]

        profiles = normalize_topology(pools)

        assert [p["name"] for p in profiles] == ["p1", "p2", "p3"]
        assert [p["mode"] for p in profiles] == ["System", "User", "System"]
        assert [p["count"] for p in profiles] == [1, 2, 4]
        assert profiles[2]["osType"] == "Windows"

    def test_input_specs_not_mutated(self) -> None:
        """Test that normalization does not change the caller's specs."""
        pool = AgentPoolSpec(name="p1", mode=PoolMode.USER)

        normalize_topology([pool])

        assert pool.mode is PoolMode.USER

    def test_empty_topology(self) -> None:
        """Test that an empty sequence raises EmptyTopology."""
        with pytest.raises(EmptyTopology):
            normalize_topology([])

    def test_duplicate_names(self) -> None:
        """Test that repeated pool names are rejected."""
        with pytest.raises(DuplicateAgentPool) as exc_info:
            normalize_topology([AgentPoolSpec(name="p1"), AgentPoolSpec(name="p1")])

        assert "p1" in str(exc_info.value)
        assert isinstance(exc_info.value, TopologyError)

    def test_extra_pool_properties_forwarded(self) -> None:
        """Test that unknown pool keys pass through to the profile."""
        profiles = normalize_topology(
            {"name": "p1", "availabilityZones": ["1", "2"], "enableAutoScaling": True}
        )

        assert profiles[0]["availabilityZones"] == ["1", "2"]
        assert profiles[0]["enableAutoScaling"] is True

    def test_disk_size_included_when_set(self) -> None:
        """Test that osDiskSizeGB appears only when given."""
        profiles = normalize_topology(
            [AgentPoolSpec(name="p1"), AgentPoolSpec(name="p2", disk_size_gb=128)]
        )

        assert "osDiskSizeGB" not in profiles[0]
        assert profiles[1]["osDiskSizeGB"] == 128


class TestAgentPoolSpec:
    """Tests for AgentPoolSpec validation."""

    def test_defaults(self) -> None:
        """Test the default pool shape."""
        pool = AgentPoolSpec(name="pool1")

        assert pool.count == 3
        assert pool.vm_size == "Standard_DS2_v2"
        assert pool.os_type is OsType.LINUX
        assert pool.mode is PoolMode.USER

    @pytest.mark.parametrize("name", ["", "Pool1", "1pool", "averyverylongpoolname", "pool-1"])
    def test_invalid_names(self, name: str) -> None:
        """Test that names outside 1-12 lowercase alphanumerics are rejected."""
        with pytest.raises(ValidationError):
            AgentPoolSpec(name=name)

    def test_negative_count(self) -> None:
        """Test that node counts cannot be negative."""
        with pytest.raises(ValidationError):
            AgentPoolSpec(name="p1", count=-1)

    def test_blank_vm_size(self) -> None:
        """Test that an empty VM size is rejected."""
        with pytest.raises(ValidationError):
            AgentPoolSpec(name="p1", vm_size="  ")


class TestTopologyHelpers:
    """Tests for default_topology and agent_pools."""

    def test_default_topology(self) -> None:
        """Test the single three-node default pool."""
        pools = default_topology()

        assert len(pools) == 1
        assert pools[0].name == "pool1"
        assert pools[0].count == 3

    def test_agent_pools_recycles_sizes(self) -> None:
        """Test that shorter size and OS sequences are recycled."""
        pools = agent_pools(
            ["a", "b", "c"],
            [1, 2, 3],
            sizes=["Standard_D2s_v5", "Standard_D4s_v5"],
            os_types=["Linux"],
        )

        assert [p.vm_size for p in pools] == ["Standard_D2s_v5", "Standard_D4s_v5", "Standard_D2s_v5"]
        assert all(p.os_type is OsType.LINUX for p in pools)

    def test_agent_pools_length_mismatch(self) -> None:
        """Test that names and counts must line up."""
        with pytest.raises(TopologyError):
            agent_pools(["a", "b"], [1])
