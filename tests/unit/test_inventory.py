"""
Tests for INI and YAML inventory parsing and host patterns.
"""

import pytest
from pathlib import Path

from converge.engine.errors import InventoryError
from converge.engine.inventory import Host, InventoryManager


SERVER_PAIR = """
[primary]
db1 ansible_host=192.168.1.10 ansible_user=root

[secondary]
db1

[local]
localhost ansible_connection=local

[primary:vars]
ansible_port=22
"""


class TestINIInventory:
    """Test INI inventory file parsing."""

    def test_parse_groups_in_order(self, tmp_path: Path):
        inventory_file = tmp_path / "hosts.ini"
        inventory_file.write_text("[web]\nweb2\nweb1\n[db]\ndb1\n")

        mgr = InventoryManager().parse(str(inventory_file))

        assert [h.name for h in mgr.get_hosts("all")] == ["web2", "web1", "db1"]
        assert [h.name for h in mgr.get_hosts("web")] == ["web2", "web1"]

    def test_host_in_two_groups_keeps_one_entry(self, tmp_path: Path):
        inventory_file = tmp_path / "hosts.ini"
        inventory_file.write_text(SERVER_PAIR)

        mgr = InventoryManager().parse(str(inventory_file))

        assert [h.name for h in mgr.get_hosts("primary")] == ["db1"]
        assert [h.name for h in mgr.get_hosts("secondary")] == ["db1"]
        host = mgr.get_hosts("db1")[0]
        assert host.address == "192.168.1.10"
        assert host.user == "root"
        assert set(host.groups) >= {"primary", "secondary", "all"}

    def test_inline_values_are_typed(self, tmp_path: Path):
        inventory_file = tmp_path / "hosts.ini"
        inventory_file.write_text('web1 ansible_port=2222 enabled=yes label="a b"\n')

        host = InventoryManager().parse(str(inventory_file)).get_hosts("web1")[0]

        assert host.port == 2222
        assert host.vars["enabled"] is True
        assert host.vars["label"] == "a b"

    def test_group_vars_section(self, tmp_path: Path):
        inventory_file = tmp_path / "hosts.ini"
        inventory_file.write_text(SERVER_PAIR)

        mgr = InventoryManager().parse(str(inventory_file))

        assert mgr.get_host_vars("db1")["ansible_port"] == 22
        assert mgr.get_host_vars("db1")["inventory_hostname"] == "db1"

    def test_range_expansion(self, tmp_path: Path):
        inventory_file = tmp_path / "hosts.ini"
        inventory_file.write_text("[web]\nweb[01:03].example.com\n")

        mgr = InventoryManager().parse(str(inventory_file))

        assert [h.name for h in mgr.get_hosts("web")] == [
            "web01.example.com", "web02.example.com", "web03.example.com",
        ]

    def test_children(self, tmp_path: Path):
        inventory_file = tmp_path / "hosts.ini"
        inventory_file.write_text("[a]\nh1\n[b]\nh2\n[both:children]\na\nb\n")

        mgr = InventoryManager().parse(str(inventory_file))

        assert {h.name for h in mgr.get_hosts("both")} == {"h1", "h2"}

    def test_missing_inventory(self, tmp_path: Path):
        with pytest.raises(InventoryError, match="does not exist"):
            InventoryManager().parse(str(tmp_path / "nope.ini"))


class TestYAMLInventory:

    def test_parse_yaml(self, tmp_path: Path):
        inventory_file = tmp_path / "hosts.yml"
        inventory_file.write_text("""
all:
  children:
    primary:
      hosts:
        db1:
          ansible_host: 10.0.0.5
      vars:
        role: database
""")
        mgr = InventoryManager().parse(str(inventory_file))

        assert [h.name for h in mgr.get_hosts("primary")] == ["db1"]
        assert mgr.get_host_vars("db1")["role"] == "database"
        assert mgr.get_hosts("db1")[0].address == "10.0.0.5"

    def test_invalid_yaml(self, tmp_path: Path):
        inventory_file = tmp_path / "hosts.yml"
        inventory_file.write_text("all: [unclosed\n")

        with pytest.raises(InventoryError):
            InventoryManager().parse(str(inventory_file))

    def test_host_vars_directory(self, tmp_path: Path):
        (tmp_path / "hosts.ini").write_text("[web]\nweb1\n")
        (tmp_path / "host_vars").mkdir()
        (tmp_path / "host_vars" / "web1.yml").write_text("http_port: 8080\n")
        (tmp_path / "group_vars").mkdir()
        (tmp_path / "group_vars" / "web.yml").write_text("http_port: 80\nworkers: 4\n")

        mgr = InventoryManager().parse(str(tmp_path / "hosts.ini"))
        merged = mgr.get_host_vars("web1")

        assert merged["http_port"] == 8080
        assert merged["workers"] == 4


class TestHostPatterns:

    @pytest.fixture
    def mgr(self, tmp_path: Path) -> InventoryManager:
        inventory_file = tmp_path / "hosts.ini"
        inventory_file.write_text("[web]\nweb1\nweb2\n[db]\ndb1\nweb2\n")
        return InventoryManager().parse(str(inventory_file))

    def test_union(self, mgr):
        assert [h.name for h in mgr.get_hosts("web,db")] == ["web1", "web2", "db1"]

    def test_intersection(self, mgr):
        assert [h.name for h in mgr.get_hosts("web:&db")] == ["web2"]

    def test_exclusion(self, mgr):
        assert [h.name for h in mgr.get_hosts("web:!db")] == ["web1"]
        assert [h.name for h in mgr.get_hosts("!web")] == ["db1"]

    def test_unknown_pattern_matches_nothing(self, mgr):
        assert mgr.get_hosts("nothing") == []

    def test_implicit_localhost(self, mgr):
        hosts = mgr.get_hosts("localhost")
        assert len(hosts) == 1
        assert hosts[0].connection_type == "local"


class TestHost:

    def test_defaults(self):
        host = Host("web1")
        assert host.address == "web1"
        assert host.port == 22
        assert host.connection_type == "ssh"

    def test_localhost_is_local(self):
        assert Host("localhost").connection_type == "local"

    def test_equality_by_name(self):
        assert Host("a", {"x": 1}) == Host("a")
        assert len({Host("a"), Host("a")}) == 1
