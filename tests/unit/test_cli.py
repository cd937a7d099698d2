"""Unit tests for CLI modules."""

import logging
from unittest import mock

import pytest

from converge import __version__
from converge.cli import main, playbook
from converge.engine.runner import PlaybookRunner


VARS_YML = """\
admin_user: deploy
admin_password: pw
static_address: 192.168.1.50
gateway: 192.168.1.1
dns_servers: [8.8.8.8]
ssh_port: 2222
ssh_listen_address: 192.168.1.50
db_host: '*'
db_port: 5433
db_user: postgres
db_passwd: pw
"""


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    """No converge.cfg or CONVERGE_* variables from the developer's machine."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    for name in ("CONVERGE_CONFIG", "CONVERGE_FORKS", "CONVERGE_INVENTORY"):
        monkeypatch.delenv(name, raising=False)
    logger = logging.getLogger("converge")
    level, handlers = logger.level, list(logger.handlers)
    yield tmp_path
    logger.setLevel(level)
    logger.handlers[:] = handlers


@pytest.fixture
def inventory(tmp_path):
    path = tmp_path / "hosts.ini"
    path.write_text("[debian_11_primary]\n192.168.1.50\n[debian_11_secondary]\n192.168.1.50\n")
    return str(path)


class TestMainCLI:
    """Tests for main CLI."""

    def test_create_parser(self):
        parser = main.create_parser()
        assert parser.prog == "converge"

    def test_version_string(self):
        version = main.get_version_string()
        assert f"converge {__version__}" in version
        assert "python:" in version

    def test_main_no_args_shows_help(self, capsys):
        result = main.main([])
        assert result == 0
        assert "provision" in capsys.readouterr().out

    def test_modules(self, capsys):
        assert main.main(["modules"]) == 0
        listed = capsys.readouterr().out.split()
        assert "lineinfile" in listed
        assert "openssh_keypair" in listed

    def test_provision_requires_vars(self):
        with pytest.raises(SystemExit):
            main.main(["provision", "-i", "hosts.ini"])

    def test_provision_requires_inventory(self, tmp_path, capsys):
        (tmp_path / "vars.yml").write_text(VARS_YML)

        assert main.main(["provision", "--vars", "vars.yml"]) == 3
        assert "Inventory" in capsys.readouterr().err

    def test_provision_invalid_vars(self, tmp_path, inventory, capsys):
        (tmp_path / "vars.yml").write_text(VARS_YML.replace("ssh_port: 2222", "ssh_port: ssh"))

        assert main.main(["provision", "-i", inventory, "--vars", "vars.yml"]) == 3
        assert "ssh_port must be a port number" in capsys.readouterr().err

    def test_provision_runs_plan(self, tmp_path, inventory, capsys, monkeypatch):
        (tmp_path / "vars.yml").write_text(VARS_YML)
        monkeypatch.setenv("CONVERGE_FORKS", "2")

        with mock.patch.object(PlaybookRunner, "run", autospec=True, return_value=0) as run:
            code = main.main(["provision", "-i", inventory, "--vars", "vars.yml", "--home", "/home/operator"])

        assert code == 0
        runner = run.call_args[0][0]
        assert [p.hosts for p in runner.plays] == ["debian_11_primary", "localhost", "debian_11_secondary"]
        assert runner.forks == 2
        assert "PasswordAuthentication yes" in capsys.readouterr().err


class TestPlaybookCLI:
    """Tests for playbook CLI."""

    def test_create_parser(self):
        parser = playbook.create_parser()
        assert parser.prog == "converge-playbook"

    def test_version_string(self):
        version = playbook.get_version_string()
        assert __version__ in version

    def test_no_playbook_shows_help(self, capsys):
        assert playbook.main([]) == 0
        assert "converge-playbook" in capsys.readouterr().out

    def test_requires_inventory(self, tmp_path, capsys):
        (tmp_path / "site.yml").write_text("- hosts: all\n  tasks: []\n")

        assert playbook.main(["site.yml"]) == 3
        assert "Inventory" in capsys.readouterr().err

    def test_inventory_from_config_file(self, tmp_path, inventory, capsys):
        (tmp_path / "converge.cfg").write_text(f"[defaults]\ninventory = {inventory}\n")
        (tmp_path / "site.yml").write_text("- hosts: all\n  tasks:\n    - ping:\n")

        assert playbook.main(["site.yml", "--list-tasks"]) == 0
        assert "play: all (192.168.1.50)" in capsys.readouterr().out

    def test_list_tasks_with_tags(self, tmp_path, inventory, capsys):
        (tmp_path / "site.yml").write_text("""
- name: Base
  hosts: debian_11_primary
  tasks:
    - name: Update cache
      apt: {update_cache: true}
      tags: [packages]
    - name: Configure sshd
      lineinfile: {path: /etc/ssh/sshd_config, line: Port 2222}
      tags: [ssh]
""")

        assert playbook.main(["-i", inventory, "site.yml", "--list-tasks", "--tags", "ssh, other"]) == 0

        out = capsys.readouterr().out
        assert "  Configure sshd" in out
        assert "Update cache" not in out

    def test_parse_error_exit_code(self, tmp_path, inventory, capsys):
        (tmp_path / "site.yml").write_text("- hosts: all\n  tasks: [\n")

        assert playbook.main(["-i", inventory, "site.yml", "--list-tasks"]) == 3
        assert "YAML syntax error" in capsys.readouterr().err

    def test_options_reach_runner(self, tmp_path, inventory):
        (tmp_path / "site.yml").write_text("- hosts: all\n  tasks: []\n")

        with mock.patch.object(PlaybookRunner, "run", autospec=True, return_value=2) as run:
            code = playbook.main([
                "-i", inventory, "site.yml", "-C", "-l", "debian_11_primary",
                "-e", "ssh_port=2222", "-e", '{"db_port": 5433}', "--skip-tags", "reboot", "-f", "3",
            ])

        assert code == 2
        runner = run.call_args[0][0]
        assert runner.check_mode is True
        assert runner.limit == "debian_11_primary"
        assert runner.extra_vars == {"ssh_port": "2222", "db_port": 5433}
        assert runner.skip_tags == ["reboot"]
        assert runner.forks == 3
