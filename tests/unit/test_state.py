"""
Tests for state snapshots, desired-state comparison and diffs.
"""

import pytest

from converge.connections.base import RunResult
from converge.engine.state import (
    ChangeSet, DesiredFile, DesiredService, DesiredUser, FileSnapshot, ServiceSnapshot,
    UserSnapshot, inspect_file, inspect_packages, inspect_service, inspect_user,
    normalize_mode, unified_diff,
)


def scripted(outputs):
    """CommandRunner answering by command prefix; anything else fails."""
    calls = []

    async def run(command):
        calls.append(command)
        for prefix, result in outputs.items():
            if command.startswith(prefix):
                return result
        return RunResult(rc=1, stdout="", stderr="not found")

    run.calls = calls
    return run


def ok(stdout=""):
    return RunResult(rc=0, stdout=stdout, stderr="")


@pytest.mark.parametrize("mode,expected", [
    ("644", "0644"),
    ("0600", "0600"),
    (0o440, "0440"),
    ("u+x", "u+x"),
    (None, None),
    ("", None),
])
def test_normalize_mode(mode, expected):
    assert normalize_mode(mode) == expected


class TestInspectFile:

    @pytest.mark.asyncio
    async def test_regular_file(self):
        run = scripted({
            "stat ": ok("regular file|440|root|root|31\n"),
            "cat ": ok("deploy ALL=(ALL) NOPASSWD: ALL\n"),
        })

        snapshot = await inspect_file(run, "/etc/sudoers.d/deploy")

        assert snapshot.is_file
        assert snapshot.mode == "0440"
        assert snapshot.owner == "root"
        assert snapshot.size == 31
        assert snapshot.content == "deploy ALL=(ALL) NOPASSWD: ALL\n"

    @pytest.mark.asyncio
    async def test_missing(self):
        snapshot = await inspect_file(scripted({}), "/etc/missing")

        assert not snapshot.exists
        assert not snapshot.is_file

    @pytest.mark.asyncio
    async def test_directory_content_not_read(self):
        run = scripted({"stat ": ok("directory|755|root|root|4096\n")})

        snapshot = await inspect_file(run, "/etc/postgresql")

        assert snapshot.is_dir
        assert snapshot.content is None
        assert not any(c.startswith("cat ") for c in run.calls)

    @pytest.mark.asyncio
    async def test_symlink(self):
        run = scripted({
            "stat ": ok("symbolic link|777|root|root|20\n"),
            "readlink ": ok("/lib/systemd/system/ssh.service\n"),
        })

        snapshot = await inspect_file(run, "/etc/systemd/system/sshd.service")

        assert snapshot.is_link
        assert snapshot.link_target == "/lib/systemd/system/ssh.service"


class TestInspectService:

    @pytest.mark.asyncio
    async def test_active_enabled(self):
        run = scripted({
            "systemctl is-active": ok("active\n"),
            "systemctl is-enabled": ok("enabled\n"),
        })

        snapshot = await inspect_service(run, "postgresql")

        assert snapshot.active
        assert snapshot.enabled is True
        assert snapshot.exists

    @pytest.mark.asyncio
    async def test_static_unit_has_no_enabled_flag(self):
        run = scripted({
            "systemctl is-active": RunResult(rc=3, stdout="inactive\n", stderr=""),
            "systemctl is-enabled": ok("static\n"),
        })

        snapshot = await inspect_service(run, "networking")

        assert not snapshot.active
        assert snapshot.enabled is None

    @pytest.mark.asyncio
    async def test_unknown_unit(self):
        missing = RunResult(rc=1, stdout="", stderr="Failed to get unit file state for nope.service: No such file or directory\n")
        run = scripted({
            "systemctl is-active": RunResult(rc=3, stdout="inactive\n", stderr=""),
            "systemctl is-enabled": missing,
        })

        snapshot = await inspect_service(run, "nope")

        assert not snapshot.exists


class TestInspectUser:

    @pytest.mark.asyncio
    async def test_existing_user(self):
        run = scripted({
            "getent passwd": ok("deploy:x:1000:1000:Deploy:/home/deploy:/bin/bash\n"),
            "id -Gn": ok("deploy sudo adm\n"),
            "getent shadow": ok("deploy:$6$salt$hash:19000:0:99999:7:::\n"),
        })

        snapshot = await inspect_user(run, "deploy")

        assert snapshot.uid == 1000
        assert snapshot.home == "/home/deploy"
        assert snapshot.primary_group == "deploy"
        assert snapshot.groups == ("sudo", "adm")
        assert snapshot.password_hash == "$6$salt$hash"

    @pytest.mark.asyncio
    async def test_absent_user(self):
        snapshot = await inspect_user(scripted({}), "ghost")

        assert not snapshot.exists


class TestInspectPackages:

    @pytest.mark.asyncio
    async def test_installed_and_missing(self):
        run = scripted({
            "dpkg-query": RunResult(
                rc=1,
                stdout="iptables\tinstall ok installed\t1.8.7-1\nrsyslog\tdeinstall ok config-files\t8.2102.0-2\n",
                stderr="dpkg-query: no packages found matching postgresql-16\n",
            ),
        })

        snapshots = await inspect_packages(run, ["iptables", "rsyslog", "postgresql-16"])

        assert snapshots["iptables"].installed
        assert snapshots["iptables"].version == "1.8.7-1"
        assert not snapshots["rsyslog"].installed
        assert not snapshots["postgresql-16"].installed

    @pytest.mark.asyncio
    async def test_nothing_requested(self):
        run = scripted({})

        assert await inspect_packages(run, []) == {}
        assert run.calls == []


class TestDesiredFile:

    def test_missing_file(self):
        changes = DesiredFile("/etc/apt/sources.list.d/pgdg.list", content="deb x\n").changes(
            FileSnapshot(path="/etc/apt/sources.list.d/pgdg.list", exists=False))

        assert "state" in changes

    def test_equal_is_unchanged(self):
        snapshot = FileSnapshot(path="/etc/x", exists=True, content="a\n", mode="0644", owner="root")

        assert not DesiredFile("/etc/x", content="a\n", mode="644", owner="root").changes(snapshot)

    def test_content_and_mode(self):
        snapshot = FileSnapshot(path="/etc/x", exists=True, content="a\n", mode="0644")

        changes = DesiredFile("/etc/x", content="b\n", mode="0600").changes(snapshot)

        assert len(changes) == 2
        assert changes.get("mode").after == "0600"


class TestDesiredService:

    def active(self, active=True, enabled=True):
        return ServiceSnapshot(name="ssh", active=active, enabled=enabled,
                               active_state="active" if active else "inactive")

    def test_started_when_running(self):
        assert not DesiredService("ssh", state="started", enabled=True).changes(self.active())

    def test_start_and_enable(self):
        changes = DesiredService("ssh", state="started", enabled=True).changes(self.active(False, False))

        assert "state" in changes
        assert "enabled" in changes

    def test_restarted_always_changes(self):
        assert DesiredService("ssh", state="restarted").changes(self.active())

    def test_reload_of_stopped_service_starts_it(self):
        changes = DesiredService("rsyslog", state="reloaded").changes(self.active(active=False))

        assert changes.get("state").after == "started"


class TestDesiredUser:

    def existing(self, **kwargs):
        values = dict(name="deploy", exists=True, uid=1000, shell="/bin/bash",
                      groups=("sudo",), primary_group="deploy", password_hash="$6$x")
        values.update(kwargs)
        return UserSnapshot(**values)

    def test_absent(self):
        changes = DesiredUser("deploy").changes(UserSnapshot(name="deploy", exists=False))

        assert changes.get("state").after == "present"

    def test_append_only_missing_groups(self):
        assert not DesiredUser("deploy", groups=("sudo",), append=True).changes(self.existing())
        assert "groups" in DesiredUser("deploy", groups=("adm",), append=True).changes(self.existing())

    def test_exact_groups(self):
        changes = DesiredUser("deploy", groups=("adm",)).changes(self.existing())

        assert changes.get("groups").after == ["adm"]

    def test_password_not_echoed(self):
        changes = DesiredUser("deploy", password="$6$new").changes(self.existing())

        assert "$6$new" not in " ".join(changes.describe())


def test_changeset_describe():
    changes = ChangeSet()
    changes.add("port", "22", "2222")

    assert changes.describe() == ["port: '22' -> '2222'"]
    assert bool(changes)


def test_unified_diff():
    diff = unified_diff("Port 22\n", "Port 2222\n", "/etc/ssh/sshd_config")

    assert "--- /etc/ssh/sshd_config (before)" in diff
    assert "-Port 22" in diff
    assert "+Port 2222" in diff
    assert unified_diff("same\n", "same\n", "/etc/x") == ""
