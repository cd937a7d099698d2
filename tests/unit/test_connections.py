"""
Tests for connections and the per-run connection pool.
"""

import sys

import pytest

from converge.connections.base import ConnectionOptions, ConnectionPool, create_connection, shell_quote
from converge.connections.local import LocalConnection
from converge.connections.ssh_asyncssh import SSHConnection
from converge.engine.errors import ConnectionError
from converge.engine.inventory import Host


class TestLocalConnection:

    @pytest.mark.asyncio
    async def test_run_shell(self):
        conn = LocalConnection(Host("localhost"))

        result = await conn.run("echo hello && echo oops >&2")

        assert result.success
        assert result.stdout == "hello\n"
        assert result.stderr == "oops\n"

    @pytest.mark.asyncio
    async def test_run_exit_code(self):
        result = await LocalConnection(Host("localhost")).run("exit 3")

        assert result.rc == 3
        assert not result.success

    @pytest.mark.asyncio
    async def test_environment_and_cwd(self, tmp_path):
        conn = LocalConnection(Host("localhost"))

        result = await conn.run("echo $DB_PORT; pwd", cwd=str(tmp_path), environment={"DB_PORT": 5433})

        assert result.stdout.splitlines() == ["5433", str(tmp_path)]

    @pytest.mark.asyncio
    async def test_timeout(self):
        result = await LocalConnection(Host("localhost")).run(f"{sys.executable} -c 'import time; time.sleep(5)'", timeout=0.1)

        assert result.rc == 124

    @pytest.mark.asyncio
    async def test_missing_program(self):
        result = await LocalConnection(Host("localhost")).run("no-such-program-here", shell=False)

        assert result.rc == 127

    @pytest.mark.asyncio
    async def test_put_creates_parents_and_sets_mode(self, tmp_path):
        conn = LocalConnection(Host("localhost"))
        source = tmp_path / "src.txt"
        source.write_text("Port 2222\n")
        dest = tmp_path / "etc" / "ssh" / "sshd_config"

        await conn.put(source, str(dest), mode="0600")

        assert dest.read_text() == "Port 2222\n"
        assert oct(dest.stat().st_mode)[-4:] == "0600"


class TestSSHConnection:

    def test_connect_kwargs_from_host_vars(self, tmp_path):
        host = Host("db1", {
            "ansible_host": "192.168.1.50",
            "ansible_port": 2222,
            "ansible_user": "deploy",
            "ansible_password": "pw",
        })

        kwargs = SSHConnection(host).connect_kwargs()

        assert kwargs["host"] == "192.168.1.50"
        assert kwargs["port"] == 2222
        assert kwargs["username"] == "deploy"
        assert kwargs["password"] == "pw"
        assert kwargs["connect_timeout"] == 30
        assert "known_hosts" not in kwargs

    def test_run_wide_options(self):
        options = ConnectionOptions(
            remote_user="admin",
            private_key_file="~/.ssh/id_ed25519",
            host_key_checking=False,
            timeout=5,
        )

        kwargs = SSHConnection(Host("db1"), options).connect_kwargs()

        assert kwargs["username"] == "admin"
        assert kwargs["client_keys"][0].endswith(".ssh/id_ed25519")
        assert kwargs["known_hosts"] is None
        assert kwargs["connect_timeout"] == 5

    def test_host_var_overrides_host_key_checking(self):
        host = Host("db1", {"ansible_host_key_checking": "false"})

        kwargs = SSHConnection(host).connect_kwargs()

        assert kwargs["known_hosts"] is None

    @pytest.mark.asyncio
    async def test_run_without_connection(self):
        result = await SSHConnection(Host("db1")).run("true")

        assert result.rc == 1
        assert result.stderr == "Not connected"


class TestCreateConnection:

    @pytest.mark.asyncio
    async def test_localhost_is_local(self):
        conn = await create_connection(Host("localhost"))

        assert isinstance(conn, LocalConnection)
        assert conn.connection_type == "local"

    @pytest.mark.asyncio
    async def test_unknown_transport(self):
        with pytest.raises(ConnectionError, match="unknown connection type: winrm"):
            await create_connection(Host("win1", {"ansible_connection": "winrm"}))


class TestConnectionPool:

    @pytest.mark.asyncio
    async def test_one_connection_per_host(self):
        made = []

        async def factory(host, options):
            conn = LocalConnection(host, options)
            made.append(conn)
            return conn

        pool = ConnectionPool(ConnectionOptions(timeout=3), factory=factory)
        db1 = Host("db1")

        first = await pool.get(db1)
        second = await pool.get(db1)
        await pool.get(Host("db2"))

        assert first is second
        assert len(made) == 2
        assert first.options.timeout == 3

    @pytest.mark.asyncio
    async def test_close_all(self):
        closed = []

        class Closing(LocalConnection):
            async def close(self):
                closed.append(self.host.name)

        async def factory(host, options):
            return Closing(host, options)

        pool = ConnectionPool(factory=factory)
        await pool.get(Host("db1"))
        await pool.close_all()
        await pool.close_all()

        assert closed == ["db1"]


def test_shell_quote():
    assert shell_quote("s3cr'et") == "'s3cr'\"'\"'et'"
    assert shell_quote(5433) == "5433"

