# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Provisioning Plays

The Debian 11 / PostgreSQL 16 server plan as concrete Play and Task
objects. All parameters are filled in from ServerSettings when the plays
are built; no argument contains a template.

Plays, in order:

1. debian_11_primary: base packages, admin user with passwordless sudo,
   static network address (networking restart is detached)
2. localhost: regenerate ~/.ssh/id_rsa and copy it to the primary host
3. debian_11_secondary: sshd hardening, iptables firewall, rsyslog
   routing for firewall logs, PostgreSQL 16, final reboot (detached)
"""

from itertools import count
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from converge.engine.playbook import Block, Play, Task
from converge.provisioning.settings import ServerSettings


PRIMARY_GROUP = "debian_11_primary"
SECONDARY_GROUP = "debian_11_secondary"
LOCAL_GROUP = "localhost"

BASE_PACKAGES = [
    "sudo",
    "iptables",
    "iptables-persistent",
    "rsyslog",
    "curl",
    "ca-certificates",
    "python3-psycopg2",
]

SSHD_CONFIG = "/etc/ssh/sshd_config"
POSTGRESQL_CONF = "/etc/postgresql/16/main/postgresql.conf"
PG_HBA_CONF = "/etc/postgresql/16/main/pg_hba.conf"
PGDG_DIR = "/usr/share/postgresql-common/pgdg"
PGDG_KEY = f"{PGDG_DIR}/apt.postgresql.org.asc"
PGDG_KEY_URL = "https://www.postgresql.org/media/keys/ACCC4CF8.asc"
PGDG_LIST = "/etc/apt/sources.list.d/pgdg.list"
IPTABLES_LOG_PREFIX = "IPTables-Input: "


def task(title: str, module: str, /, **args: Any) -> Task:
    """Shorthand for a Task with no keywords besides module arguments."""
    return Task(name=title, module=module, args=args)


class _Blocks:
    """Numbers blocks and stamps their members with block metadata."""

    def __init__(self) -> None:
        self._ids = count(1)

    def __call__(self, name: str, tasks: List[Task]) -> Block:
        block = Block(name=name, block=list(tasks), block_id=next(self._ids))
        for member in tasks:
            member.block_id = block.block_id
            member.block_name = name
            member.block_role = "block"
        return block


def network_interfaces(settings: ServerSettings) -> str:
    """Content of /etc/network/interfaces with the static address."""
    return (
        "# Network interface configuration\n"
        "source /etc/network/interfaces.d/*\n"
        "\n"
        "auto lo\n"
        "iface lo inet loopback\n"
        "\n"
        f"auto {settings.interface}\n"
        f"iface {settings.interface} inet static\n"
        f"  address {settings.static_address}/24\n"
        f"  gateway {settings.gateway}\n"
        f"  dns-nameservers {' '.join(settings.dns_servers)}\n"
    )


def sshd_settings(settings: ServerSettings) -> List[Dict[str, str]]:
    """sshd_config edits as (name, regexp, line), in the order they are applied."""
    return [
        {"name": "Enable Password Authentication in SSH",
         "regexp": "^#?PasswordAuthentication", "line": "PasswordAuthentication yes"},
        {"name": "Ensure AuthorizedKeysFile is Un-commented",
         "regexp": "^#AuthorizedKeysFile", "line": "AuthorizedKeysFile .ssh/authorized_keys"},
        {"name": "Enable Public Key Authentication in SSH",
         "regexp": "^#?PubkeyAuthentication", "line": "PubkeyAuthentication yes"},
        {"name": "Ensure SSH allows both password and public key authentication",
         "regexp": "^#?AuthenticationMethods", "line": "AuthenticationMethods publickey,password"},
        {"name": "Disable Root Login via SSH",
         "regexp": "^#?PermitRootLogin", "line": "PermitRootLogin no"},
        {"name": "Set Custom SSH Port",
         "regexp": "^#?Port", "line": f"Port {settings.ssh_port}"},
        {"name": "Limit SSH Listening to Specific Address",
         "regexp": "^#?ListenAddress", "line": f"ListenAddress {settings.ssh_listen_address}"},
        {"name": f"Allow Only '{settings.admin_user}' SSH Access",
         "regexp": "^#?AllowUsers", "line": f"AllowUsers {settings.admin_user}"},
    ]


def firewall_rules(settings: ServerSettings) -> List[Dict[str, Any]]:
    """iptables invocations, in order. Every ACCEPT and the LOG rule precede the DROP policy."""
    return [
        {"name": "Flush existing iptables rules",
         "argv": ["iptables", "-F"]},
        {"name": "Allow established connections",
         "argv": ["iptables", "-A", "INPUT", "-m", "state", "--state", "ESTABLISHED,RELATED", "-j", "ACCEPT"]},
        {"name": "Allow SSH on Custom Port",
         "argv": ["iptables", "-A", "INPUT", "-p", "tcp", "--dport", str(settings.ssh_port), "-j", "ACCEPT"]},
        {"name": "Configure iptables to allow PostgreSQL on new port",
         "argv": ["iptables", "-A", "INPUT", "-p", "tcp", "--dport", str(settings.db_port), "-j", "ACCEPT"]},
        {"name": "Log all incoming packets",
         "argv": ["iptables", "-A", "INPUT", "-j", "LOG", "--log-prefix", IPTABLES_LOG_PREFIX, "--log-level", "4"]},
        {"name": "Set default policy to drop all incoming connections",
         "argv": ["iptables", "-P", "INPUT", "DROP"]},
        {"name": "Allow outgoing connections",
         "argv": ["iptables", "-P", "OUTPUT", "ACCEPT"]},
    ]


def postgres_password_sql(settings: ServerSettings) -> str:
    """ALTER USER statement with the password literal escaped."""
    user = settings.db_user.replace('"', '""')
    password = settings.db_passwd.replace("'", "''")
    return f"ALTER USER \"{user}\" WITH PASSWORD '{password}';"


def primary_play(settings: ServerSettings) -> Play:
    blocks = _Blocks()
    user = settings.admin_user

    create_user = task(
        f"Create New User '{user}'", "user",
        name=user, password=settings.admin_password, shell="/bin/bash", state="present",
    )
    create_user.no_log = True

    restart_networking = task("Restart Networking Service", "service", name="networking", state="restarted")
    restart_networking.async_seconds = 10
    restart_networking.poll = 0

    body: List[Union[Task, Block]] = [
        task("Update APT package index", "apt", update_cache=True),
        task("Installing the required packages", "apt", name=list(BASE_PACKAGES), state="present"),
        blocks("Сreating a new user and assigning rights", [
            create_user,
            task(f"Add '{user}' to Sudo Group", "user", name=user, groups=["sudo"], append=True),
            task(
                "Configure Sudoers for Passwordless Access", "lineinfile",
                path="/etc/sudoers",
                state="present",
                line=f"{user} ALL=(ALL:ALL) NOPASSWD:ALL",
                validate="visudo -cf %s",
            ),
        ]),
        blocks("Configure Network Interfaces", [
            task(
                "Configure /etc/network/interfaces", "copy",
                dest="/etc/network/interfaces",
                content=network_interfaces(settings),
            ),
            restart_networking,
        ]),
    ]
    return Play(
        name="Installing the required packages, сreating a new user and setting up a static address",
        hosts=PRIMARY_GROUP,
        body=body,
        become=True,
    )


def local_key_play(settings: ServerSettings, home: Union[str, Path]) -> Play:
    private_key = f"{home}/.ssh/id_rsa"
    public_key = f"{private_key}.pub"

    check = task("Check if SSH Key exists", "stat", path=private_key)
    check.register = "ssh_key_status"

    remove_private = task("Remove existing SSH Key", "file", path=private_key, state="absent")
    remove_private.when = "ssh_key_status.stat.exists"
    remove_public = task("Remove existing SSH Public Key", "file", path=public_key, state="absent")
    remove_public.when = "ssh_key_status.stat.exists"

    generate = task(
        "Generate SSH Key If Not Exists", "openssh_keypair",
        path=private_key, type="rsa", size=4096, passphrase=settings.ssh_key_passphrase,
    )
    generate.delegate_to = "localhost"
    generate.run_once = True
    generate.no_log = True

    copy_id = task(
        "Copy Public Key to Remote Server", "command",
        argv=["ssh-copy-id", "-i", public_key, f"{settings.admin_user}@{settings.static_address}"],
    )
    copy_id.delegate_to = "localhost"

    return Play(
        name="Generate SSH Key on Local Machine (if it doesn't exist or regenerate)",
        hosts=LOCAL_GROUP,
        body=[check, remove_private, remove_public, generate, copy_id],
    )


def secondary_play(settings: ServerSettings) -> Play:
    blocks = _Blocks()

    ssh_tasks = [
        task(edit["name"], "lineinfile", path=SSHD_CONFIG, regexp=edit["regexp"], line=edit["line"], state="present")
        for edit in sshd_settings(settings)
    ]
    ssh_tasks.append(task("Restart SSH Service to Apply Changes", "service", name="ssh", state="restarted"))

    firewall_tasks = [task(rule["name"], "command", argv=rule["argv"]) for rule in firewall_rules(settings)]
    firewall_tasks.append(task("Save iptables rules", "shell", cmd="iptables-save > /etc/iptables/rules.v4"))

    rsyslog_tasks = [
        task("Ensure /etc/rsyslog.d directory exists", "file", path="/etc/rsyslog.d", state="directory", mode="0755"),
        task(
            "Ensure iptables log file exists", "file",
            path="/var/log/iptables.log", state="touch", mode="0644", owner="root", group="adm",
        ),
        task(
            "Create iptables logging configuration", "copy",
            dest="/etc/rsyslog.d/iptables.conf",
            content=f':msg, contains, "{IPTABLES_LOG_PREFIX}" /var/log/iptables.log\n& stop\n',
        ),
        task("Restart rsyslog service", "service", name="rsyslog", state="restarted"),
    ]

    set_password = task(
        "Set password for PostgreSQL user", "command",
        argv=["psql", "-c", postgres_password_sql(settings)],
    )
    set_password.become_user = "postgres"
    set_password.no_log = True

    postgres_tasks = [
        task("Create directory for PostgreSQL common", "file", path=PGDG_DIR, state="directory"),
        task(
            "Download PostgreSQL repository signing key", "get_url",
            url=PGDG_KEY_URL, dest=PGDG_KEY, mode="0644", force=True,
        ),
        task(
            "Create the repository configuration file", "copy",
            dest=PGDG_LIST,
            content=(
                f"deb [signed-by={PGDG_KEY}] https://apt.postgresql.org/pub/repos/apt "
                "bullseye-pgdg main\n"
            ),
        ),
        task("Update the package lists", "apt", update_cache=True),
        task("Install PostgreSQL-16", "apt", name="postgresql-16", state="present"),
        task("Ensure PostgreSQL is started and enabled", "service", name="postgresql", state="started", enabled=True),
        task(
            "Configure PostgreSQL to listen on all IP addresses", "lineinfile",
            path=POSTGRESQL_CONF, regexp="^#?listen_addresses",
            line=f"listen_addresses = '{settings.db_host}'", state="present",
        ),
        task(
            "Set PostgreSQL logging to /var/log/postgresql/postgresql-16-main.log", "lineinfile",
            path=POSTGRESQL_CONF, regexp="^#?log_directory",
            line="log_directory = '/var/log/postgresql'", state="present",
        ),
        task(
            "Change PostgreSQL port", "lineinfile",
            path=POSTGRESQL_CONF, regexp="^#?port", line=f"port = {settings.db_port}", state="present",
        ),
        task(
            "Add client authentication configuration for remote access", "lineinfile",
            path=PG_HBA_CONF, line="host all all 0.0.0.0/0 md5", create=True,
        ),
        task("Restart PostgreSQL to apply changes", "service", name="postgresql", state="restarted"),
        set_password,
        task("Restart PostgreSQL to apply changes", "service", name="postgresql", state="restarted"),
    ]

    reboot = task("Reboot the server", "shell", cmd="reboot")
    reboot.async_seconds = 1
    reboot.poll = 0

    body: List[Union[Task, Block]] = [
        task("Update APT Package Index", "apt", update_cache=True),
        blocks("Configure SSH Settings", ssh_tasks),
        blocks("Configure Firewall", firewall_tasks),
        blocks("Configure rsyslog", rsyslog_tasks),
        blocks("Install and Configure PostgreSQL 16", postgres_tasks),
        reboot,
    ]
    return Play(name="Configure server", hosts=SECONDARY_GROUP, body=body, become=True)


def build_plays(settings: ServerSettings, home: Optional[Union[str, Path]] = None) -> List[Play]:
    """
    The three plays of the server plan, in run order.

    Args:
        settings: Validated variables
        home: Home directory holding .ssh/id_rsa; defaults to the current
            user's home
    """
    home = str(home if home is not None else Path.home()).rstrip("/")
    return [
        primary_play(settings),
        local_key_play(settings, home),
        secondary_play(settings),
    ]
