# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Playbook CLI entrypoint for converge-playbook.

Usage:
    converge-playbook --version
    converge-playbook --help
    converge-playbook -i inventory playbook.yml
"""

import argparse
import platform
import sys
from typing import List, Optional

from converge import __version__
from converge.config import RunConfig, setup_logging
from converge.engine.errors import ConvergeError


def get_version_string() -> str:
    """Generate a detailed version string."""
    python_version = platform.python_version()
    os_info = f"{platform.system()} {platform.release()}"
    return (
        f"converge-playbook {__version__}\n"
        f"  python: {python_version}\n"
        f"  platform: {os_info}"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for converge-playbook."""
    parser = argparse.ArgumentParser(
        prog="converge-playbook",
        description="Run Ansible-style playbooks against Debian hosts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  converge-playbook -i inventory.ini site.yml
  converge-playbook -i hosts playbook.yml --check
  converge-playbook -i hosts site.yml -e @vars.yml --vault-password-file ~/.vault_pass
  converge-playbook -i hosts site.yml --list-tasks
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=get_version_string(),
    )

    parser.add_argument(
        "playbook",
        nargs="*",
        help="Playbook file(s) to run",
    )

    parser.add_argument(
        "-i", "--inventory",
        dest="inventory",
        default=None,
        help="Inventory file or directory",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv, -vvv)",
    )

    parser.add_argument(
        "-C", "--check",
        action="store_true",
        help="Run in check mode (dry run)",
    )

    parser.add_argument(
        "-D", "--diff",
        action="store_true",
        help="Show differences when changing files",
    )

    parser.add_argument(
        "-l", "--limit",
        dest="limit",
        default=None,
        help="Limit to specific hosts/groups",
    )

    parser.add_argument(
        "-t", "--tags",
        dest="tags",
        default=None,
        help="Only run plays and tasks tagged with these values",
    )

    parser.add_argument(
        "--skip-tags",
        dest="skip_tags",
        default=None,
        help="Skip plays and tasks tagged with these values",
    )

    parser.add_argument(
        "-f", "--forks",
        dest="forks",
        type=int,
        default=None,
        help="Number of hosts worked on in parallel (default: 5)",
    )

    parser.add_argument(
        "-e", "--extra-vars",
        dest="extra_vars",
        action="append",
        default=[],
        help="Extra variables as key=value, JSON or @file (can be repeated)",
    )

    parser.add_argument(
        "--vault-password-file",
        dest="vault_password_file",
        default=None,
        help="File (or executable) providing the vault password",
    )

    parser.add_argument(
        "--list-tasks",
        action="store_true",
        help="List the planned tasks per play and exit",
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results in JSON format",
    )

    return parser


def _split_tags(value: Optional[str]) -> List[str]:
    return [t.strip() for t in (value or "").split(",") if t.strip()]


def main(args: Optional[List[str]] = None) -> int:
    """Main entrypoint for converge-playbook CLI."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.playbook:
        parser.print_help()
        return 0

    from converge.engine.runner import PlaybookRunner
    from converge.engine.variables import parse_extra_vars

    try:
        config = RunConfig.load({
            "inventory": parsed.inventory,
            "forks": parsed.forks,
            "vault_password_file": parsed.vault_password_file,
        })
        setup_logging(parsed.verbose, config.log_level)

        if not config.inventory:
            print("ERROR! Inventory (-i/--inventory) is required", file=sys.stderr)
            return 3

        runner = PlaybookRunner(
            inventory_source=config.inventory,
            playbook_paths=parsed.playbook,
            forks=config.forks,
            limit=parsed.limit,
            tags=_split_tags(parsed.tags),
            skip_tags=_split_tags(parsed.skip_tags),
            check_mode=parsed.check,
            diff_mode=parsed.diff,
            verbosity=parsed.verbose,
            extra_vars=parse_extra_vars(parsed.extra_vars),
            json_output=parsed.json,
            vault_password_file=config.vault_password_file,
            connection_options=config.connection_options(),
            detached_grace=config.detached_grace,
            become_user=config.become_user,
        )

        if parsed.list_tasks:
            for line in runner.build().describe():
                print(line)
            return 0
    except ConvergeError as e:
        print(f"ERROR! {e}", file=sys.stderr)
        return int(e.exit_code)

    return runner.run()


if __name__ == "__main__":
    sys.exit(main())
