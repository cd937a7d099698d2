# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Main CLI entrypoint for converge.

Usage:
    converge --version
    converge provision -i hosts.ini --vars vars.yml
    converge modules
"""

import argparse
import logging
import platform
import sys
from typing import List, Optional

from converge import __version__
from converge.config import RunConfig, setup_logging
from converge.engine.errors import ConvergeError


logger = logging.getLogger(__name__)


def get_version_string() -> str:
    """Generate a detailed version string."""
    python_version = platform.python_version()
    os_info = f"{platform.system()} {platform.release()}"
    return (
        f"converge {__version__}\n"
        f"  python: {python_version}\n"
        f"  platform: {os_info}"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for converge."""
    parser = argparse.ArgumentParser(
        prog="converge",
        description="Provision a Debian 11 / PostgreSQL 16 server pair",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  converge provision -i hosts.ini --vars vars.yml
  converge provision -i hosts.ini --vars vars.yml --check --diff
  converge provision -i hosts.ini --vars vault.yml --vault-password-file ~/.vault_pass
  converge modules
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=get_version_string(),
    )

    subparsers = parser.add_subparsers(dest="command")

    provision = subparsers.add_parser(
        "provision",
        help="Run the server plan against the primary and secondary groups",
    )
    provision.add_argument(
        "-i", "--inventory",
        dest="inventory",
        default=None,
        help="Inventory file or directory",
    )
    provision.add_argument(
        "--vars",
        dest="vars_file",
        required=True,
        help="Variables file (plain or vault-encrypted YAML)",
    )
    provision.add_argument(
        "--home",
        dest="home",
        default=None,
        help="Local home directory holding .ssh/id_rsa (default: current user's)",
    )
    provision.add_argument(
        "-l", "--limit",
        dest="limit",
        default=None,
        help="Limit to specific hosts/groups",
    )
    provision.add_argument(
        "-f", "--forks",
        dest="forks",
        type=int,
        default=None,
        help="Number of hosts worked on in parallel (default: 5)",
    )
    provision.add_argument(
        "-C", "--check",
        action="store_true",
        help="Report what would change without changing anything",
    )
    provision.add_argument(
        "-D", "--diff",
        action="store_true",
        help="Show differences when changing files",
    )
    provision.add_argument(
        "--json",
        action="store_true",
        help="Output results in JSON format",
    )
    provision.add_argument(
        "--vault-password-file",
        dest="vault_password_file",
        default=None,
        help="File (or executable) providing the vault password",
    )
    provision.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv, -vvv)",
    )

    subparsers.add_parser(
        "modules",
        help="List the available modules",
    )

    return parser


def run_provision(parsed: argparse.Namespace) -> int:
    from converge.engine.display import Display
    from converge.engine.runner import PlaybookRunner
    from converge.provisioning import build_plays, hardening_warnings, load_settings

    config = RunConfig.load({
        "inventory": parsed.inventory,
        "forks": parsed.forks,
        "vault_password_file": parsed.vault_password_file,
    })
    setup_logging(parsed.verbose, config.log_level)
    display = Display(verbosity=parsed.verbose, json_output=parsed.json, diff=parsed.diff)

    if not config.inventory:
        display.error("Inventory (-i/--inventory) is required")
        return 3

    runner = PlaybookRunner(
        inventory_source=config.inventory,
        forks=config.forks,
        limit=parsed.limit,
        check_mode=parsed.check,
        diff_mode=parsed.diff,
        verbosity=parsed.verbose,
        json_output=parsed.json,
        vault_password_file=config.vault_password_file,
        connection_options=config.connection_options(),
        detached_grace=config.detached_grace,
        become_user=config.become_user,
        display=display,
    )

    try:
        settings = load_settings(parsed.vars_file, runner.load_vault())
    except ConvergeError as e:
        display.error(str(e))
        return int(e.exit_code)

    for warning in hardening_warnings(settings):
        display.warning(warning)

    runner.plays = build_plays(settings, home=parsed.home)
    return runner.run()


def list_available_modules() -> int:
    from converge.modules import list_modules

    for name in list_modules():
        print(name)
    return 0


def main(args: Optional[List[str]] = None) -> int:
    """Main entrypoint for converge CLI."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if parsed.command == "provision":
        try:
            return run_provision(parsed)
        except ConvergeError as e:
            print(f"ERROR! {e}", file=sys.stderr)
            return int(e.exit_code)
    if parsed.command == "modules":
        return list_available_modules()

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
