"""Command-line interface for cellar."""

import argparse
import json
import os
import sys

from sqlalchemy.exc import SQLAlchemyError

from cellar.config.constants import GITHUB_TOKEN_KEY
from cellar.config.manager import config_manager
from cellar.errors import CellarError
from cellar.services.download_service import DownloadService
from cellar.services.formula_repository import FormulaRepository
from cellar.services.installer_service import Installer
from cellar.utils.logger import log


class Colors:
    BOLD = "\033[1m"
    RESET = "\033[0m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    RED = "\033[31m"
    DIM = "\033[2m"


def build_parser():
    parser = argparse.ArgumentParser(
        prog="cellar",
        description="Install prebuilt application bundles from formulas",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  cellar install pomodoromac          # Install a bundled formula
  cellar install ./myapp.yaml --pin   # Install from a formula file and pin it
  cellar list --format json           # Show installed packages as JSON
  cellar switch pomodoromac 0.1       # Point launchers at another version
  cellar uninstall pomodoromac        # Remove every installed version
        """
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    install_parser = subparsers.add_parser('install', help='Install one or more formulas')
    install_parser.add_argument('formulas', nargs='+', help='Formula names or paths to formula YAML files')
    install_parser.add_argument('--pin', action='store_true',
                                help='Pin the installed version so later installs do not replace it')

    uninstall_parser = subparsers.add_parser('uninstall', help='Remove an installed package')
    uninstall_parser.add_argument('name')
    uninstall_parser.add_argument('--version', dest='pkg_version',
                                  help='Remove only this version (default: all versions)')

    list_parser = subparsers.add_parser('list', help='List installed packages')
    list_parser.add_argument('--format', choices=['table', 'json'], default='table',
                             help='Output format (default: table)')

    info_parser = subparsers.add_parser('info', help='Show installed versions of a package')
    info_parser.add_argument('name')

    for command, help_text in (('switch', 'Activate another installed version'),
                               ('pin', 'Activate and pin an installed version')):
        sub = subparsers.add_parser(command, help=help_text)
        sub.add_argument('name')
        sub.add_argument('pkg_version', metavar='version')

    unpin_parser = subparsers.add_parser('unpin', help='Allow later installs to replace the active version')
    unpin_parser.add_argument('name')

    return parser


def make_installer():
    token = os.environ.get(GITHUB_TOKEN_KEY) or config_manager.get_secure(GITHUB_TOKEN_KEY)
    downloader = DownloadService(
        timeout=config_manager.get("download_timeout"),
        auth_token=token or None,
    )
    return Installer(layout=config_manager.layout(), downloader=downloader)


def _package_row(package):
    flags = []
    if package.active:
        flags.append("active")
    if package.pinned:
        flags.append("pinned")
    return package.name, package.version, ", ".join(flags), str(package.prefix_path)


def _print_table(rows):
    headers = ("Name", "Version", "Status", "Prefix")
    widths = [max(len(str(r[i])) for r in rows + [headers]) for i in range(len(headers))]
    print(f"{Colors.BOLD}" + "  ".join(h.ljust(w) for h, w in zip(headers, widths)) + f"{Colors.RESET}")
    for row in rows:
        print("  ".join(str(c).ljust(w) for c, w in zip(row, widths)))


def _package_dict(package):
    return {
        "name": package.name,
        "version": package.version,
        "prefix": str(package.prefix_path),
        "active": package.active,
        "pinned": package.pinned,
        "wrappers": sorted(package.wrappers),
        "installed_at": package.installed_at.isoformat() if package.installed_at else None,
    }


def run(args, installer):
    if args.command == 'install':
        repository = FormulaRepository(config_manager.get("formula_dirs", []))
        manifests = [repository.load(f) for f in args.formulas]
        if args.pin:
            packages = [installer.install_formula(m, pin=True) for m in manifests]
        else:
            packages = installer.install_many(manifests)
        for package in packages:
            print(f"{Colors.GREEN}Installed{Colors.RESET} {package.name} {package.version} -> {package.prefix_path}")

    elif args.command == 'uninstall':
        if args.pkg_version:
            installer.uninstall(args.name, args.pkg_version)
            removed = [args.pkg_version]
        else:
            removed = installer.uninstall_all(args.name)
        print(f"Uninstalled {args.name} {', '.join(removed)}")

    elif args.command == 'list':
        packages = installer.list_installed()
        if args.format == 'json':
            print(json.dumps([_package_dict(p) for p in packages], indent=2))
        elif packages:
            _print_table([_package_row(p) for p in packages])
        else:
            print(f"{Colors.DIM}No packages installed{Colors.RESET}")

    elif args.command == 'info':
        packages = installer.info(args.name)
        _print_table([_package_row(p) for p in packages])

    elif args.command == 'switch':
        package = installer.activate(args.name, args.pkg_version)
        print(f"Activated {package.name} {package.version}")

    elif args.command == 'pin':
        package = installer.pin(args.name, args.pkg_version)
        print(f"Pinned {package.name} at {package.version}")

    elif args.command == 'unpin':
        installer.unpin(args.name)
        print(f"Unpinned {args.name}")


def main(argv=None, installer=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    try:
        run(args, installer or make_installer())
    except CellarError as e:
        log.error(str(e))
        print(f"{Colors.RED}Error:{Colors.RESET} {e}", file=sys.stderr)
        return 1
    except (SQLAlchemyError, OSError) as e:
        # Registry or filesystem trouble outside a pipeline stage; name the command instead
        log.error(f"{args.command} failed: {e}")
        print(f"{Colors.RED}Error:{Colors.RESET} {args.command} failed: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
