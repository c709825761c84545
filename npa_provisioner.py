#!/usr/bin/env python3
"""
npa-provisioner — deploy and register Netskope Private Access publishers on AWS.

Usage:
    npa-provisioner [--config PATH] plan               Show what apply would change
    npa-provisioner [--config PATH] apply              Create/destroy publishers to match the config
    npa-provisioner [--config PATH] replace KEY...     Recreate identity, token and instance for KEY
    npa-provisioner [--config PATH] destroy            Destroy every recorded publisher
    npa-provisioner [--config PATH] status             Show tenant/instance status and drift
    npa-provisioner [--config PATH] unlock LOCK_ID     Force-release a stale state lock

Environment:
    NETSKOPE_API_TOKEN    Tenant API token (required by every command except unlock)
    NETSKOPE_TENANT_URL   Tenant URL, overrides tenant.url in the config
    NPA_LOG_LEVEL         Log level for diagnostics on stderr (default WARNING)
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading

from provisioner.config import DEFAULT_CONFIG_FILE, load_config
from provisioner.display import (
    GREEN,
    RESET,
    format_error,
    format_plan,
    format_report,
    format_status,
)
from provisioner.errors import ConfigError, ProvisionerError, StateLockError

logger = logging.getLogger(__name__)

_KNOWN_COMMANDS = ("plan", "apply", "replace", "destroy", "status", "unlock")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _configure_logging() -> None:
    level_name = os.environ.get("NPA_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(name)s: %(message)s",
        stream=sys.stderr,
    )


def _parse_args(args: list[str]) -> tuple[str, str, list[str]]:
    """Return (config_path, command, command_args)."""
    config_path = os.environ.get("NPA_CONFIG", DEFAULT_CONFIG_FILE)
    rest: list[str] = []
    i = 0
    while i < len(args):
        if args[i] == "--config":
            if i + 1 >= len(args):
                raise ConfigError("--config needs a path")
            config_path = args[i + 1]
            i += 2
            continue
        if args[i].startswith("--config="):
            config_path = args[i].split("=", 1)[1]
            i += 1
            continue
        rest.append(args[i])
        i += 1

    if not rest or rest[0] not in _KNOWN_COMMANDS:
        raise ConfigError(f"unknown command: {rest[0] if rest else '(none)'}")
    return config_path, rest[0], rest[1:]


def _install_signal_handlers(cancel_event: threading.Event) -> None:
    def _handler(signum, _frame):
        print(
            f"\n\033[33m  Received signal {signum}; stopping in-flight polls...\033[0m",
            file=sys.stderr,
        )
        cancel_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def main(argv: list[str] | None = None) -> int:
    """Dispatch to the appropriate sub-command and return the exit code."""
    _configure_logging()
    args = sys.argv[1:] if argv is None else argv

    try:
        config_path, command, cmd_args = _parse_args(args)
    except ConfigError as exc:
        print(format_error(str(exc)), file=sys.stderr)
        print(__doc__, file=sys.stderr)
        return EXIT_USAGE

    try:
        config = load_config(config_path)
    except ConfigError as exc:
        print(format_error(str(exc)), file=sys.stderr)
        return EXIT_USAGE

    if command == "unlock":
        return _cmd_unlock(config, cmd_args)
    if command == "replace" and not cmd_args:
        print(format_error("replace needs at least one publisher key"), file=sys.stderr)
        return EXIT_USAGE

    from provisioner.controller import build_controller

    cancel_event = threading.Event()
    _install_signal_handlers(cancel_event)

    try:
        controller = build_controller(config, cancel_event)
        if command == "plan":
            print(format_plan(controller.plan()), file=sys.stderr)
            return EXIT_OK
        if command == "status":
            statuses, warnings = controller.status()
            print(format_status(statuses, warnings), file=sys.stderr)
            return EXIT_OK
        if command == "apply":
            report = controller.reconcile()
        elif command == "replace":
            report = controller.replace_units(cmd_args)
        else:
            report = controller.destroy_all()
    except (StateLockError, ValueError) as exc:
        print(format_error(str(exc)), file=sys.stderr)
        return EXIT_USAGE
    except ProvisionerError as exc:
        print(format_error(str(exc)), file=sys.stderr)
        return EXIT_FAILED

    print(format_plan(report.plan), file=sys.stderr)
    print(format_report(report.results), file=sys.stderr)
    return EXIT_OK if report.ok else EXIT_FAILED


# ---------------------------------------------------------------------------
# npa-provisioner unlock — operator escape hatch
# ---------------------------------------------------------------------------

def _cmd_unlock(config, cmd_args: list[str]) -> int:
    """Force-release the state lock after confirming no other run is active."""
    from provisioner.state import StateLock

    lock = StateLock(config.state_dir)
    if not cmd_args:
        holder = lock.info()
        if holder is None:
            print("State is not locked.", file=sys.stderr)
            return EXIT_OK
        print(
            f"State locked by {holder.get('holder')} since {holder.get('created_at')}.\n"
            f"  Confirm that run is gone, then: npa-provisioner unlock {holder.get('id')}",
            file=sys.stderr,
        )
        return EXIT_USAGE

    try:
        lock.force_unlock(cmd_args[0])
    except StateLockError as exc:
        print(format_error(str(exc)), file=sys.stderr)
        return EXIT_USAGE
    print(f"{GREEN}State lock released.{RESET}", file=sys.stderr)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
