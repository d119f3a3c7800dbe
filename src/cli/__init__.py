# SPDX-License-Identifier: Apache-2.0
"""CLI for faultloop - ephemeral (and faulty) loop block devices."""

import argparse
import dataclasses
import json
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Optional

from faultloop.config import ENV_PREFIX, Config

# Commands that touch the host and therefore need root.
PRIVILEGED_COMMANDS = ("create", "batch", "attach", "cleanup")
ESCALATION_TOOLS = ("pkexec", "sudo")


def _print_result(data: dict, args: argparse.Namespace) -> None:
    """Print result as JSON (if --json) or human-readable text."""
    if getattr(args, "json", False):
        print(json.dumps(data))
    else:
        for key, value in data.items():
            print(f"{key}: {value}")


def _print_error(message: str, args: argparse.Namespace) -> None:
    """Print error as JSON (if --json) or plain text to stderr."""
    if getattr(args, "json", False):
        print(json.dumps({"error": message}), file=sys.stderr)
    else:
        print(f"error: {message}", file=sys.stderr)


def _print_records(command: str, session, records, args: argparse.Namespace) -> None:
    """Print the devices of a batch, flushed before the release prompt."""
    if getattr(args, "json", False):
        print(json.dumps({
            "command": command,
            "session": session.tag,
            "live": len([r for r in records if r.live]),
            "devices": [r.to_dict() for r in records],
        }), flush=True)
        return
    for r in records:
        if not r.live:
            print(f"[{r.index}] failed: {r.error}")
            continue
        line = f"[{r.index}] {r.device}"
        if r.mapped is not None:
            faults = ",".join(
                f"{f.start}-{f.end - 1}" if f.length > 1 else str(f.start)
                for f in r.mapped.table.faults
            )
            line += f" (over {r.loop.device}, faulty blocks {faults})"
        line += f" {r.size_bytes} bytes in {r.store.path}"
        if r.mount is not None:
            line += f", mounted at {r.mount.mountpoint}"
        print(line)
    sys.stdout.flush()


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level, format="%(levelname)s: %(message)s", stream=sys.stderr
    )


def _load_config(args: argparse.Namespace) -> Config:
    """Environment defaults, overridden by --tmp-dir / --fs-type."""
    config = Config.from_env()
    overrides = {}
    if getattr(args, "tmp_dir", None):
        overrides["tmp_dir"] = Path(args.tmp_dir)
    if getattr(args, "fs_type", None):
        overrides["fs_type"] = args.fs_type
    return dataclasses.replace(config, **overrides) if overrides else config


def _device_options(args: argparse.Namespace):
    """Per-device layers requested on the command line."""
    from faultloop.core.session import DeviceOptions
    return DeviceOptions(
        fault_spec=args.faulty,
        format=args.format,
        mount=args.mount,
        tmpfs=getattr(args, "tmpfs", False),
        partscan=args.partscan,
    )


def _release_signal(args: argparse.Namespace):
    """Enter on stdin, or nothing at all with --no-wait."""
    from faultloop.core.release import ImmediateRelease, PromptRelease
    if args.no_wait:
        return ImmediateRelease()
    return PromptRelease()


def _escalation_command(argv: list[str]) -> Optional[list[str]]:
    """Command line that re-runs us as root, or None if no tool is found.

    pkexec scrubs the environment, so FAULTLOOP_* settings are passed
    through ``env``.
    """
    for tool in ESCALATION_TOOLS:
        path = shutil.which(tool)
        if path is None:
            continue
        passthrough = [
            f"{k}={v}" for k, v in sorted(os.environ.items()) if k.startswith(ENV_PREFIX)
        ]
        env_prefix = ["env", *passthrough] if passthrough else []
        return [path, *env_prefix, sys.executable, "-m", "cli", *argv]
    return None


def _ensure_privileged(args: argparse.Namespace, argv: list[str]) -> None:
    """Re-exec through pkexec/sudo unless already root. Does not return on re-exec."""
    if os.geteuid() == 0:
        return
    if args.no_escalate:
        _print_error(f"'{args.command}' must run as root", args)
        sys.exit(1)
    cmd = _escalation_command(argv)
    if cmd is None:
        _print_error(
            f"'{args.command}' must run as root and neither pkexec nor sudo was found",
            args,
        )
        sys.exit(1)
    os.execv(cmd[0], cmd)


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--json", action="store_true", help="JSON output")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0,
        help="Log progress (-v) or every command run (-vv) to stderr",
    )
    parser.add_argument(
        "--tmp-dir", default=None, metavar="DIR",
        help="Directory for backing files and mountpoints (default: $FAULTLOOP_TMPDIR or system temp)",
    )
    parser.add_argument(
        "--no-escalate", action="store_true",
        help="Fail instead of re-running through pkexec/sudo when not root",
    )


def _add_device_args(parser: argparse.ArgumentParser) -> None:
    """Add the per-device layer flags to a subparser."""
    parser.add_argument(
        "--faulty",
        default=None,
        metavar="BLOCKS",
        help="Make these 512-byte blocks fail I/O, e.g. '500,1000-1010'",
    )
    parser.add_argument("--format", action="store_true", help="Create a filesystem on each device")
    parser.add_argument(
        "--mount", action="store_true",
        help="Format and mount each device on a fresh temporary directory",
    )
    parser.add_argument(
        "--fs-type", default=None, metavar="TYPE",
        help="Filesystem for --format/--mount (default: $FAULTLOOP_FSTYPE or ext4)",
    )
    parser.add_argument(
        "--partscan", action="store_true",
        help="Create partition nodes (/dev/loopNpM) for partitioned images",
    )
    parser.add_argument(
        "--no-wait", action="store_true",
        help="Tear down right after setup instead of waiting for Enter",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="faultloop",
        description="Ephemeral loop block devices with optional fault injection.",
    )
    sub = parser.add_subparsers(dest="command")

    # --- create ---
    p_create = sub.add_parser(
        "create",
        help="Create one device, wait for Enter, tear it down.",
        description="Create one sparse-file loop device. Any failure aborts.",
    )
    p_create.add_argument("size", metavar="SIZE", help="Device size (e.g. 64M, 1G)")
    p_create.add_argument("--tmpfs", action="store_true", help="Back the device with RAM (tmpfs)")
    _add_device_args(p_create)
    _add_common_args(p_create)

    # --- batch ---
    p_batch = sub.add_parser(
        "batch",
        help="Create N devices, wait for Enter, tear them down.",
        description=(
            "Create N loop devices of a fixed SIZE or of random sizes in "
            "[--min, --max]. A failing device is rolled back and skipped."
        ),
    )
    p_batch.add_argument("size", metavar="SIZE", nargs="?", default=None,
                         help="Size of every device (omit with --min/--max)")
    p_batch.add_argument("-n", "--count", type=int, required=True, help="Number of devices")
    p_batch.add_argument("--min", dest="min_size", default=None, metavar="SIZE",
                         help="Smallest random size")
    p_batch.add_argument("--max", dest="max_size", default=None, metavar="SIZE",
                         help="Largest random size")
    p_batch.add_argument("--seed", type=int, default=None, help="Seed for random sizes")
    p_batch.add_argument(
        "--tmpfs", action="store_true",
        help="Back all devices with one tmpfs sized to their total",
    )
    _add_device_args(p_batch)
    _add_common_args(p_batch)

    # --- attach ---
    p_attach = sub.add_parser(
        "attach",
        help="Expose an existing file as a device (the file is kept).",
    )
    p_attach.add_argument("file", metavar="FILE", help="Existing image file")
    _add_device_args(p_attach)
    _add_common_args(p_attach)

    # --- table ---
    p_table = sub.add_parser(
        "table",
        help="Print the device-mapper table for a fault spec (no root needed).",
    )
    p_table.add_argument("size", metavar="SIZE", help="Device size (e.g. 64M)")
    p_table.add_argument("--faulty", default="", metavar="BLOCKS",
                         help="Faulty blocks, e.g. '500,1000-1010'")
    p_table.add_argument("--device", default="/dev/loop0", help="Underlying device path")
    p_table.add_argument("--json", action="store_true", help="JSON output")

    # --- cleanup ---
    p_cleanup = sub.add_parser(
        "cleanup",
        help="Remove devices, mounts and files left behind by a killed run.",
    )
    _add_common_args(p_cleanup)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    if argv is None:
        argv = sys.argv[1:]
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    _configure_logging(getattr(args, "verbose", 0))

    if args.command in PRIVILEGED_COMMANDS:
        _ensure_privileged(args, argv)

    try:
        if args.command == "create":
            from .create import cmd_create
            sys.exit(cmd_create(args))
        elif args.command == "batch":
            from .batch import cmd_batch
            sys.exit(cmd_batch(args))
        elif args.command == "attach":
            from .attach import cmd_attach
            sys.exit(cmd_attach(args))
        elif args.command == "table":
            from .table import cmd_table
            sys.exit(cmd_table(args))
        elif args.command == "cleanup":
            from .cleanup import cmd_cleanup
            sys.exit(cmd_cleanup(args))
        else:
            parser.print_help()
            sys.exit(1)
    except KeyboardInterrupt:
        print(file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        _print_error(str(e), args)
        sys.exit(1)
