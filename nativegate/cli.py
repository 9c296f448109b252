"""Command line interface for nativegate."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from nativegate.kernel.config import load_config
from nativegate.kernel.errors import NativeGateError
from nativegate.plugin_system.categories import CategoryTable
from nativegate.plugin_system.consent import ConsoleConsent
from nativegate.plugin_system.host import NativeHost


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=repr))


def _config(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if getattr(args, "data_dir", None):
        overrides["paths"] = {"data_dir": args.data_dir}
    if getattr(args, "timeout", None) is not None:
        overrides["sandbox"] = {"timeout_s": float(args.timeout)}
    return load_config(args.config, overrides or None)


def _decode_arg(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def cmd_run(args: argparse.Namespace) -> int:
    path = Path(args.file)
    try:
        source = path.read_text(encoding="utf-8")
    except OSError as exc:
        print(f"ERROR: cannot read {path}: {exc}")
        return 2
    unit_id = args.id or path.stem
    with NativeHost(_config(args), prompt_user=ConsoleConsent()) as host:
        channel = host.register(unit_id, source)
        payload: dict[str, Any] = {"channel": channel, "exports": host.exports(channel)}
        if args.call:
            try:
                payload["result"] = host.invoke(channel, args.call, [_decode_arg(a) for a in args.arg])
            except NativeGateError:
                raise
            except Exception as exc:
                print(f"ERROR: {args.call} raised {type(exc).__name__}: {exc}")
                return 1
        _print_json(payload)
    return 0


def cmd_trust_list(args: argparse.Namespace) -> int:
    with NativeHost(_config(args)) as host:
        rows = []
        for key, allowed in host.store.items():
            code_hash, _, resource_key = key.partition("::")
            rows.append({"code_hash": code_hash, "resource_key": resource_key, "allowed": allowed})
        _print_json(rows)
    return 0


def cmd_trust_revoke(args: argparse.Namespace) -> int:
    with NativeHost(_config(args)) as host:
        removed = host.revoke(args.hash)
    print(f"Revoked {removed} decision(s) for {args.hash}")
    return 0


def cmd_trust_clear(args: argparse.Namespace) -> int:
    with NativeHost(_config(args)) as host:
        host.store.clear()
        host.audit.append(action="trust.clear", actor="cli", outcome="ok")
    print("Trust store cleared")
    return 0


def cmd_config_show(args: argparse.Namespace) -> int:
    _print_json(_config(args))
    return 0


def cmd_categories(args: argparse.Namespace) -> int:
    table = CategoryTable.from_config(_config(args))
    payload: dict[str, Any] = {}
    for name, category in table.categories.items():
        payload[name] = {
            "label": category.label,
            "description": category.description,
            "authorize_on_load": category.authorize_on_load,
            "resources": sorted(k for k, v in table.resources.items() if v == name),
        }
    _print_json(payload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nativegate")
    parser.add_argument("--config", default=None, help="user config JSON (defaults to $NATIVEGATE_CONFIG)")
    parser.add_argument("--data-dir", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="load a unit file and optionally call one export")
    run.add_argument("file")
    run.add_argument("--id", default=None)
    run.add_argument("--call", default=None)
    run.add_argument("--arg", action="append", default=[], help="JSON-decoded positional argument")
    run.add_argument("--timeout", type=float, default=None)
    run.set_defaults(func=cmd_run)

    trust = sub.add_parser("trust")
    trust_sub = trust.add_subparsers(dest="trust_cmd", required=True)
    trust_list = trust_sub.add_parser("list")
    trust_list.set_defaults(func=cmd_trust_list)
    trust_revoke = trust_sub.add_parser("revoke")
    trust_revoke.add_argument("--hash", required=True)
    trust_revoke.set_defaults(func=cmd_trust_revoke)
    trust_clear = trust_sub.add_parser("clear")
    trust_clear.set_defaults(func=cmd_trust_clear)

    config = sub.add_parser("config")
    config_sub = config.add_subparsers(dest="config_cmd", required=True)
    config_show = config_sub.add_parser("show")
    config_show.set_defaults(func=cmd_config_show)

    categories = sub.add_parser("categories")
    categories.set_defaults(func=cmd_categories)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        exit_code = args.func(args)
    except NativeGateError as exc:
        print(f"ERROR: {exc}")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
