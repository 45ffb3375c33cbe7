#!/usr/bin/env python3
"""company-sync CLI - sync a company workspace with its server repository."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Fail fast on unsupported interpreter version
if sys.version_info < (3, 10):
    print(f"company-sync requires Python 3.10+; found {sys.version.split()[0]}", file=sys.stderr)
    sys.exit(1)


def _emit(payload: dict, as_json: bool) -> None:
    """Print a service payload and exit with its success status."""
    if as_json:
        print(json.dumps(payload, indent=2, ensure_ascii=False))
    elif payload.get("success"):
        if payload.get("message"):
            print(payload["message"])
    else:
        print(f"Error: {payload.get('error') or payload.get('message') or 'unknown error'}", file=sys.stderr)
    sys.exit(0 if payload.get("success") else 1)


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="company-sync",
        description="Synchronize a company workspace with its server repository",
    )
    ap.add_argument("--json", dest="as_json", action="store_true", help="Output as JSON")

    sub = ap.add_subparsers(dest="cmd")

    p_sync = sub.add_parser("sync", help="Commit, rebase onto the server and push")
    p_sync.add_argument("path", nargs="?", default=".", help="Workspace directory (default: .)")
    p_sync.add_argument("--workspace-id", required=True, help="Company id on the server")
    p_sync.add_argument("-m", "--message", help="Commit message for local changes")

    p_setup = sub.add_parser("setup", help="Connect a workspace to its server repository")
    p_setup.add_argument("path", nargs="?", default=".", help="Workspace directory (default: .)")
    p_setup.add_argument("--workspace-id", required=True, help="Company id on the server")

    p_create = sub.add_parser("create-repo", help="Create the server repository for a company")
    p_create.add_argument("--workspace-id", required=True, help="Company id on the server")

    p_backups = sub.add_parser("backups", help="Inspect conflict backups")
    backups_sub = p_backups.add_subparsers(dest="backups_cmd")
    p_backups_list = backups_sub.add_parser("list", help="List backups, newest first")
    p_backups_list.add_argument("path", nargs="?", default=".", help="Workspace directory (default: .)")
    p_backups_restore = backups_sub.add_parser("restore", help="Restore one file from a backup")
    p_backups_restore.add_argument("backup_id", help="Backup id (see 'backups list')")
    p_backups_restore.add_argument("file", help="File path relative to the workspace")
    p_backups_restore.add_argument("--path", default=".", help="Workspace directory (default: .)")

    p_session = sub.add_parser("session", help="Manage the stored session cookies")
    session_sub = p_session.add_subparsers(dest="session_cmd")
    p_session_set = session_sub.add_parser("set", help="Store session cookies")
    p_session_set.add_argument("cookies", nargs="+", help="Cookie strings (name=value; attrs...)")
    session_sub.add_parser("clear", help="Forget stored session cookies")

    p_config = sub.add_parser("config", help="Configuration management")
    config_sub = p_config.add_subparsers(dest="config_cmd")
    p_config_show = config_sub.add_parser("show", help="Show resolved configuration")
    p_config_show.add_argument("--project-path", help="Workspace directory for config discovery")

    return ap


def _print_backups(backups: list) -> None:
    if not backups:
        print("No backups.")
        return
    for backup in backups:
        print(f"{backup['id']}  {backup['timestamp']}  {backup['reason']}")
        if backup.get("commitMessage"):
            print(f"  message: {backup['commitMessage']}")
        for name in backup["files"]:
            print(f"  - {name}")


def main(argv: list[str] | None = None) -> None:
    ap = _build_parser()
    args = ap.parse_args(argv)

    if not args.cmd:
        ap.print_help()
        sys.exit(0)

    if args.cmd == "session":
        from .credentials import clear_session_cookies, save_session_cookies

        if args.session_cmd == "set":
            path = save_session_cookies(args.cookies)
            _emit({"success": True, "message": f"Session stored in {path}"}, args.as_json)
        if args.session_cmd == "clear":
            path = clear_session_cookies()
            _emit({"success": True, "message": f"Session cleared from {path}"}, args.as_json)
        print("Usage: company-sync session {set|clear}")
        sys.exit(0)

    if args.cmd == "config":
        from .config_loader import ConfigError, discover_sources, load_config

        if args.config_cmd != "show":
            print("Usage: company-sync config show")
            sys.exit(0)

        project_path = Path(args.project_path) if args.project_path else None
        try:
            config = load_config(project_path)
        except ConfigError as e:
            print(f"Config error: {e}", file=sys.stderr)
            sys.exit(1)

        if args.as_json:
            print(json.dumps(config.model_dump(), indent=2))
        else:
            import tomlkit

            doc = tomlkit.document()
            doc.add(tomlkit.comment(" company-sync configuration (resolved)"))
            for source in discover_sources(project_path):
                doc.add(tomlkit.comment(f" {source.kind}: {source.path}"))
            doc.add(tomlkit.nl())
            for section, values in config.model_dump().items():
                if isinstance(values, dict):
                    table = tomlkit.table()
                    for key, val in values.items():
                        table.add(key, val)
                    doc.add(section, table)
                else:
                    doc.add(section, values)
            print(tomlkit.dumps(doc))
        sys.exit(0)

    from .config_loader import ConfigError
    from .service import SyncService

    project_path = Path(getattr(args, "path", None) or ".").resolve()
    try:
        service = SyncService.from_environment(project_path)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        if args.cmd == "sync":
            _emit(service.sync_workspace(project_path, args.workspace_id, args.message), args.as_json)

        if args.cmd == "setup":
            _emit(service.setup_workspace_remote(project_path, args.workspace_id), args.as_json)

        if args.cmd == "create-repo":
            payload = service.create_remote_repository(args.workspace_id)
            if payload.get("success") and not args.as_json:
                payload["message"] = f"Repository ready: {payload.get('httpsUrl') or '(no URL reported)'}"
            _emit(payload, args.as_json)

        if args.cmd == "backups":
            if args.backups_cmd == "list":
                payload = service.list_backups(project_path)
                if args.as_json or not payload.get("success"):
                    _emit(payload, args.as_json)
                _print_backups(payload["backups"])
                sys.exit(0)
            if args.backups_cmd == "restore":
                _emit(service.restore_backup_file(project_path, args.backup_id, args.file), args.as_json)
            print("Usage: company-sync backups {list|restore}")
            sys.exit(0)
    finally:
        service.shutdown()

    ap.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
