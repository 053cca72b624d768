"""
Command-line interface for space-monitor.

Grouped command structure:
- run, serve: start the pipeline / the API only
- init: set the personal content root
- spaces: list, add, rm
- settings: show, set
"""

import sys
import json
import argparse
from pathlib import Path

from space_monitor import __version__
from space_monitor.config import ConfigManager, load_environment
from space_monitor.daemon import SpaceMonitorDaemon, configure_logging, run_daemon


# =============================================================================
# RUN / SERVE
# =============================================================================

def cmd_run(args):
    """Run the full pipeline in the foreground."""
    configure_logging()
    return run_daemon(args.config, api_enabled=False if args.no_api else None)


def cmd_serve(args):
    """Serve the HTTP API only."""
    configure_logging()
    load_environment()
    config = ConfigManager(args.config).effective_config()
    if args.port:
        config.settings.api_port = args.port

    SpaceMonitorDaemon(config).serve_api()
    return 0


# =============================================================================
# INIT
# =============================================================================

def cmd_init(args):
    """Set the personal content root."""
    config_manager = ConfigManager(args.config)

    try:
        config_manager.set_personal_root(args.personal_root)
    except ValueError as e:
        print(f"❌ {e}")
        return 1

    print(f"✅ Personal root: {config_manager.get_personal_root()}")
    print(f"   Config: {config_manager.config_file}")
    return 0


# =============================================================================
# SPACES
# =============================================================================

def cmd_spaces_list(args):
    """List named spaces."""
    config_manager = ConfigManager(args.config)
    spaces = config_manager.list_spaces()

    if not spaces:
        print("No spaces configured.")
        print("Add one with: space-monitor spaces add <name> <path>")
        return 0

    print(f"Spaces ({len(spaces)}):")
    for space in spaces:
        print(f"  {space.name}  [{space.access}]")
        print(f"    Path: {space.path}")
    return 0


def cmd_spaces_add(args):
    """Add a named space."""
    config_manager = ConfigManager(args.config)

    try:
        space = config_manager.add_space(args.name, str(Path(args.path)), access=args.access)
    except ValueError as e:
        print(f"❌ {e}")
        return 1

    print(f"✅ Added space: {space.name}")
    print(f"   Path: {space.path}")
    return 0


def cmd_spaces_rm(args):
    """Remove a named space."""
    config_manager = ConfigManager(args.config)

    if not config_manager.remove_space(args.name):
        print(f"❌ Space not found: {args.name}")
        return 1

    print(f"✅ Removed space: {args.name}")
    return 0


# =============================================================================
# SETTINGS
# =============================================================================

def _parse_value(raw: str):
    """JSON literal when possible (numbers, booleans, lists), else the raw string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def cmd_settings_show(args):
    """Print the stored settings as JSON."""
    config_manager = ConfigManager(args.config)
    print(json.dumps(config_manager.config.settings.model_dump(), indent=2))
    return 0


def cmd_settings_set(args):
    """Update one setting."""
    config_manager = ConfigManager(args.config)

    try:
        settings = config_manager.update_settings(**{args.key: _parse_value(args.value)})
    except ValueError as e:
        print(f"❌ {e}")
        return 1

    print(f"✅ {args.key} = {json.dumps(getattr(settings, args.key))}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="space-monitor",
        description="Watch content roots and keep cache and search in step"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    run_parser = subparsers.add_parser("run", help="Run the watcher, processors and API")
    run_parser.add_argument("--no-api", action="store_true", help="Do not serve the HTTP API")
    run_parser.set_defaults(func=cmd_run)

    # serve
    serve_parser = subparsers.add_parser("serve", help="Serve the HTTP API only")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (overrides api_port)")
    serve_parser.set_defaults(func=cmd_serve)

    # init
    init_parser = subparsers.add_parser("init", help="Set the personal content root")
    init_parser.add_argument("personal_root", help="Folder holding one folder per user")
    init_parser.set_defaults(func=cmd_init)

    # spaces
    spaces_parser = subparsers.add_parser("spaces", help="Manage named spaces")
    spaces_subparsers = spaces_parser.add_subparsers(dest="spaces_command", required=True)

    spaces_list_parser = spaces_subparsers.add_parser("list", help="List spaces")
    spaces_list_parser.set_defaults(func=cmd_spaces_list)

    spaces_add_parser = spaces_subparsers.add_parser("add", help="Add a space")
    spaces_add_parser.add_argument("name", help="Unique space name")
    spaces_add_parser.add_argument("path", help="Local folder of the space")
    spaces_add_parser.add_argument("--access", default="readwrite", help="Access mode carried on events")
    spaces_add_parser.set_defaults(func=cmd_spaces_add)

    spaces_rm_parser = spaces_subparsers.add_parser("rm", help="Remove a space")
    spaces_rm_parser.add_argument("name", help="Space name")
    spaces_rm_parser.set_defaults(func=cmd_spaces_rm)

    # settings
    settings_parser = subparsers.add_parser("settings", help="Show or change settings")
    settings_subparsers = settings_parser.add_subparsers(dest="settings_command", required=True)

    settings_show_parser = settings_subparsers.add_parser("show", help="Show settings")
    settings_show_parser.set_defaults(func=cmd_settings_show)

    settings_set_parser = settings_subparsers.add_parser("set", help="Change a setting")
    settings_set_parser.add_argument("key", help="Setting name")
    settings_set_parser.add_argument("value", help="New value (JSON literal or string)")
    settings_set_parser.set_defaults(func=cmd_settings_set)

    return parser


def main(argv=None):
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
