"""
Command-line interface for json-listener.

Commands:
- run: run the listener in the foreground
- config: show, init, set
- failed: list files that failed to upload
"""

import sys
import argparse
import logging
from pathlib import Path

from dotenv import load_dotenv

from json_listener.config import ConfigManager, DEFAULT_CONFIG_FILE
from json_listener.daemon import ListenerDaemon, configure_logging
from json_listener.errors import ConfigurationError
from json_listener.failures import FAILED_FILES_LOG_NAME, read_failure_log
from json_listener.models import ListenerSettings


# Keys of `config set` that are not listener settings
PATH_KEYS = {
    "watch_dir": "set_watch_dir",
    "log_dir": "set_log_dir",
    "destination_path": "set_destination_path",
    "database_url": "set_database_url",
}


def _load_env(env_file) -> None:
    # .env may hold JSON_LISTENER_DATABASE_URL / JSON_LISTENER_AUTH_TOKEN
    path = Path(env_file) if env_file else Path.cwd() / ".env"
    if path.exists():
        load_dotenv(path)


# =============================================================================
# RUN COMMAND
# =============================================================================

def cmd_run(args):
    """Run the listener in the foreground until interrupted."""
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    daemon = ListenerDaemon(
        config_file=args.config,
        overrides={
            "watch_dir": args.watch_dir,
            "destination_path": args.destination,
            "log_dir": args.log_dir,
            "database_url": args.database_url,
        }
    )
    return daemon.run()


# =============================================================================
# CONFIG COMMANDS
# =============================================================================

def cmd_config_show(args):
    """Show the current configuration."""
    config_manager = ConfigManager(args.config)
    config = config_manager.config

    print("=" * 60)
    print("⚙️  JSON Listener Configuration")
    print("=" * 60)
    print(f"\nConfiguration: {config_manager.config_file}")
    print(f"Watch directory:  {config.watch_dir or 'Not set'}")
    print(f"Destination path: {config.destination_path!r}")
    print(f"Log directory:    {config.log_dir or 'Not set'}")
    print(f"Database URL:     {config_manager.get_database_url() or 'Not set'}")

    print("\n📋 Settings:")
    for key, value in config.settings.model_dump(mode="json").items():
        print(f"   {key}: {value}")

    if not config.is_runnable():
        print("\n⚠️  Listener is not runnable yet")
        print("Use 'json-listener config init' to set the watch and log directories")

    return 0


def cmd_config_init(args):
    """Write a complete configuration in one step."""
    config_manager = ConfigManager(args.config)

    try:
        config_manager.set_watch_dir(args.watch_dir)
        config_manager.set_log_dir(args.log_dir)
        config_manager.set_destination_path(args.destination)
        if args.database_url:
            config_manager.set_database_url(args.database_url)
    except ConfigurationError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    config = config_manager.config
    print("✅ Configuration saved")
    print(f"   Watch directory:  {config.watch_dir}")
    print(f"   Destination path: {config.destination_path!r}")
    print(f"   Log directory:    {config.log_dir}")
    return 0


def cmd_config_set(args):
    """Set a single configuration value."""
    config_manager = ConfigManager(args.config)
    key, value = args.key, args.value

    try:
        if key in PATH_KEYS:
            getattr(config_manager, PATH_KEYS[key])(value)
        elif key in ListenerSettings.model_fields:
            config_manager.update_settings(**{key: value})
        else:
            known = sorted(list(PATH_KEYS) + list(ListenerSettings.model_fields))
            print(f"❌ Unknown key: {key}", file=sys.stderr)
            print(f"   Known keys: {', '.join(known)}", file=sys.stderr)
            return 1
    except ConfigurationError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    print(f"✅ {key} = {value}")
    return 0


# =============================================================================
# FAILED COMMAND
# =============================================================================

def cmd_failed(args):
    """List files recorded in the failure log."""
    if args.log_dir:
        log_dir = Path(args.log_dir)
    else:
        config = ConfigManager(args.config).config
        if not config.log_dir:
            print("❌ No log directory configured; pass --log-dir", file=sys.stderr)
            return 1
        log_dir = Path(config.log_dir)

    entries = read_failure_log(log_dir)

    if args.count:
        print(len(entries))
        return 0

    if not entries:
        print(f"✅ No failed uploads recorded in {log_dir / FAILED_FILES_LOG_NAME}")
        return 0

    print(f"❌ {len(entries)} failed upload(s) recorded in {log_dir / FAILED_FILES_LOG_NAME}:")
    for entry in (sorted(entries) if args.sort else entries):
        print(f"   {entry}")
    return 0


# =============================================================================
# PARSER
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="json-listener",
        description="Upload new JSON files in a directory to a Firebase database"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_FILE,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_FILE})"
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file (default: ./.env)"
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the listener in the foreground")
    run_parser.add_argument("--watch-dir", default=None, help="Directory to watch (overrides config)")
    run_parser.add_argument("--destination", default=None, help="Path in the database to post to (overrides config)")
    run_parser.add_argument("--log-dir", default=None, help="Directory for logs (overrides config)")
    run_parser.add_argument("--database-url", default=None, help="Firebase database URL (overrides config)")
    run_parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    run_parser.set_defaults(func=cmd_run)

    config_parser = subparsers.add_parser("config", help="Manage configuration")
    config_sub = config_parser.add_subparsers(dest="config_command")

    show_parser = config_sub.add_parser("show", help="Show configuration")
    show_parser.set_defaults(func=cmd_config_show)

    init_parser = config_sub.add_parser("init", help="Write a complete configuration")
    init_parser.add_argument("--watch-dir", required=True, help="Directory to watch")
    init_parser.add_argument("--log-dir", required=True, help="Directory for logs")
    init_parser.add_argument("--destination", default="", help="Path in the database to post to")
    init_parser.add_argument("--database-url", default=None, help="Firebase database URL")
    init_parser.set_defaults(func=cmd_config_init)

    set_parser = config_sub.add_parser("set", help="Set one configuration value")
    set_parser.add_argument("key", help="Setting name, e.g. max_threads or destination_path")
    set_parser.add_argument("value", help="New value")
    set_parser.set_defaults(func=cmd_config_set)

    failed_parser = subparsers.add_parser("failed", help="List files that failed to upload")
    failed_parser.add_argument("--log-dir", default=None, help="Log directory (default: from config)")
    failed_parser.add_argument("--count", action="store_true", help="Only print the number of entries")
    failed_parser.add_argument("--sort", action="store_true", help="Sort entries by path")
    failed_parser.set_defaults(func=cmd_failed)

    return parser


def main(argv=None):
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    _load_env(args.env_file)

    if not getattr(args, "func", None):
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
