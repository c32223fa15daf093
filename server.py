#!/usr/bin/env python3
"""
Warehouse DB Utilities Server

Small HTTP service that backs up and restores the warehouse database with
the PostgreSQL client tools:
- Streams pg_dump output to the caller while archiving a copy on disk
- Replays uploaded SQL files with psql
- Lists previously produced archives

Usage:
  db-utils-server                 # serve on $HOST:$PORT
  db-utils-server list            # print archive history
  db-utils-server init-env .env   # write a template .env
"""

import argparse
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from config import ConfigurationError, UtilityConfig, create_env_file, load_app_environment

__version__ = "1.0.0"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> str:
    """Set up root logging; returns the resolved level name, lower case"""
    name = (level or os.getenv('LOG_LEVEL') or 'INFO').upper()
    numeric = getattr(logging, name, None)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, format=LOG_FORMAT)
    logging.getLogger().setLevel(numeric)
    return logging.getLevelName(numeric).lower()


def _serve(args) -> int:
    try:
        config = UtilityConfig.from_environment()
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    overrides = {}
    if args.host:
        overrides['host'] = args.host
    if args.port:
        overrides['port'] = args.port
    if overrides:
        config = replace(config, **overrides)

    from transport.http import PortInUseError, run_http_server
    try:
        run_http_server(config, log_level=args.log_level)
    except PortInUseError as e:
        logger.error(
            f"Port {e.port} is already in use. "
            f"Please free the port or set a different PORT in .env."
        )
        return 1
    return 0


def _list(args) -> int:
    from backup.history import list_archives

    backup_dir = Path(args.backup_dir or os.getenv('BACKUP_DIR', 'backups'))
    try:
        records = list_archives(backup_dir)
    except OSError as e:
        print(f"Unable to read backup directory {backup_dir}: {e}", file=sys.stderr)
        return 1

    if not records:
        print("No backups found.")
        return 0

    records.sort(key=lambda r: r.modified, reverse=True)
    print(f"Found {len(records)} backups:\n")
    for i, record in enumerate(records, 1):
        info = record.to_dict()
        print(f"{i}. {info['filename']}")
        print(f"   Size: {info['size']}")
        print(f"   Created: {info['date']}\n")
    return 0


def _init_env(args) -> int:
    try:
        path = create_env_file(args.path or ".env")
    except FileExistsError as e:
        print(f"Refusing to overwrite: {e}", file=sys.stderr)
        return 1
    print(f"Created template .env file at {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Warehouse DB Utilities Server")
    parser.add_argument('--version', '-v', action='store_true', help='Show version')
    parser.add_argument('--log-level', type=str, default=None, help='Logging level (default: $LOG_LEVEL or INFO)')
    parser.add_argument(
        'command', nargs='?', default='serve', choices=['serve', 'list', 'init-env'],
        help='serve (default), list archives, or write a template .env'
    )
    parser.add_argument('path', nargs='?', default=None, help='Target file for init-env')
    parser.add_argument('--host', type=str, default=None, help='Bind address (default: $HOST or 0.0.0.0)')
    parser.add_argument('--port', type=int, default=None, help='Listen port (default: $PORT or 4000)')
    parser.add_argument('--backup-dir', type=str, default=None, help='Archive directory for list (default: $BACKUP_DIR)')
    return parser


def cli_entry(argv: Optional[List[str]] = None) -> int:
    """Entry point for console script"""
    args = build_parser().parse_args(argv)

    if args.version:
        print(f"db-utils-server version {__version__}")
        return 0

    # LOG_LEVEL may live in .env, so load it before logging is configured
    load_app_environment()
    args.log_level = configure_logging(args.log_level)

    if args.command == 'list':
        return _list(args)
    if args.command == 'init-env':
        return _init_env(args)
    return _serve(args)


if __name__ == "__main__":
    sys.exit(cli_entry())
