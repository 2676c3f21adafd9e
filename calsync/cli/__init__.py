"""CLI module for calsync.

Builds settings from the command line, sets up logging and runs one
sub-command against a :class:`~calsync.service.CalendarSyncService`.
"""

import logging
from typing import Optional

from ..config.settings import CalSyncSettings
from ..ics.exceptions import ICSError
from ..service import CalendarSyncService
from ..store.exceptions import StoreError
from ..sync.exceptions import SyncError
from ..utils.logging import apply_command_line_overrides, setup_logging
from .commands import run_command
from .parser import create_parser

logger = logging.getLogger(__name__)


async def main_entry(argv: Optional[list[str]] = None) -> int:
    """Main entry point with argument parsing.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    overrides = {}
    if args.config_file:
        overrides["config_file"] = args.config_file
    if args.database_path:
        overrides["database_path"] = args.database_path

    settings = apply_command_line_overrides(CalSyncSettings(**overrides), args)
    setup_logging(settings)

    async with CalendarSyncService(settings) as service:
        try:
            return await run_command(service, args)
        except (ICSError, StoreError, SyncError) as e:
            print(f"Error: {e}")
            return 1
        except (ValueError, OSError) as e:
            print(f"Error: {e}")
            return 1


__all__ = ["create_parser", "main_entry"]
