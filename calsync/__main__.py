"""Entry point for `python -m calsync` and the `calsync` console script."""

import asyncio
import sys

from calsync.cli import main_entry


def main() -> None:
    """Entry point for python -m calsync."""
    try:
        exit_code = asyncio.run(main_entry())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("Operation cancelled by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
