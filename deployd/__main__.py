"""
Entry point for running deployd via `python -m deployd`.

    python -m deployd manager          serve the Manager daemon
    python -m deployd processor        serve the Processor daemon
    python -m deployd trigger [ref]    deploy a ref (e.g. from a git hook)
    python -m deployd status           status of both daemons
    python -m deployd logs             latest log records
"""

import asyncio
import logging
import sys

from .config import load_config
from .errors import DeploydError
from .launcher import print_logs, print_status, trigger
from .logs import configure_logging
from .manager import run_manager
from .processor import run_processor

logger = logging.getLogger("deployd")

COMMANDS = ("manager", "processor", "trigger", "status", "logs")
USAGE = "usage: deployd manager|processor|trigger [ref]|status|logs"


def main(argv: list[str] | None = None) -> int:
    """Run a deployd role."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] not in COMMANDS:
        print(USAGE, file=sys.stderr)
        return 2

    command = argv[0]
    config = load_config()
    log_role = command if command in ("manager", "processor") else "trigger"
    configure_logging(log_role, config.log_path(log_role), config.log_level)

    try:
        if command == "manager":
            run_manager(config)
        elif command == "processor":
            run_processor(config)
        elif command == "trigger":
            ref = argv[1] if len(argv) > 1 else None
            state = asyncio.run(trigger(config, ref))
            return 0 if state in (None, "done", "queued") else 1
        elif command == "status":
            return print_status(config)
        elif command == "logs":
            return print_logs(config)
    except DeploydError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
