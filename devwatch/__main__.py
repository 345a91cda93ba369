"""Entry point: python -m devwatch [server args...].

Every argument is forwarded to the application server untouched, so the
supervisor itself is configured through the environment only:

- ``DEVWATCH_ROOT``: project root (default: current directory)
- ``DEVWATCH_CONFIG``: JSON override file (default: ``<root>/devwatch.json``)
- ``DEVWATCH_VERBOSE``: any value but ``0`` enables debug logging
- ``DEVWATCH_LOG_DIR``: also write diagnostics to a rotating log file there
- ``PLUGIN_DIR``: add a build watcher for an external plugin checkout
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import NoReturn

from rich.console import Console
from rich.text import Text

from devwatch.config import load_config
from devwatch.logging_config import setup_logging
from devwatch.supervisor import WatchSupervisor

logger = logging.getLogger(__name__)

_err_console = Console(stderr=True)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip() not in ("", "0")


def _fail(exc: BaseException) -> NoReturn:
    """Report a startup failure and exit with code 1."""
    logger.debug("Supervisor failed", exc_info=exc)
    _err_console.print(Text(str(exc) or type(exc).__name__, style="bold red"))
    sys.exit(1)


def main() -> None:
    """CLI entry point."""
    verbose = _env_flag("DEVWATCH_VERBOSE")
    env_log_dir = os.environ.get("DEVWATCH_LOG_DIR")
    log_dir = Path(env_log_dir).expanduser() if env_log_dir else None
    setup_logging(verbose=verbose, log_dir=log_dir)

    try:
        config = load_config()
        if not verbose:
            config_level = getattr(logging, config.log_level.upper(), logging.INFO)
            if config_level != logging.INFO:
                setup_logging(level=config_level, log_dir=log_dir)
        supervisor = WatchSupervisor(config, sys.argv[1:])
        exit_code = asyncio.run(supervisor.run())
    except KeyboardInterrupt:
        logger.info("Supervisor interrupted")
        exit_code = 0
    except Exception as exc:  # noqa: BLE001
        _fail(exc)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
