from __future__ import annotations

import argparse
import logging
import subprocess
import sys
import time

from common.log import setup_logging

logger = logging.getLogger("relay.watchdog")

# Exit codes that mean "done" rather than "crashed": clean stop, or nothing to relay.
FINAL_EXIT_CODES = (0, 1)


def run_watchdog(relay_args: list[str], restart_delay: float = 3.0, max_restarts: int | None = None) -> int:
    restarts = 0
    while True:
        proc = subprocess.Popen([sys.executable, "-m", "relay.main", *relay_args])
        code = proc.wait()
        if code in FINAL_EXIT_CODES:
            return code
        if max_restarts is not None and restarts >= max_restarts:
            logger.error("relay crashed code=%s, giving up after %s restarts", code, restarts)
            return code
        restarts += 1
        logger.warning("relay exited code=%s, restarting in %.1fs", code, restart_delay)
        time.sleep(restart_delay)


def main() -> None:
    parser = argparse.ArgumentParser(description="Agent relay watchdog")
    parser.add_argument("--restart-delay", type=float, default=3.0)
    parser.add_argument("--max-restarts", type=int, default=None)
    parser.add_argument("relay_args", nargs=argparse.REMAINDER, help="arguments passed to relay.main")
    args = parser.parse_args()
    setup_logging("info")
    sys.exit(run_watchdog(args.relay_args, args.restart_delay, args.max_restarts))


if __name__ == "__main__":
    main()
