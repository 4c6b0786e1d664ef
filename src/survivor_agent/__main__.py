from pathlib import Path
import argparse
import logging
import os
import signal
import sys
import threading

from dotenv import load_dotenv

# Ensure the src directory is on sys.path when running as a script
_SRC_DIR = Path(__file__).resolve().parents[1]
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from survivor_agent.application.config import load_config
from survivor_agent.application.services.run_loop import StepOutcome
from survivor_agent.bootstrap import create_runner
from survivor_agent.domain.errors import ConfigError


def _parse_args(argv):
    parser = argparse.ArgumentParser(prog="survivor-agent", description="Unattended adventurer agent.")
    parser.add_argument("--config", help="Path to a JSON config file (default: $SURVIVOR_CONFIG or config/default.json)")
    parser.add_argument("--simulate", action="store_true", help="Play against the in-process simulated world")
    parser.add_argument("--max-iterations", type=int, default=None, help="Stop after this many loop iterations")
    parser.add_argument("--log-level", default=None, help="Logging level (default: $SURVIVOR_LOG_LEVEL or INFO)")
    return parser.parse_args(argv)


def _configure_logging(level_name: str | None) -> None:
    name = (level_name or os.getenv("SURVIVOR_LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv=None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    _configure_logging(args.log_level)

    stop_event = threading.Event()
    try:
        config = load_config(args.config)
        runner = create_runner(config, simulate=args.simulate, stop_event=stop_event)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())

    try:
        outcome = runner.run(max_iterations=args.max_iterations)
    except KeyboardInterrupt:
        stop_event.set()
        print("\nSession ended.")
        return 0
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    return 1 if outcome is StepOutcome.HALTED else 0


if __name__ == "__main__":
    sys.exit(main())
