#!/usr/bin/env python3
"""Round loop CLI entry point.

Runs the decision round loop until the kill switch fires:
  market data -> evidence -> claims -> verification -> signals
  -> consensus -> portfolio -> risk -> execution

Venue, news and claim-generation clients live outside this package, so the
caller names a factory that builds them. The factory is called with the
loaded Settings and must return a mapping of RoundStateMachine keyword
arguments (at least ``market_data``, ``news``, ``claim_generator`` and
``execution``).

Usage::

    python scripts/run_rounds.py --collaborators mydesk.wiring:build
    python scripts/run_rounds.py --collaborators mydesk.wiring:build --max-rounds 1
    python scripts/run_rounds.py --collaborators mydesk.wiring:build --risk-profile averse
"""

import argparse
import asyncio
import importlib
import sys
from pathlib import Path
from typing import Any, Callable

# Ensure project root is on sys.path so ``agentfund.*`` imports work when this
# script is invoked directly (e.g. ``python scripts/run_rounds.py``).
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from agentfund.core.config import Settings
from agentfund.core.enums import RiskProfileName
from agentfund.core.utils.logging_config import configure_logging, get_logger
from agentfund.monitoring.notifier import build_notifier
from agentfund.pipeline import InMemoryRoundRecorder, RoundStateMachine

REQUIRED_COLLABORATORS = ("market_data", "news", "claim_generator", "execution")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments.

    Args:
        argv: Argument list (defaults to sys.argv[1:]).

    Returns:
        Parsed namespace with ``collaborators``, ``max_rounds`` and
        ``risk_profile`` attributes.
    """
    parser = argparse.ArgumentParser(
        description="Run the multi-agent decision round loop.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python scripts/run_rounds.py --collaborators mydesk.wiring:build\n"
            "  python scripts/run_rounds.py --collaborators mydesk.wiring:build "
            "--max-rounds 1\n"
            "  python scripts/run_rounds.py --collaborators mydesk.wiring:build "
            "--risk-profile bold\n"
        ),
    )
    parser.add_argument(
        "--collaborators",
        required=True,
        metavar="MODULE:FACTORY",
        help="Factory returning the RoundStateMachine collaborators",
    )
    parser.add_argument(
        "--max-rounds",
        type=int,
        default=None,
        help="Stop after this many rounds (default: run until the kill switch)",
    )
    parser.add_argument(
        "--risk-profile",
        choices=[p.value for p in RiskProfileName],
        default=None,
        help="Override AGENTFUND_RISK_PROFILE for this run",
    )
    return parser.parse_args(argv)


def load_factory(path: str) -> Callable[[Settings], dict[str, Any]]:
    """Resolve a ``module:attribute`` path to a callable.

    Raises:
        ValueError: If the path is malformed or does not name a callable.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected MODULE:FACTORY, got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    if not callable(factory):
        raise ValueError(f"{path!r} is not callable")
    return factory


def main(argv: list[str] | None = None) -> int:
    """Entry point for the round loop CLI.

    Args:
        argv: Argument list (defaults to sys.argv[1:]).

    Returns:
        Exit code: 0 when the loop ended normally, 1 on configuration
        errors or when the last round failed.
    """
    args = parse_args(argv)
    overrides: dict[str, Any] = {}
    if args.risk_profile:
        overrides["risk_profile"] = args.risk_profile
    settings = Settings(**overrides)

    configure_logging(settings.log_level, settings.log_json)
    log = get_logger("run_rounds")

    problems = settings.validate_runtime()
    if problems:
        for problem in problems:
            print(f"Configuration error: {problem}", file=sys.stderr)
        return 1

    try:
        collaborators = dict(load_factory(args.collaborators)(settings))
    except Exception as exc:
        print(f"\nCould not build collaborators: {exc}", file=sys.stderr)
        return 1

    missing = [name for name in REQUIRED_COLLABORATORS if name not in collaborators]
    if missing:
        print(f"\nFactory did not provide: {', '.join(missing)}", file=sys.stderr)
        return 1

    collaborators.setdefault("recorder", InMemoryRoundRecorder())
    machine = RoundStateMachine(
        settings=settings,
        notifier=build_notifier(settings),
        **collaborators,
    )

    try:
        asyncio.run(machine.run_forever(max_rounds=args.max_rounds))
    except KeyboardInterrupt:
        log.warning("round_loop_interrupted", **machine.status())
        return 1

    status = machine.status()
    log.info("round_loop_exited", **status)
    return 1 if status["last_status"] == "failed" else 0


if __name__ == "__main__":
    sys.exit(main())
