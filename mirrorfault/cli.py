"""
Fault harness command line

    mirrorfault list
    mirrorfault self-check [SCENARIO ...]
    mirrorfault run --binary PATH [SCENARIO ...]

With no scenario names every catalogued scenario is used. Reports are
printed as JSON lines on stdout and log events go to stderr; the exit
status is 1 when any scenario fails.
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from mirrorfault.config import settings
from mirrorfault.engine.catalogue import get_scenario, list_scenarios
from mirrorfault.engine.scenario_runner import ScenarioRunner
from mirrorfault.exceptions import ConfigurationError, HarnessError
from mirrorfault.logging import setup_logging
from mirrorfault.models import FaultScenario, ScenarioConfig

logger = structlog.get_logger()


def _select(names: List[str]) -> List[FaultScenario]:
    if not names:
        return list_scenarios()
    return [get_scenario(name) for name in names]


def _config_from_args(args: argparse.Namespace) -> ScenarioConfig:
    overrides = {}
    if args.request_limit is not None:
        overrides["request_limit_secs"] = args.request_limit
    if args.source_port is not None:
        overrides["source_port"] = args.source_port
    if args.dest_port is not None:
        overrides["dest_port"] = args.dest_port
    try:
        return ScenarioConfig.from_settings(settings, **overrides)
    except ValueError as e:
        raise ConfigurationError("Invalid scenario configuration", details={"error": str(e)})


async def _self_check(runner: ScenarioRunner, scenarios: List[FaultScenario]) -> bool:
    passed = True
    for scenario in scenarios:
        report = await runner.self_check(scenario)
        print(report.model_dump_json())
        passed = passed and report.passed
    return passed


async def _run(runner: ScenarioRunner, scenarios: List[FaultScenario], verify_double: bool) -> bool:
    passed = True
    for scenario in scenarios:
        report = await runner.run(scenario, verify_double=verify_double)
        print(report.model_dump_json(exclude={"stdout", "stderr"}))
        passed = passed and report.passed
    return passed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fault-injection harness for mirroring servers")
    parser.add_argument(
        "--request-limit",
        type=float,
        help="Per-request time limit handed to the process under test (seconds)",
    )
    parser.add_argument("--source-port", type=int, help="Port the process under test serves on")
    parser.add_argument("--dest-port", type=int, help="Port the double listens on")
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level")
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=settings.log_dir,
        help="Also append events to <dir>/harness.log (default: MIRRORFAULT_LOG_DIR)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List catalogued scenarios")

    check = sub.add_parser("self-check", help="Verify the double against an in-process source")
    check.add_argument("scenarios", nargs="*", help="Scenario names (default: all)")

    run = sub.add_parser("run", help="Run scenarios against the binary under test")
    run.add_argument(
        "--binary",
        type=Path,
        default=settings.binary,
        help="Mirroring server binary (default: MIRRORFAULT_BINARY)",
    )
    run.add_argument(
        "--work-dir",
        type=Path,
        default=settings.work_dir,
        help="Directory for export files and control sockets",
    )
    run.add_argument(
        "--skip-self-check",
        action="store_true",
        help="Do not self-check the double before each scenario",
    )
    run.add_argument("scenarios", nargs="*", help="Scenario names (default: all)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    setup_logging("harness", level=logging.DEBUG if args.debug else logging.INFO, log_dir=args.log_dir)

    if args.command == "list":
        for scenario in list_scenarios():
            print(f"{scenario.name:<22} {scenario.expected_state.value:<10} {scenario.description}")
        return 0

    try:
        scenarios = _select(args.scenarios)
        config = _config_from_args(args)
        if args.command == "self-check":
            passed = asyncio.run(_self_check(ScenarioRunner(config=config), scenarios))
        else:
            if args.binary is None:
                raise ConfigurationError("No binary given (use --binary or MIRRORFAULT_BINARY)")
            runner = ScenarioRunner(args.binary, config=config, work_dir=args.work_dir)
            passed = asyncio.run(_run(runner, scenarios, verify_double=not args.skip_self_check))
    except HarnessError as e:
        logger.error("harness_failed", error=e.message, details=e.details)
        print(f"error: {e.message}", file=sys.stderr)
        return 2

    return 0 if passed else 1


if __name__ == "__main__":
    sys.exit(main())
