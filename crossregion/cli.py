"""
Command line entry point.

    crossregion build|configure|cleanup|report [--regions us-east-1,eu-west-1]
    crossregion agent --region us-east-1 --hosts hosts.json --log probe.log
"""

import argparse
import asyncio
import json
import logging
import sys

import uvicorn

from crossregion.config.config import (
    LOG_FILE,
    LOG_FORMAT,
    LOG_LEVEL,
    PROBE_PORT,
    REGIONS,
    REMOTE_HOSTS_FILE,
    REMOTE_LOG_FILE,
)
from crossregion.dependencies import open_ec2_clients
from crossregion.main import create_app
from crossregion.services.orchestrator import Orchestrator
from crossregion.services.probe_loop import ProbeLogWriter, ProbeLoop

PHASES = ("build", "configure", "cleanup", "report")


def configure_logging() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(LOG_FILE),
            logging.StreamHandler()
        ]
    )


def parse_regions(value: str) -> list[str]:
    # Repeated codes would make two steps claim the same region.
    regions = list(dict.fromkeys(region.strip() for region in value.split(",") if region.strip()))
    if not regions:
        raise argparse.ArgumentTypeError("at least one region is required")
    return regions


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crossregion", description="Cross-region latency measurement")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for phase in PHASES:
        phase_parser = subparsers.add_parser(phase, help=f"run the {phase} pipeline")
        phase_parser.add_argument(
            "--regions", type=parse_regions, default=list(REGIONS),
            help="comma separated region codes (default: %(default)s)",
        )

    agent = subparsers.add_parser("agent", help="run the probe agent on a node")
    agent.add_argument("--region", required=True)
    agent.add_argument("--hosts", default=REMOTE_HOSTS_FILE, help="hosts map JSON file")
    agent.add_argument("--log", default=REMOTE_LOG_FILE, help="probe log file")
    agent.add_argument("--port", type=int, default=PROBE_PORT)
    return parser


async def run_phase(phase: str, regions: list[str]) -> bool:
    async with open_ec2_clients(regions) as clients:
        orchestrator = Orchestrator(regions, clients)
        if phase == "report":
            return await orchestrator.report() is not None
        return await getattr(orchestrator, phase)()


def run_agent(region: str, hosts_file: str, log_file: str, port: int) -> None:
    with open(hosts_file) as f:
        hosts = json.load(f)
    probe_loop = ProbeLoop(region, hosts, ProbeLogWriter(log_file))
    uvicorn.run(create_app(probe_loop), host="0.0.0.0", port=port)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    if args.command == "agent":
        run_agent(args.region, args.hosts, args.log, args.port)
        return 0
    ok = asyncio.run(run_phase(args.command, args.regions))
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
