"""Command line entry point."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

import uvicorn

from contract_builder.api.main import create_app
from contract_builder.config import DEFAULT_CONFIG_PATH, load_config
from contract_builder.errors import ConfigError
from contract_builder.log import configure_logging
from contract_builder.orchestrator.service import create_orchestrator

logger = logging.getLogger("contract_builder")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="contract-builder",
        description="Build untrusted smart-contract sources in sandboxes.",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    serve = commands.add_parser("serve", help="run the build orchestrator")
    serve.add_argument(
        "--config",
        default=None,
        help=f"path to the YAML configuration (default: {DEFAULT_CONFIG_PATH})",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging("INFO")
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        logger.critical("invalid configuration: %s", exc)
        return 1
    configure_logging(config.log_level)

    try:
        orchestrator = create_orchestrator(config)
        orchestrator.check()
    except (ConfigError, RuntimeError, OSError) as exc:
        logger.critical("startup failed: %s", exc)
        return 1

    logger.info("serving on %s:%d", config.host, config.port)
    uvicorn.run(
        create_app(orchestrator),
        host=config.host,
        port=config.port,
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
