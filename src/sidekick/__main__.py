"""sidekick entry point: CLI argument parsing, logging setup and mode dispatch."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from sidekick.config import SidekickConfig, load_config


def _get_version() -> str:
    """Return the installed package version, or fall back to 'unknown'."""
    from importlib.metadata import PackageNotFoundError, version

    try:
        return f"sidekick {version('sidekick')}"
    except PackageNotFoundError:
        return "sidekick (unknown version, not installed as package)"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sidekick",
        description="sidekick: private code completion on a local llama.cpp backend",
    )
    parser.add_argument(
        "--version",
        "-V",
        action="version",
        version=_get_version(),
    )
    parser.add_argument(
        "--config",
        "-c",
        help="Path to config.toml file",
    )
    parser.add_argument(
        "--model",
        "-m",
        help="Path to a GGUF model file (overrides config)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-file",
        metavar="PATH",
        help="Write all log messages (DEBUG level) to a file, "
        "including the backend's own output.",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--mcp",
        action="store_true",
        help="Run as an MCP (Model Context Protocol) server over stdio. "
        "Requires the 'mcp' package: pip install 'sidekick[mcp]'",
    )
    mode.add_argument(
        "--status",
        action="store_true",
        help="Start the backend, report readiness and the active model, then exit",
    )
    mode.add_argument(
        "--list-models",
        action="store_true",
        help="List model files in the model directory and exit",
    )
    mode.add_argument(
        "--complete",
        metavar="FILE:LINE:COLUMN",
        help="Print the inline completion at a position (1-based line and column)",
    )
    mode.add_argument("--explain", metavar="FILE", help="Explain a file")
    mode.add_argument(
        "--refactor",
        metavar="FILE",
        help="Refactor a file according to --instruction",
    )
    mode.add_argument("--tests", metavar="FILE", help="Generate unit tests for a file")
    parser.add_argument(
        "--instruction",
        metavar="TEXT",
        help="Refactoring instruction (used with --refactor)",
    )
    return parser


def _setup_logging(verbose: bool, log_file: str | None) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s: %(message)s")

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logging.getLogger().addHandler(file_handler)
        logging.getLogger().setLevel(logging.DEBUG)


async def _run_headless(args: argparse.Namespace, config: SidekickConfig) -> int:
    from sidekick import headless
    from sidekick.service import Sidekick

    sidekick = Sidekick(config)
    try:
        if args.list_models:
            return headless.run_list_models(sidekick)
        if args.status:
            await sidekick.start()
            return headless.run_status(sidekick)
        if args.complete:
            return await headless.run_complete(sidekick, args.complete)
        if args.explain:
            return await headless.run_generation(sidekick, "explain", args.explain)
        if args.refactor:
            return await headless.run_generation(
                sidekick, "refactor", args.refactor, args.instruction or "",
            )
        return await headless.run_generation(sidekick, "tests", args.tests)
    finally:
        await sidekick.stop()


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if args.refactor and not args.instruction:
        parser.error("--refactor requires --instruction")

    _setup_logging(args.verbose, args.log_file)

    config = load_config(args.config)
    if args.model:
        config.model.path = args.model

    # MCP server mode: serve over stdio and exit
    if args.mcp:
        try:
            from sidekick.mcp_server import run_mcp_server

            asyncio.run(run_mcp_server(config))
        except ImportError:
            print("MCP support requires the 'mcp' package: pip install 'sidekick[mcp]'")
            sys.exit(1)
        sys.exit(0)

    if not any((args.status, args.list_models, args.complete, args.explain,
                args.refactor, args.tests)):
        parser.print_help()
        sys.exit(1)

    sys.exit(asyncio.run(_run_headless(args, config)))


if __name__ == "__main__":
    main()
