"""Command line entry point: ``edgehost <script-name>``."""
import argparse
import sys
from pathlib import Path

from . import __version__


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="edgehost",
        description="Serve an edge function script locally, reloading it when it changes.",
    )
    parser.add_argument("script", help="name of the script in the project config")
    parser.add_argument("--config", type=Path, default=None, help="project config file (default: .edgehost.json)")
    parser.add_argument("--port", type=int, default=None, help="override the script's localPort")
    parser.add_argument(
        "--in-process",
        action="store_true",
        help="run the script inside the server process instead of the sandbox",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    from .app import run_server
    return run_server(args.script, config_path=args.config, port=args.port, in_process=args.in_process)


if __name__ == "__main__":
    sys.exit(main())
