from __future__ import annotations

import argparse


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="workspace-kernel")
    commands = parser.add_subparsers(dest="command", required=True)

    locations = commands.add_parser("locations", help="load a workspace and report every location")
    target = locations.add_mutually_exclusive_group(required=True)
    target.add_argument("-w", "--workspace", help="workspace YAML file")
    _add_code_target(target)
    _add_code_options(locations)

    serve = commands.add_parser("serve", help="serve one code location over TCP for grpc_server origins")
    serve_target = serve.add_mutually_exclusive_group(required=True)
    _add_code_target(serve_target)
    _add_code_options(serve)
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, required=True)
    serve.add_argument("--secret", help="shared HMAC secret expected from hosts")
    return parser


def parse_args(argv: list[str]) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def _add_code_target(group: argparse._MutuallyExclusiveGroup) -> None:
    group.add_argument("-f", "--python-file", help="python file defining the entry point")
    group.add_argument("-m", "--module-name", help="importable module defining the entry point")


def _add_code_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-a", "--attribute", help="entry point attribute (default: definitions)")
    parser.add_argument("-d", "--working-directory", help="directory put on sys.path inside the worker")
    parser.add_argument("-l", "--location-name", help="display name override for the location")
