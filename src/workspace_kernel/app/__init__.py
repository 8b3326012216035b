from .cli import build_parser, parse_args
from .runtime import describe_locations, run

__all__ = ["build_parser", "describe_locations", "parse_args", "run"]
