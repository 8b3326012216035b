from __future__ import annotations

import sys
from collections.abc import Sequence

from workspace_kernel.app import run


def main(argv: Sequence[str] | None = None) -> int:
    # Console-script entrypoint delegating to the CLI runtime.
    return run(list(argv) if argv is not None else sys.argv[1:])
