"""CLI wrapper: Start the compiler service with auto-reload."""

from __future__ import annotations

import sys

from cli._runner import run


def main() -> None:
    run(
        [
            sys.executable,
            "-m",
            "uvicorn",
            "alfa_service.main:app",
            "--reload",
            "--host",
            "127.0.0.1",
            "--port",
            "3000",
            *sys.argv[1:],
        ]
    )
