"""CLI wrapper: Serve the compiler service on the configured host and port."""

from __future__ import annotations

import sys

from cli._runner import run


def main() -> None:
    from alfa_service.core.config import settings

    run(
        [
            sys.executable,
            "-m",
            "uvicorn",
            "alfa_service.main:app",
            "--host",
            settings.host,
            "--port",
            str(settings.port),
            *sys.argv[1:],
        ]
    )
