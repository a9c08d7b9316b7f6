"""Module entrypoint for ``python -m notebook_runtime``."""

from __future__ import annotations

from notebook_runtime.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
