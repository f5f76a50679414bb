"""Module entrypoint for `python -m toolbridge`."""

from toolbridge.cli import run

if __name__ == "__main__":
    raise SystemExit(run())
