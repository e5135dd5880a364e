"""Allow `python -m n8n_migrate` to invoke the CLI entry-point."""

import sys

from typer.main import get_command

from .cli import app


def main() -> None:
    """Dispatch to the Typer CLI; with no arguments, show help instead of an error."""
    cmd = get_command(app)
    cmd.main(args=sys.argv[1:] or ["--help"], prog_name="n8n-migrate")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
