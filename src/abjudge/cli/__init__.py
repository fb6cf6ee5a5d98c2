"""Command line interface."""


def main() -> None:
    """CLI entrypoint for the abjudge console script."""
    from abjudge.cli.app import app

    app()
