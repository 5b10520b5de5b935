"""CLI entry point for the quizpipe question generation service."""

from __future__ import annotations

import json

import click
from rich.console import Console
from rich.table import Table

console = Console()


@click.group()
@click.version_option(version="0.1.0")
def main() -> None:
    """quizpipe: LLM question generation and review."""


# ---------------------------------------------------------------------------
# serve — HTTP API with the worker pool
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default=None, help="Bind address (default from settings)")
@click.option("--port", "-p", type=int, default=None, help="Port (default from settings)")
@click.option("--log-level", default=None, help="Log level (default from settings)")
def serve(host: str | None, port: int | None, log_level: str | None) -> None:
    """Run the API server and generation workers."""
    import uvicorn

    from quizpipe.api.app import create_app
    from quizpipe.config import get_settings
    from quizpipe.log import configure_logging
    from quizpipe.runtime import Pipeline

    settings = get_settings()
    _check_api_key(settings)
    configure_logging(log_level or settings.log_level)

    app = create_app(Pipeline(settings))
    console.print(
        f"[bold green]Serving on http://{host or settings.host}:{port or settings.port}[/bold green]"
    )
    uvicorn.run(app, host=host or settings.host, port=port or settings.port, log_config=None)


# ---------------------------------------------------------------------------
# settings — seed, show, change
# ---------------------------------------------------------------------------


@main.command()
def seed() -> None:
    """Create the settings row from configured defaults (no-op if it exists)."""
    from quizpipe.config import get_settings
    from quizpipe.settings import SettingsStore

    settings = get_settings()
    current = SettingsStore(settings.db_path, defaults=settings).seed()
    console.print(f"[green]Settings ready in {settings.db_path}[/green]")
    _print_settings(current)


@main.command("settings")
def show_settings() -> None:
    """Show the current generation settings."""
    from quizpipe.config import get_settings
    from quizpipe.errors import NotFoundError
    from quizpipe.settings import SettingsStore

    settings = get_settings()
    try:
        current = SettingsStore(settings.db_path).get()
    except NotFoundError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc.message}. Run `quizpipe seed`.")
        raise SystemExit(1)
    _print_settings(current)


@main.command()
@click.argument("assignments", nargs=-1, required=True)
def configure(assignments: tuple[str, ...]) -> None:
    """Patch settings, e.g. ``quizpipe configure rpmCap=60 rateLimitSafetyFactor=0.8``.

    A running server keeps its own copy; use PATCH /api/settings to change
    it live.
    """
    from quizpipe.config import get_settings
    from quizpipe.errors import QuizpipeError
    from quizpipe.settings import SettingsStore

    fields: dict = {}
    for assignment in assignments:
        key, sep, raw = assignment.partition("=")
        if not sep or not key:
            console.print(f"[bold red]Error:[/bold red] expected FIELD=VALUE, got {assignment!r}")
            raise SystemExit(1)
        fields[key.strip()] = _parse_value(raw.strip())

    settings = get_settings()
    try:
        updated = SettingsStore(settings.db_path).patch(fields)
    except QuizpipeError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc.message}")
        raise SystemExit(1)
    console.print("[green]Settings updated.[/green]")
    _print_settings(updated)


@main.command("set-token")
@click.option("--token", prompt=True, hide_input=True, confirmation_prompt=True,
              help="API bearer token (only its SHA-256 digest is stored)")
def set_token(token: str) -> None:
    """Store the digest of the API bearer token."""
    from quizpipe.config import get_settings
    from quizpipe.errors import QuizpipeError
    from quizpipe.settings import SettingsStore

    settings = get_settings()
    try:
        SettingsStore(settings.db_path).set_api_token(token)
    except QuizpipeError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc.message}")
        raise SystemExit(1)
    console.print("[green]Token digest stored.[/green]")


# ---------------------------------------------------------------------------
# review — bulk actions from the terminal
# ---------------------------------------------------------------------------


@main.command()
@click.argument(
    "action", type=click.Choice(["approve", "reject", "delete", "needs_fix", "publish"])
)
@click.argument("ids", nargs=-1, required=True)
def review(action: str, ids: tuple[str, ...]) -> None:
    """Apply a review ACTION to question IDS."""
    from quizpipe.config import get_settings
    from quizpipe.review.bulk import bulk_action_message
    from quizpipe.review.publisher import QuestionBankPublisher
    from quizpipe.review.service import ReviewService
    from quizpipe.storage.repository import QuestionStore

    settings = get_settings()
    service = ReviewService(
        QuestionStore(settings.db_path), QuestionBankPublisher(settings.db_path)
    )
    result = service.execute(action, list(ids))

    table = Table(title=f"Review: {action}")
    table.add_column("Question", width=38)
    table.add_column("Outcome", width=10)
    table.add_column("Error", width=40)
    for outcome in result.outcomes:
        table.add_row(outcome.question_id, outcome.kind.value, outcome.error or "")
    console.print(table)
    console.print(f"\n[bold]{bulk_action_message(result)}[/bold]")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_value(raw: str) -> object:
    """Numbers and JSON literals are decoded; anything else stays a string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _print_settings(app_settings: object) -> None:
    table = Table(title="Generation Settings")
    table.add_column("Field", width=24)
    table.add_column("Value", width=32)
    for key, value in app_settings.public_dict().items():
        table.add_row(key, "" if value is None else str(value))
    console.print(table)


def _check_api_key(settings: object) -> None:
    """Exit with a helpful message if the API key is not set."""
    if not getattr(settings, "anthropic_api_key", ""):
        console.print(
            "[bold red]Error:[/bold red] ANTHROPIC_API_KEY not set.\n"
            "Add it to .env or the environment."
        )
        raise SystemExit(1)


if __name__ == "__main__":
    main()
