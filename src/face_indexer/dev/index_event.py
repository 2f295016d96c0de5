"""CLI to run one indexing pass for an event in the foreground.

The run is the same one the service starts in the background; this entrypoint
waits for it, printing progress until the job reaches a terminal state.
"""

from __future__ import annotations

import json
from pathlib import Path

import typer

from face_indexer.config import INDEXING_MODES, Settings, load_settings
from face_indexer.errors import IndexingConflict
from face_indexer.progress import STATE_COMPLETED, TERMINAL_STATES
from face_indexer.service import build_service
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "index_event"})


def _apply_cli_overrides(
    settings: Settings,
    db: str | None,
    mode: str | None,
    concurrency: int | None,
    chunk_size: int | None,
) -> Settings:
    """Apply CLI overrides for database and batching knobs to the settings."""

    if db:
        settings.databases.primary_url = db
    if mode:
        if mode not in INDEXING_MODES:
            raise typer.BadParameter(f"mode must be one of {sorted(INDEXING_MODES)}", param_hint="--mode")
        settings.indexing.mode = mode
    if concurrency is not None and concurrency > 0:
        settings.indexing.concurrency = concurrency
    if chunk_size is not None and chunk_size > 0:
        settings.indexing.chunk_size = chunk_size
    return settings


def main(
    event: str = typer.Argument(..., help="Event name as it appears in the photo store."),
    settings_path: Path | None = typer.Option(
        None,
        "--settings",
        exists=True,
        dir_okay=False,
        help="Settings YAML; defaults to config/settings.yaml or $FACE_INDEXER_SETTINGS.",
    ),
    db: str | None = typer.Option(
        None,
        "--db",
        help="Metadata database URL or path. Defaults to databases.primary_url in settings.yaml.",
    ),
    mode: str | None = typer.Option(None, "--mode", help="Override indexing.mode (bounded or chunked)."),
    concurrency: int | None = typer.Option(None, "--concurrency", help="Override indexing.concurrency."),
    chunk_size: int | None = typer.Option(None, "--chunk-size", help="Override indexing.chunk_size."),
    poll_seconds: float = typer.Option(2.0, "--poll-seconds", min=0.1, help="Progress print interval."),
) -> None:
    """Index every photo of EVENT that is not yet in the face collection."""

    settings = _apply_cli_overrides(load_settings(settings_path), db, mode, concurrency, chunk_size)
    service = build_service(settings)

    try:
        service.start_indexing(event)
    except IndexingConflict as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc

    try:
        while True:
            progress = service.wait(event, timeout=poll_seconds)
            typer.echo(progress.current_item_description)
            if progress.state in TERMINAL_STATES:
                break
    except KeyboardInterrupt:
        service.cancel_indexing(event)
        progress = service.wait(event)
        LOGGER.info("index_event_interrupted", extra={"event_id": event, "state": progress.state})

    typer.echo(json.dumps(progress.to_dict(), indent=2))
    if progress.state != STATE_COMPLETED:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    typer.run(main)
