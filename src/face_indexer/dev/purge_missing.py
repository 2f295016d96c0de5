"""CLI to delete index records whose photos were removed from the photo store."""

from __future__ import annotations

from pathlib import Path

import typer

from face_indexer.config import load_settings
from face_indexer.service import build_service
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "purge_missing"})


def main(
    event: str = typer.Argument(..., help="Event name as it appears in the photo store."),
    settings_path: Path | None = typer.Option(
        None,
        "--settings",
        exists=True,
        dir_okay=False,
        help="Settings YAML; defaults to config/settings.yaml or $FACE_INDEXER_SETTINGS.",
    ),
) -> None:
    """Remove records for EVENT that no longer match a photo in the store."""

    service = build_service(load_settings(settings_path))
    removed = service.purge_missing(event)
    LOGGER.info("purge_missing_complete", extra={"event_id": event, "removed": removed})
    typer.echo(f"Removed {removed} stale records for {event}.")


if __name__ == "__main__":
    typer.run(main)
