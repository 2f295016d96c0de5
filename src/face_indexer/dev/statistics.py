"""CLI to print indexing statistics (and optionally diagnostics) for events."""

from __future__ import annotations

import json
from pathlib import Path

import typer

from face_indexer.config import load_settings
from face_indexer.scanner import list_events
from face_indexer.service import build_service
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "statistics"})


def main(
    events: list[str] | None = typer.Argument(None, help="Event names; defaults to every event in the photo store."),
    settings_path: Path | None = typer.Option(
        None,
        "--settings",
        exists=True,
        dir_okay=False,
        help="Settings YAML; defaults to config/settings.yaml or $FACE_INDEXER_SETTINGS.",
    ),
    diagnose: bool = typer.Option(
        False,
        "--diagnose/--no-diagnose",
        help="Include the per-status breakdown and recent records.",
    ),
) -> None:
    """Print durable indexing counts against the photo store for each event."""

    settings = load_settings(settings_path)
    service = build_service(settings)

    names = list(events or [])
    if not names:
        names = list_events(service.store, settings.storage.root_prefix)
        LOGGER.info("statistics_events_listed", extra={"events": len(names)})

    report = []
    for name in names:
        entry = service.get_statistics(name).to_dict()
        if diagnose:
            entry["diagnostics"] = service.diagnose(name)
        report.append(entry)

    typer.echo(json.dumps(report, indent=2, default=str))


if __name__ == "__main__":
    typer.run(main)
