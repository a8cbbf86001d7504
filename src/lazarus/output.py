"""CLI output formatting — JSON by default, human-readable with --human."""
from __future__ import annotations

import json
import sys
from typing import Any

import click


def _echo_human(data: dict[str, Any]) -> None:
    for k, v in data.items():
        if isinstance(v, (list, dict)):
            click.echo(f"{k}: {json.dumps(v, indent=2, default=str)}")
        else:
            click.echo(f"{k}: {v}")


def output(data: dict[str, Any] | list[dict[str, Any]], human: bool = False) -> None:
    """Print result as JSON (default) or key: value lines.

    A top-level error dict goes to stderr and exits 1. Per-item errors inside
    a list (one per domain) are printed like any other item.
    """
    if isinstance(data, dict) and "error" in data:
        click.echo(json.dumps(data, indent=2, default=str), err=True)
        sys.exit(1)
    if not human:
        click.echo(json.dumps(data, indent=2, default=str))
    elif isinstance(data, dict):
        _echo_human(data)
    else:
        for index, item in enumerate(data):
            if index:
                click.echo("")
            _echo_human(item)
