"""ssewire CLI - listen to an event stream, manage defaults."""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click

try:
    import tomllib
except ModuleNotFoundError:
    import tomli as tomllib

import tomli_w

from .client import EventSource
from .types import ErrorEvent, EventSourceConfig, MessageEvent, Notification


# ============================================================================
# Config helpers
# ============================================================================

CONFIG_DIR = Path.home() / ".ssewire"
CONFIG_FILE = CONFIG_DIR / "config.toml"


def _load_config() -> Dict[str, Any]:
    """Read config.toml, returning an empty dict if it doesn't exist."""
    if not CONFIG_FILE.exists():
        return {}
    with open(CONFIG_FILE, "rb") as f:
        return tomllib.load(f)


def _save_config(cfg: Dict[str, Any]) -> None:
    """Write config dict to config.toml."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    with open(CONFIG_FILE, "wb") as f:
        tomli_w.dump(cfg, f)


def _set_nested(cfg: Dict[str, Any], dotted_key: str, value: Any) -> None:
    """Set a value in a nested dict using a dotted key like 'default.retry_ms'."""
    parts = dotted_key.split(".")
    d = cfg
    for part in parts[:-1]:
        d = d.setdefault(part, {})
    d[parts[-1]] = value


def _parse_value(raw: str) -> Any:
    """Interpret a command-line value as a TOML literal, falling back to a string."""
    try:
        return tomllib.loads(f"value = {raw}")["value"]
    except tomllib.TOMLDecodeError:
        return raw


def _parse_header(raw: str) -> Tuple[str, str]:
    name, sep, value = raw.partition(":")
    if not sep or not name.strip():
        raise click.BadParameter(f"expected 'Name: value', got {raw!r}", param_hint="--header")
    return name.strip(), value.strip()


def _build_config(
    cfg: Dict[str, Any],
    last_event_id: Optional[str],
    retry_ms: Optional[int],
    headers: Tuple[str, ...],
) -> EventSourceConfig:
    """Merge the [default] and [headers] sections with command-line options."""
    fields: Dict[str, Any] = {
        k: v for k, v in cfg.get("default", {}).items() if k in EventSourceConfig.model_fields
    }
    merged_headers = {**fields.get("headers", {}), **cfg.get("headers", {})}
    for raw in headers:
        name, value = _parse_header(raw)
        merged_headers[name] = value
    fields["headers"] = merged_headers
    if last_event_id is not None:
        fields["last_event_id"] = last_event_id
    if retry_ms is not None:
        fields["retry_ms"] = retry_ms
    return EventSourceConfig(**fields)


def _format(note: Notification, as_json: bool) -> str:
    if as_json:
        return json.dumps(note.model_dump(by_alias=True))
    if isinstance(note, MessageEvent):
        return f"message type={note.type} id={note.last_event_id!r} data={note.data!r}"
    if isinstance(note, ErrorEvent):
        status = f" status={note.status_code}" if note.status_code is not None else ""
        kind = "fatal" if note.fatal else "retrying"
        return f"error ({kind}){status}: {note.message}"
    return note.type


# ============================================================================
# CLI group
# ============================================================================

@click.group()
def cli():
    """ssewire Server-Sent Events client"""
    pass


# ============================================================================
# ssewire listen <url>
# ============================================================================

@cli.command()
@click.argument("url")
@click.option("--last-event-id", default=None, help="Resume after this event id")
@click.option("--retry", "retry_ms", type=click.IntRange(min=0), default=None,
              help="Initial reconnection delay in milliseconds")
@click.option("--header", "-H", "headers", multiple=True, help="Extra request header 'Name: value'")
@click.option("--max-events", type=click.IntRange(min=1), default=None,
              help="Exit after this many messages")
@click.option("--json", "as_json", is_flag=True, help="Print notifications as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Log connection activity to stderr")
def listen(url: str, last_event_id: Optional[str], retry_ms: Optional[int], headers: Tuple[str, ...],
           max_events: Optional[int], as_json: bool, verbose: bool):
    """Connect to URL and print every notification until closed."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = _build_config(_load_config(), last_event_id, retry_ms, headers)
    try:
        source = EventSource.open(url, config=config, start=False)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="URL")

    events = source.notifications()
    source.start()

    received = 0
    fatal = False
    try:
        for note in events:
            click.echo(_format(note, as_json))
            if isinstance(note, ErrorEvent) and note.fatal:
                fatal = True
            elif isinstance(note, MessageEvent):
                received += 1
                if max_events is not None and received >= max_events:
                    break
    except KeyboardInterrupt:
        pass
    finally:
        source.close()
        source.join(timeout=5.0)

    if fatal:
        sys.exit(1)


# ============================================================================
# ssewire config (subgroup)
# ============================================================================

@cli.group()
def config():
    """Manage configuration."""
    pass


@config.command("show")
def config_show():
    """Print config file contents."""
    if not CONFIG_FILE.exists():
        click.echo(f"No config file found at {CONFIG_FILE}")
        return

    with open(CONFIG_FILE, "r") as f:
        click.echo(f.read())


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Set a config value (e.g., ssewire config set default.retry_ms 5000)"""
    cfg = _load_config()
    _set_nested(cfg, key, _parse_value(value))
    _save_config(cfg)
    click.echo(f"Set {key} = {value}")


# ============================================================================
# Entry point
# ============================================================================

def main():
    cli()


if __name__ == "__main__":
    main()
