"""Click CLI for UnionGate Monitor.

Entry point registered in ``pyproject.toml`` as ``uniongate-monitor``.

Subcommands::

    uniongate-monitor                   # monitor a gate, NDJSON feed on stdout
    uniongate-monitor --device ID       # monitor a specific gate
    uniongate-monitor gates             # list configured gates
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import click
import orjson

from uniongate_monitor import __version__
from uniongate_monitor.config import AppConfig, LogFileConfig, load_config
from uniongate_monitor.output import StdoutSink
from uniongate_monitor.redactor import SecretRedactingFilter, collect_secret_values
from uniongate_monitor.session import LogEntry, MonitorSession
from uniongate_monitor.topics import device_topics
from uniongate_monitor.transport import BrokerClient, parse_broker_url

logger = logging.getLogger("uniongate_monitor")

DEFAULT_CONFIG = "/etc/uniongate/config.json"

# Entries written before a dry run stops.
DRY_RUN_ENTRIES = 5


# ── structured JSON log formatter ───────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON to stderr."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _setup_logging(
    level: str,
    secret_values: list[str] | None = None,
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """Configure the root logger with JSON output on stderr + optional file + redaction."""
    root = logging.getLogger()
    level_name = "WARNING" if level.lower() == "warn" else level.upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    redactor = SecretRedactingFilter(secret_values)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(_JsonFormatter())
    stderr_handler.addFilter(redactor)
    root.addHandler(stderr_handler)

    if log_file_config and log_file_config.enabled:
        from logging.handlers import RotatingFileHandler

        Path(log_file_config.path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=log_file_config.path,
            maxBytes=log_file_config.max_size_bytes,
            backupCount=log_file_config.backup_count,
        )
        file_handler.setFormatter(_JsonFormatter())
        file_handler.addFilter(redactor)
        root.addHandler(file_handler)


def _resolve_config(config_path: Optional[str]) -> AppConfig:
    """Load the config file, or fall back to defaults when none is installed.

    An explicitly given path (option or ``UNIONGATE_CONFIG``) must exist.
    """
    explicit = config_path or os.environ.get("UNIONGATE_CONFIG")
    cfg_path = explicit or DEFAULT_CONFIG
    if not explicit and not Path(cfg_path).exists():
        return AppConfig()
    try:
        return load_config(cfg_path)
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
@click.option("--device", default=None, help="Gate device id to monitor.")
@click.option("--broker-url", default=None, help="Override the broker URL.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("--dry-run", is_flag=True, help=f"Stop after {DRY_RUN_ENTRIES} entries.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    device: Optional[str],
    broker_url: Optional[str],
    log_level: Optional[str],
    dry_run: bool,
    validate_only: bool,
) -> None:
    """UnionGate Monitor: live gate telemetry and access-event feed."""
    if ctx.invoked_subcommand is not None:
        return

    cfg = _resolve_config(config_path)

    if broker_url:
        cfg.broker.url = broker_url
    try:
        parse_broker_url(cfg.broker.url)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--broker-url") from exc

    device_id = device or os.environ.get("UNIONGATE_DEVICE") or cfg.initial_device
    if not device_id:
        raise click.UsageError("No gate configured; pass --device.")
    try:
        device_topics(cfg.topics.namespace, device_id)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--device") from exc

    effective_level = (
        log_level
        or os.environ.get("UNIONGATE_LOG_LEVEL")
        or cfg.logging.level
    )
    secret_values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    _setup_logging(effective_level, secret_values, cfg.logging.file)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    logger.info(
        "Starting uniongate-monitor %s (broker=%s, device=%s)",
        __version__,
        cfg.broker.url,
        device_id,
    )
    asyncio.run(_run_session(cfg, device_id, dry_run))


@main.command("gates")
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
def gates(config_path: Optional[str]) -> None:
    """List the configured gates and their topics."""
    cfg = _resolve_config(config_path)
    default = cfg.initial_device
    for gate in cfg.gates:
        marker = "*" if gate.value == default else " "
        topics = device_topics(cfg.topics.namespace, gate.value)
        click.echo(f"{marker} {gate.value}\t{gate.label}\t{topics.status}\t{topics.events}")


# ── async session ───────────────────────────────────────────────────


async def _run_session(cfg: AppConfig, device_id: str, dry_run: bool) -> None:
    """Run one monitoring session until a signal, a dry-run limit or a broken pipe."""
    loop = asyncio.get_running_loop()
    session = MonitorSession(BrokerClient(cfg.broker), cfg)
    sink = StdoutSink()
    stop = asyncio.Event()

    def _on_entry(entry: LogEntry) -> None:
        if stop.is_set():
            return
        try:
            sink.write(entry)
        except BrokenPipeError:
            stop.set()
            return
        if dry_run and sink.count >= DRY_RUN_ENTRIES:
            logger.info("Dry run complete: wrote %d entries", sink.count)
            stop.set()

    session.subscribe_to_entries(_on_entry)

    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            pass  # Windows

    try:
        await session.start(device_id)
        await stop.wait()
    finally:
        await session.close()
        logger.info("Session shut down (wrote %d entries)", sink.count)
