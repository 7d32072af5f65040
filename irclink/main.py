"""Command-line executable component.

Responsible for parsing the command-line arguments and the configuration file,
and for connecting to every network configured there. Events are logged; this
is mostly useful to try out a configuration, or as a monitoring bot.

Provides a run() function, used by __main__ or directly.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import asyncio
import configparser
import dataclasses
import errno
import logging
import pathlib
import sys
from collections.abc import Sequence

import prometheus_client
import structlog

from ._version import __version__
from .client import IRCClient
from .config import ConnectionProfile, network_sections

logger = structlog.get_logger()


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    """Parse and return the parsed command line arguments."""
    parser = argparse.ArgumentParser(
        prog="irclink",
        description="IRC protocol engine and client",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    cfg_dflt = pathlib.Path("irclink.conf")
    if not cfg_dflt.exists():
        cfg_dflt = pathlib.Path("/etc/irclink.conf")
    parser.add_argument("--config-file", "-c", type=pathlib.Path, default=cfg_dflt, help="Path to configuration file")

    log_levels = ("DEBUG", "INFO", "WARNING", "ERROR")
    parser.add_argument("--log-level", choices=log_levels, type=str.upper, help="Log level (overrides config)")
    log_formats = ("plain", "console", "json")
    log_dflt = "console" if sys.stdout.isatty() else "plain"
    parser.add_argument("--log-format", default=log_dflt, choices=log_formats, help="Log format")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def configure_logging(log_format: str, log_level: str | int = logging.WARN) -> None:
    """Configure logging parameters."""
    renderer: structlog.typing.Processor
    if log_format == "plain":
        timestamper = None
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    elif log_format == "console":
        timestamper = structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False)
        renderer = structlog.dev.ConsoleRenderer(colors=True)
    elif log_format == "json":
        timestamper = structlog.processors.TimeStamper(fmt="iso")
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        raise ValueError(f"Invalid logging format specified: {log_format}")

    # render with structlog-based formatters within logging, so that foreign (e.g. asyncio) events look the same
    processors: list[structlog.typing.Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if timestamper:
        processors.append(timestamper)

    structlog.configure(
        processors=[
            *processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[*processors, structlog.stdlib.ExtraAdder()],
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    # default level, only for events emitted before the config is parsed
    root_logger.setLevel(log_level)


def configure_log_levels(override_level: str | int | None, config: configparser.SectionProxy | None = None) -> None:
    """Configure logging levels, using the config file and an override, typically given by a CLI argument."""
    if config:
        for key, level in config.items():
            this_logger_name = key if key != "root" else None
            logging.getLogger(this_logger_name).setLevel(level.upper())

    if override_level:
        # set the level for the entire package
        logging.getLogger("irclink").setLevel(override_level)


def load_profiles(config: configparser.ConfigParser) -> dict[str, ConnectionProfile]:
    """Return a connection profile for every [network:<name>] section."""
    profiles = {}
    for name, section in network_sections(config).items():
        try:
            profiles[name] = ConnectionProfile.from_config(section)
        except ValueError as exc:
            logger.critical("Invalid network configuration", network=name, error=str(exc))
            raise SystemExit(-1) from exc
    if not profiles:
        logger.critical('Invalid configuration, no "network:<name>" section found')
        raise SystemExit(-1)
    return profiles


def start_prometheus(config: configparser.SectionProxy, client: IRCClient) -> None:
    """Expose the client's metrics over HTTP, from a background thread."""
    listen_address = config.get("listen_address", fallback="::")
    listen_port = config.getint("listen_port", fallback=9200)
    prometheus_client.start_http_server(listen_port, addr=listen_address, registry=client.metrics_registry)
    logger.info("Listening for Prometheus HTTP", listen_address=listen_address, listen_port=listen_port)


async def log_events(client: IRCClient) -> None:
    """Log every event, forever."""
    async for network, event in client.events():
        fields = {field.name: getattr(event, field.name) for field in dataclasses.fields(event)}
        logger.info(event.__class__.__name__, network=network, **fields)


async def start_clients(config: configparser.ConfigParser) -> None:
    """Connect to all the configured networks and then log events, forever."""
    profiles = load_profiles(config)
    client = IRCClient()

    try:
        if "prometheus" in config:
            start_prometheus(config["prometheus"], client)

        for name, profile in profiles.items():
            client.connect(name, profile)

        log_task = asyncio.create_task(log_events(client))
        try:
            # networks only stop on fatal errors, e.g. a rejected registration
            await asyncio.gather(*(manager.task for manager in client.managers.values() if manager.task))
            logger.info("No connections left, exiting")
        finally:
            await client.close()
            log_task.cancel()
    except OSError as exc:
        logger.critical(f"System error: {exc.strerror}", errno=errno.errorcode.get(exc.errno or 0, "unknown"))
        raise SystemExit(-2) from exc


def run(argv: Sequence[str] | None = None) -> None:
    """Entry point."""
    options = parse_args(argv)

    configure_logging(options.log_format)
    configure_log_levels(options.log_level or logging.INFO)
    logger.info("Starting irclink", config_file=str(options.config_file), version=__version__)

    config = configparser.ConfigParser(strict=True)
    try:
        with options.config_file.open(encoding="utf-8") as config_fh:
            config.read_file(config_fh)
    except OSError as exc:
        logger.critical(f"Cannot open configuration file: {exc.strerror}", errno=errno.errorcode[exc.errno])
        raise SystemExit(-1) from exc
    except configparser.Error as exc:
        msg = repr(exc).replace("\n", " ")  # configparser exceptions sometimes include newlines
        logger.critical(f"Invalid configuration, {msg}")
        raise SystemExit(-1) from exc

    # now that we've read the config, configure with the levels defined there (but CLI option takes precedence)
    if "loggers" in config:
        configure_log_levels(options.log_level, config["loggers"])

    try:
        asyncio.run(start_clients(config))
    except KeyboardInterrupt:
        pass
