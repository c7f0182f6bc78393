"""CLI entry point for r2gate."""

import argparse
import logging
import os
import sys
from pathlib import Path

import uvicorn

from r2gate.config import R2GateConfig, apply_env_overrides, load_config, validate_config
from r2gate.logging_config import configure_logging
from r2gate.server import create_app


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="r2gate",
        description="r2gate - access control gateway for multi-tenant R2 storage",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("r2gate.yaml"),
        help="Path to YAML configuration file (default: r2gate.yaml)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host address to bind to (overrides config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (overrides config)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config, default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        default=None,
        choices=["text", "json"],
        help="Log format: 'text' (human-readable) or 'json' (structured)",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=int,
        default=None,
        help="Graceful shutdown timeout in seconds (default: 30)",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate the configuration and exit",
    )
    return parser.parse_args(argv)


def _load(path: Path, logger: logging.Logger) -> R2GateConfig:
    """Load the YAML file, or fall back to defaults when it does not exist."""
    if not path.exists():
        logger.warning("Config file not found: %s (using defaults)", path)
        return R2GateConfig()
    return load_config(path)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the r2gate CLI.

    Loads configuration, applies environment and CLI overrides, validates
    the result and starts the server using uvicorn.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].
    """
    args = parse_args(argv)

    # Use a basic stderr logger for config-loading errors
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    logger = logging.getLogger("r2gate")

    try:
        config = apply_env_overrides(_load(args.config, logger), os.environ)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        sys.exit(1)

    if args.host is not None:
        config.server.host = args.host
    if args.port is not None:
        config.server.port = args.port
    if args.log_level is not None:
        config.server.log_level = args.log_level
    if args.log_format is not None:
        config.server.log_format = args.log_format
    if args.shutdown_timeout is not None:
        config.server.shutdown_timeout = args.shutdown_timeout

    errors, warnings = validate_config(config)
    for warning in warnings:
        logger.warning("Config warning: %s", warning)
    if errors:
        for error in errors:
            logger.error("Config error: %s", error)
        sys.exit(1)
    if args.check_config:
        logger.info("Configuration is valid")
        return

    # Configure structured logging (replaces basicConfig)
    configure_logging(
        level=config.server.log_level,
        fmt=config.server.log_format,
    )

    logger.info(
        "Starting r2gate on %s:%d (bucket=%s, storage=%s)",
        config.server.host,
        config.server.port,
        config.store.bucket_name,
        config.storage.backend,
    )

    app = create_app(config)

    # Crash-only: every startup is recovery
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        timeout_graceful_shutdown=config.server.shutdown_timeout,
        timeout_keep_alive=5,
    )


if __name__ == "__main__":
    main()
