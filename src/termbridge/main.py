"""
main.py — termbridge Entry Point

Usage:
    termbridge                                  # listen on the configured host/port
    termbridge --port 8080 --host 0.0.0.0       # override the listen address
    termbridge --log-level DEBUG                # verbose logging
    termbridge --config path/to/config.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import ssl
import sys
from pathlib import Path

from dotenv import load_dotenv


def _find_env_file() -> Path | None:
    """Walk up from CWD looking for .env file."""
    cwd = Path.cwd()
    for d in [cwd, *cwd.parents]:
        candidate = d / ".env"
        if candidate.is_file():
            return candidate
    return None


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="termbridge",
        description="WebSocket gateway for remote shells and serial consoles",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $TERMBRIDGE_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument("--host", default=None, help="Override gateway.host")
    parser.add_argument("--port", type=int, default=None, help="Override gateway.port")
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from pydantic import ValidationError

    from termbridge.config.settings import ConfigError, load_settings
    from termbridge.observability.logger import get_logger, setup_logging

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(args.config)
        if args.host is not None:
            settings.gateway.host = args.host
        if args.port is not None:
            settings.gateway.port = args.port
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\nConfig validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(f"\nFailed to load config: {type(exc).__name__}: {exc}\n", file=sys.stderr)
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    # CLI --log-level flag overrides config.yaml
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("termbridge.main")
    return settings, log


def build_ssl_context(cert_path: str, key_path: str) -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(
        certfile=str(Path(cert_path).expanduser()),
        keyfile=str(Path(key_path).expanduser()),
    )
    return context


async def main(argv: list[str] | None = None) -> int:
    env_path = _find_env_file()
    if env_path:
        load_dotenv(dotenv_path=env_path)

    args = parse_args(argv)
    settings, log = bootstrap(args)

    from termbridge.gateway.gateway_server import GatewayServer
    from termbridge.gateway.session_registry import SessionRegistry
    from termbridge.session.session import Session
    from termbridge.transport.factory import make_transport_factory

    transport_factory = make_transport_factory(settings)

    def session_factory() -> Session:
        return Session.create(
            transport_factory,
            normalizer_config=settings.normalizer,
            dedup_capacity=settings.session.dedup_capacity,
        )

    gw = settings.gateway
    ssl_context = build_ssl_context(gw.tls_cert_path, gw.tls_key_path) if gw.tls_enabled else None

    server = GatewayServer(
        SessionRegistry(),
        session_factory,
        host=gw.host,
        port=gw.port,
        path=gw.path,
        health_interval=gw.health_interval_seconds,
        ping_timeout=gw.ping_timeout_seconds,
        max_connections=gw.max_connections,
        max_message_bytes=gw.max_message_bytes,
        ssl_context=ssl_context,
    )

    try:
        await server.start()
    except OSError as exc:
        log.error("main.listen_failed", host=gw.host, port=gw.port, error=str(exc))
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows: fall back to KeyboardInterrupt
            pass

    scheme = "wss" if ssl_context else "ws"
    print(f"termbridge listening on {scheme}://{gw.host}:{gw.port}{gw.path}")

    try:
        await stop.wait()
    finally:
        log.info("main.shutting_down")
        await server.shutdown()
    return 0


def main_sync() -> None:
    """Console-script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main_sync()
