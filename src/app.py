"""Application entry point for the tginbox SMTP-to-Telegram bridge."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from typing import Iterable, Optional

from art import tprint

import settings
from adapters.smtp_listener import SmtpListener
from adapters.telegram_bot_forwarder import TelegramBotForwarder
from core.processor import MailProcessor
from core.registry import AccountRegistry

NAME = "TGINBOX"
FONT = "tarty-1"
VERSION = "0.1.0"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict, bot_tokens: Iterable[str]) -> list[str]:
    # Bot tokens are part of every Bot API URL, so they are always masked.
    values = [token for token in bot_tokens if token]
    redact_cfg = config.get("redact", {}) if config else {}
    if redact_cfg.get("enabled", True):
        for name in redact_cfg.get("patterns", []):
            value = os.getenv(name)
            if value:
                values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging(config: dict, bot_tokens: Iterable[str]) -> None:
    config = config or {}
    if not config.get("enabled", True):
        return

    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config, bot_tokens)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/tginbox.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)
    # httpx logs every request URL at INFO; keep it at WARNING.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


async def _serve(config: settings.Settings) -> None:
    logger = logging.getLogger(__name__)

    registry = AccountRegistry(config.accounts)
    logger.info("%s accounts are loaded", len(registry))

    forwarder = TelegramBotForwarder(policy=config.retry)
    processor = MailProcessor(
        forwarder=forwarder,
        decoder_config=config.decoder,
        hard_timeout=config.retry.hard_timeout,
    )

    # One semaphore for every endpoint keeps the session ceiling global.
    slots = asyncio.Semaphore(config.limits.max_sessions)
    listeners = [
        SmtpListener(
            server=server,
            registry=registry,
            processor=processor,
            limits=config.limits,
            tls_context=settings.build_tls_context(server),
            slots=slots,
        )
        for server in config.servers
    ]

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:
            # Windows event loops; Ctrl+C still raises KeyboardInterrupt.
            pass

    try:
        for listener in listeners:
            await listener.start()
        logger.info("Bridge started. Waiting for mail...")
        await stop.wait()
        logger.info("Shutting down, grace period %ss", config.limits.shutdown_grace)
    finally:
        await asyncio.gather(*(listener.close(config.limits.shutdown_grace) for listener in listeners))
        await forwarder.aclose()


def _daemon_context():
    """Detach from the terminal, keeping open log files writable."""

    # python-daemon is Unix only.
    import daemon

    preserved = [
        handler.stream
        for handler in logging.getLogger().handlers
        if isinstance(handler, logging.FileHandler) and handler.stream is not None
    ]
    # Relative cert and key paths are resolved after detaching.
    return daemon.DaemonContext(working_directory=os.getcwd(), umask=0o022, files_preserve=preserved)


def _run(config_path: str, daemonize: bool = False) -> None:
    _print_banner()
    config = settings.load_settings(config_path)
    _configure_logging(config.logging, (account.bot_token for account in config.accounts))
    logger = logging.getLogger(__name__)

    logger.info("Starting tginbox v%s", VERSION)
    if daemonize:
        with _daemon_context():
            logger.info("Running as a daemon, pid %s", os.getpid())
            asyncio.run(_serve(config))
    else:
        asyncio.run(_serve(config))
    logger.info("Stopped")


def _check(config_path: str) -> int:
    try:
        config = settings.load_settings(config_path)
    except (OSError, ValueError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1

    for server in config.servers:
        tls = "starttls" if server.starttls else "plain"
        print(f"server  {server.hostname} {server.address}:{server.port} ({tls})")
    for account in config.accounts:
        print(f"account {account.address} -> chat {account.chat_id}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tginbox")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Start the SMTP bridge")
    run_parser.add_argument("config", metavar="FILE", help="Path to the JSON config file")
    run_parser.add_argument(
        "-d",
        "--daemonize",
        action="store_true",
        help="Fork and detach from the terminal (Unix only)",
    )
    check_parser = subparsers.add_parser("check", help="Validate the config file and exit")
    check_parser.add_argument("config", metavar="FILE", help="Path to the JSON config file")

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "check":
        sys.exit(_check(args.config))
    if args.command == "run":
        if args.daemonize and os.name != "posix":
            parser.error("--daemonize is only supported on Unix")
        _run(args.config, daemonize=args.daemonize)
        return
    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
