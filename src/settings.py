"""Configuration loading for tginbox.

All operator settings (SMTP servers, accounts, limits, logging) live in a
single JSON file. Bot tokens may be kept out of that file: an account can
name an environment variable instead, and python-dotenv loads a local .env
before lookup.
"""

from __future__ import annotations

import json
import os
import ssl
import tempfile
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from dotenv import load_dotenv

from core.config import DecoderConfig, RetryPolicy, ServerConfig, SessionLimits
from core.models import Account
from core.registry import canonicalize_address

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))


@dataclass(frozen=True)
class Settings:
    """Validated, immutable view of the configuration file."""

    servers: tuple[ServerConfig, ...]
    accounts: tuple[Account, ...]
    limits: SessionLimits = SessionLimits()
    decoder: DecoderConfig = DecoderConfig()
    retry: RetryPolicy = RetryPolicy()
    logging: dict = field(default_factory=dict)


def load_json_config(path: str) -> dict:
    """Load the JSON config file."""

    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as handle:
        config = json.load(handle)
    if not isinstance(config, dict):
        raise ValueError("Config file must contain a JSON object")
    return config


def _resolve_bot_token(entry: dict, index: int) -> str:
    token = entry.get("telegram_bot_key")
    env_name = entry.get("telegram_bot_key_env")
    if env_name is not None and not isinstance(env_name, str):
        raise ValueError(f"accounts[{index}]: telegram_bot_key_env must be a string")
    if not token and env_name:
        token = os.getenv(env_name)
        if not token:
            raise ValueError(f"accounts[{index}]: environment variable {env_name} is not set")
    if not token:
        raise ValueError(f"accounts[{index}]: telegram_bot_key or telegram_bot_key_env is required")
    return str(token)


def _entries(raw: Any, name: str) -> list[dict]:
    if not isinstance(raw, list):
        raise ValueError(f"{name} must be a list")
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ValueError(f"{name}[{index}]: must be an object")
    return raw


def _section(config: dict, key: str) -> dict:
    section = config.get(key) or {}
    if not isinstance(section, dict):
        raise ValueError(f"{key} must be an object")
    return section


def _normalize_accounts(raw_accounts: Any) -> tuple[Account, ...]:
    """Validate account entries and reject duplicate addresses."""

    entries = _entries(raw_accounts, "accounts")
    if not entries:
        raise ValueError("At least one account must be configured")

    accounts: list[Account] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        address = str(entry.get("address", "")).strip()
        if "@" not in address:
            raise ValueError(f"accounts[{index}]: address must be an email address")
        key = canonicalize_address(address)
        if key in seen:
            raise ValueError(f"accounts[{index}]: duplicate address {address}")
        seen.add(key)

        chat_id = str(entry.get("telegram_chat_id", "")).strip()
        if not chat_id:
            raise ValueError(f"accounts[{index}]: telegram_chat_id is required")

        accounts.append(
            Account(
                address=address,
                bot_token=_resolve_bot_token(entry, index),
                chat_id=chat_id,
            )
        )
    return tuple(accounts)


def _normalize_servers(raw_servers: Any) -> tuple[ServerConfig, ...]:
    """Build ServerConfig entries for enabled servers only."""

    servers: list[ServerConfig] = []
    for index, entry in enumerate(_entries(raw_servers, "smtpservers")):
        if not entry.get("enabled", True):
            continue
        try:
            port = int(entry.get("port", 25))
        except (TypeError, ValueError):
            raise ValueError(f"smtpservers[{index}]: port must be an integer") from None
        if not 0 < port < 65536:
            raise ValueError(f"smtpservers[{index}]: port must be between 1 and 65535")
        starttls = bool(entry.get("starttls", False))
        cert_path = entry.get("cert_path") or ""
        key_path = entry.get("key_path") or ""
        if starttls and not (cert_path and key_path):
            raise ValueError(f"smtpservers[{index}]: starttls requires cert_path and key_path")
        servers.append(
            ServerConfig(
                hostname=entry.get("hostname") or "localhost",
                address=entry.get("address") or "0.0.0.0",
                port=port,
                starttls=starttls,
                cert_path=cert_path,
                key_path=key_path,
                ca_path=entry.get("ca_path") or "",
            )
        )
    if not servers:
        raise ValueError("At least one enabled SMTP server must be configured")
    return tuple(servers)


def _positive(section: dict, key: str, default: Any, cast: Callable[[Any], Any]) -> Any:
    try:
        value = cast(section.get(key, default))
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be a number") from None
    if value <= 0:
        raise ValueError(f"{key} must be positive")
    return value


def build_settings(config: dict) -> Settings:
    """Validate a raw config mapping into Settings."""

    limits_cfg = _section(config, "limits")
    defaults = SessionLimits()
    limits = SessionLimits(
        max_message_bytes=_positive(limits_cfg, "max_message_bytes", defaults.max_message_bytes, int),
        max_recipients=_positive(limits_cfg, "max_recipients", defaults.max_recipients, int),
        max_sessions=_positive(limits_cfg, "max_sessions", defaults.max_sessions, int),
        queue_timeout=_positive(limits_cfg, "queue_timeout", defaults.queue_timeout, float),
        idle_timeout=_positive(limits_cfg, "idle_timeout", defaults.idle_timeout, float),
        shutdown_grace=_positive(limits_cfg, "shutdown_grace", defaults.shutdown_grace, float),
    )

    decoder_cfg = _section(config, "decoder")
    decoder = DecoderConfig(
        excerpt_chars=_positive(decoder_cfg, "excerpt_chars", DecoderConfig.excerpt_chars, int),
    )

    # Retry ceiling and backoff for the Bot API adapter.
    forwarding = _section(config, "forwarding")
    retry_defaults = RetryPolicy()
    schedule = RetryPolicy(
        max_attempts=_positive(forwarding, "max_attempts", retry_defaults.max_attempts, int),
        base_delay=_positive(forwarding, "base_delay", retry_defaults.base_delay, float),
        max_delay=_positive(forwarding, "max_delay", retry_defaults.max_delay, float),
        request_timeout=_positive(forwarding, "request_timeout", retry_defaults.request_timeout, float),
    )
    if "hard_timeout" in forwarding:
        hard_timeout = _positive(forwarding, "hard_timeout", retry_defaults.hard_timeout, float)
        if hard_timeout < schedule.worst_case:
            raise ValueError(
                f"hard_timeout ({hard_timeout:g}s) is shorter than the retry schedule ({schedule.worst_case:g}s)"
            )
    else:
        hard_timeout = max(retry_defaults.hard_timeout, schedule.worst_case)
    retry = replace(schedule, hard_timeout=hard_timeout)

    return Settings(
        servers=_normalize_servers(config.get("smtpservers", [])),
        accounts=_normalize_accounts(config.get("accounts", [])),
        limits=limits,
        decoder=decoder,
        retry=retry,
        logging=_section(config, "logging"),
    )


def load_settings(path: str) -> Settings:
    """Load .env, then read and validate the config file at path."""

    load_dotenv()
    return build_settings(load_json_config(path))


def build_tls_context(server: ServerConfig) -> Optional[ssl.SSLContext]:
    """Return a server-side SSL context when STARTTLS is enabled."""

    if not server.starttls:
        return None
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    if not server.ca_path:
        context.load_cert_chain(certfile=server.cert_path, keyfile=server.key_path)
        return context

    # load_cert_chain only reads a file, so the served chain goes through one.
    with tempfile.NamedTemporaryFile("wb", suffix=".pem", delete=False) as handle:
        handle.write(full_chain_pem(server))
    try:
        context.load_cert_chain(certfile=handle.name, keyfile=server.key_path)
    finally:
        os.unlink(handle.name)
    return context


def full_chain_pem(server: ServerConfig) -> bytes:
    """Leaf certificate followed by the intermediate chain from ca_path."""

    with open(server.cert_path, "rb") as handle:
        leaf = handle.read()
    with open(server.ca_path, "rb") as handle:
        chain = handle.read()
    if not leaf.endswith(b"\n"):
        leaf += b"\n"
    return leaf + chain
