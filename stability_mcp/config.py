"""Startup configuration for the Stability AI MCP server.

Configuration is read from the environment (optionally primed from ``.env``
files) exactly once, into a frozen ``ServerConfig`` that is handed to every
component that needs it.
"""
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

# Environment variable name for the Stability AI API key
API_KEY_ENV = "STABILITY_AI_API_KEY"

# Optional keyring fallback: the key may be stored in the OS keychain
# using python-keyring.
_DEFAULT_KEYRING_SERVICE = "stability-mcp"
_DEFAULT_KEYRING_ACCOUNT = API_KEY_ENV

# Look for .env in the project root (parent directory of this file's parent)
DOTENV_CANDIDATES = [
    Path(__file__).resolve().parents[1] / ".env",
    Path(__file__).resolve().parents[1] / ".env.local",
]

DEFAULT_BASE_URL = "https://api.stability.ai"
DEFAULT_PORT = 3020
DEFAULT_HOST = "0.0.0.0"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

BACKEND_FILESYSTEM = "filesystem"
BACKEND_S3 = "s3"
STORAGE_BACKENDS = (BACKEND_FILESYSTEM, BACKEND_S3)

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def default_storage_directory(platform: str = sys.platform) -> str:
    if platform == "win32":
        return "C:\\Windows\\Temp\\mcp-stability-ai"
    return "/tmp/mcp-stability-ai"


@dataclass(frozen=True)
class StorageConfig:
    """Which resource store to build and where it keeps images."""
    backend: str = BACKEND_FILESYSTEM
    directory: Optional[str] = None
    bucket: Optional[str] = None
    prefix: str = ""
    region: Optional[str] = None
    endpoint_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None


@dataclass(frozen=True)
class PollSettings:
    """Tuning for the bounded job poll loop."""
    initial_delay: float = 10.0
    max_delay: float = 60.0
    max_attempts: Optional[int] = 60
    jitter: float = 0.1


@dataclass(frozen=True)
class ServerConfig:
    """Everything the server needs, resolved once at startup."""
    api_key: str
    storage: StorageConfig
    use_sse: bool = False
    base_url: str = DEFAULT_BASE_URL
    save_metadata: bool = True
    save_metadata_failed: bool = True
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = "INFO"
    poll: PollSettings = field(default_factory=PollSettings)


def load_dotenv_files() -> None:
    """Load variables from .env files for local development without overriding the environment."""
    for env_file in DOTENV_CANDIDATES:
        if env_file.exists():
            load_dotenv(env_file, override=False)


def get_api_key(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Get the API key from the environment or the OS keychain. Returns None if not set."""
    env = os.environ if environ is None else environ
    key = (env.get(API_KEY_ENV) or "").strip()
    if key:
        return key

    # Best-effort keyring lookup (optional dependency).
    service = env.get("STABILITY_MCP_KEYRING_SERVICE") or _DEFAULT_KEYRING_SERVICE
    account = env.get("STABILITY_MCP_KEYRING_ACCOUNT") or _DEFAULT_KEYRING_ACCOUNT
    try:
        import keyring  # type: ignore  # pylint: disable=import-outside-toplevel
        from keyring.errors import KeyringError  # type: ignore  # pylint: disable=import-outside-toplevel
    except ImportError:
        return None

    try:
        stored = keyring.get_password(service, account)
    except KeyringError:
        return None

    if stored and stored.strip():
        return stored.strip()
    return None


def require_api_key(environ: Optional[Mapping[str, str]] = None) -> str:
    """Get the API key or raise a ConfigurationError."""
    key = get_api_key(environ)
    if not key:
        raise ConfigurationError(f"{API_KEY_ENV} is a required environment variable")
    return key


def _parse_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ConfigurationError(f"{name} must be a boolean (true/false), got {raw!r}")


def _parse_number(env: Mapping[str, str], name: str, default, cast=float):
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _load_storage_config(env: Mapping[str, str], use_sse: bool) -> StorageConfig:
    default_backend = BACKEND_S3 if use_sse else BACKEND_FILESYSTEM
    backend = (env.get("IMAGE_STORAGE_BACKEND") or default_backend).strip().lower()
    if backend not in STORAGE_BACKENDS:
        raise ConfigurationError(
            f"IMAGE_STORAGE_BACKEND must be one of: {', '.join(STORAGE_BACKENDS)}"
        )

    if backend == BACKEND_FILESYSTEM:
        directory = env.get("IMAGE_STORAGE_DIRECTORY") or default_storage_directory()
        return StorageConfig(backend=backend, directory=directory)

    bucket = env.get("S3_BUCKET_NAME")
    if not bucket:
        raise ConfigurationError("S3_BUCKET_NAME is required when using the s3 storage backend")
    return StorageConfig(
        backend=backend,
        bucket=bucket,
        prefix=env.get("S3_PREFIX", ""),
        region=env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION"),
        endpoint_url=env.get("S3_ENDPOINT_URL"),
        access_key_id=env.get("AWS_ACCESS_KEY_ID"),
        secret_access_key=env.get("AWS_SECRET_ACCESS_KEY"),
    )


def load_config(*, use_sse: bool = False, environ: Optional[Mapping[str, str]] = None) -> ServerConfig:
    """Build the ServerConfig from the environment.

    Args:
        use_sse: Whether the event-stream transport was selected; this picks
            the default storage backend.
        environ: Mapping to read instead of ``os.environ`` (no .env priming
            happens when one is passed).

    Raises:
        ConfigurationError: If a mandatory setting is missing or malformed.
    """
    if environ is None:
        load_dotenv_files()
        environ = os.environ

    max_attempts = _parse_number(environ, "POLL_MAX_ATTEMPTS", 60, int)
    poll = PollSettings(
        initial_delay=_parse_number(environ, "POLL_INITIAL_DELAY", 10.0),
        max_delay=_parse_number(environ, "POLL_MAX_DELAY", 60.0),
        max_attempts=max_attempts if max_attempts and max_attempts > 0 else None,
        jitter=_parse_number(environ, "POLL_JITTER", 0.1),
    )

    return ServerConfig(
        api_key=require_api_key(environ),
        storage=_load_storage_config(environ, use_sse),
        use_sse=use_sse,
        base_url=environ.get("STABILITY_AI_BASE_URL") or DEFAULT_BASE_URL,
        save_metadata=_parse_bool(environ, "SAVE_METADATA", True),
        save_metadata_failed=_parse_bool(environ, "SAVE_METADATA_FAILED", True),
        host=environ.get("HOST") or DEFAULT_HOST,
        port=_parse_number(environ, "PORT", DEFAULT_PORT, int),
        log_level=(environ.get("LOG_LEVEL") or "INFO").upper(),
        poll=poll,
    )


def configure_logging(level: str = "INFO") -> None:
    """Send log records to stderr; stdout is reserved for stdio protocol frames."""
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)
