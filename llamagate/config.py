"""Configuration module for llamagate.

Handles loading settings from environment variables, falling back to the
``port.conf`` / ``ollamaURL.conf`` files written by the admin CLI.
"""

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
from dotenv import load_dotenv


PORT_FILE = "port.conf"
OLLAMA_URL_FILE = "ollamaURL.conf"
LEGACY_OLLAMA_PORT_FILE = "ollamaPort.conf"

DEFAULT_RATE_LIMIT = 10


class ConfigError(ValueError):
    """Raised when the port or backend address is missing or malformed."""

    def __init__(self, setting: str, message: str):
        self.setting = setting
        super().__init__(message)


@dataclass
class Settings:
    """Application settings loaded from environment variables."""

    port: int
    ollama_url: str
    database_path: str
    database_url: Optional[str]  # PostgreSQL connection URL
    admin_password: Optional[str]
    log_level: str = "INFO"
    log_format: str = "console"
    backend_timeout: float = 15.0
    webhook_timeout: float = 10.0
    default_rate_limit: int = DEFAULT_RATE_LIMIT


def _read_conf(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    value = path.read_text(encoding="utf-8").strip()
    return value or None


def parse_port(value: str) -> int:
    """Parse a listening port, raising ConfigError if it is not 1..65535."""
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigError("port", f"Invalid port number: {value!r}")
    if not 0 < port < 65536:
        raise ConfigError("port", f"Port out of range: {port}")
    return port


def normalize_backend_url(value: str) -> str:
    """Validate the backend base address and return it without a trailing slash.

    A bare port number (the legacy ``ollamaPort.conf`` format) is taken to mean
    an Ollama server on localhost.
    """
    raw = str(value).strip()
    if raw.isdigit():
        raw = f"http://localhost:{parse_port(raw)}"
    try:
        url = httpx.URL(raw)
    except (httpx.InvalidURL, TypeError):
        raise ConfigError("ollama_url", f"Invalid Ollama URL: {value!r}")
    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigError("ollama_url", f"Invalid Ollama URL: {value!r}")
    return raw.rstrip("/")


def load_settings(env_path: Optional[str] = None, config_dir: Optional[str] = None) -> Settings:
    """Load settings from environment variables and config files.

    Args:
        env_path: Optional path to .env file. If None, searches for .env
                  in current directory and parent directories.
        config_dir: Directory holding the ``*.conf`` fallback files.
                    Defaults to the current working directory.

    Returns:
        Settings dataclass with all configuration values.

    Raises:
        ConfigError: If the port or backend address is missing or invalid.
    """
    if env_path:
        load_dotenv(env_path)
    else:
        load_dotenv()

    conf_dir = Path(config_dir or ".")

    port_value = os.getenv("PORT") or _read_conf(conf_dir / PORT_FILE)
    if not port_value:
        raise ConfigError("port", "PORT is not set and port.conf was not found")
    port = parse_port(port_value)

    ollama_value = (
        os.getenv("OLLAMA_URL")
        or _read_conf(conf_dir / OLLAMA_URL_FILE)
        or _read_conf(conf_dir / LEGACY_OLLAMA_PORT_FILE)
    )
    if not ollama_value:
        raise ConfigError("ollama_url", "OLLAMA_URL is not set and ollamaURL.conf was not found")
    ollama_url = normalize_backend_url(ollama_value)

    return Settings(
        port=port,
        ollama_url=ollama_url,
        database_path=os.getenv("DATABASE_PATH", "./apiKeys.db"),
        database_url=os.getenv("DATABASE_URL") or None,
        admin_password=os.getenv("ADMIN_PASSWORD") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=os.getenv("LOG_FORMAT", "console"),
        backend_timeout=float(os.getenv("BACKEND_TIMEOUT", "15")),
        webhook_timeout=float(os.getenv("WEBHOOK_TIMEOUT", "10")),
        default_rate_limit=int(os.getenv("DEFAULT_RATE_LIMIT", str(DEFAULT_RATE_LIMIT))),
    )


def save_port(port: int, config_dir: Optional[str] = None) -> Path:
    """Persist the listening port to port.conf (takes effect on restart)."""
    path = Path(config_dir or ".") / PORT_FILE
    path.write_text(str(parse_port(port)), encoding="utf-8")
    return path


def save_ollama_url(url: str, config_dir: Optional[str] = None) -> Path:
    """Persist the backend base address to ollamaURL.conf."""
    path = Path(config_dir or ".") / OLLAMA_URL_FILE
    path.write_text(normalize_backend_url(url), encoding="utf-8")
    return path


def prompt_for_settings(env_path: Optional[str] = None, config_dir: Optional[str] = None) -> Settings:
    """Load settings, asking on the terminal for any missing or invalid value.

    Answers are written to the config files so the next start is silent.
    Outside an interactive terminal the ConfigError is re-raised.
    """
    while True:
        try:
            return load_settings(env_path, config_dir)
        except ConfigError as e:
            env_name = "PORT" if e.setting == "port" else "OLLAMA_URL"
            # A bad environment value would shadow whatever we write to disk.
            if not sys.stdin.isatty() or os.getenv(env_name):
                raise
            print(f"⚠ {e}")
            try:
                if e.setting == "port":
                    save_port(input("Enter the port number for the API server: "), config_dir)
                else:
                    save_ollama_url(
                        input(
                            "Enter the URL of your Ollama server "
                            "(by default it is http://localhost:11434): "
                        ),
                        config_dir,
                    )
            except ConfigError as retry_error:
                print(f"⚠ {retry_error}")
