"""
Configuration loader.

Values come from ``config.json`` in the base directory (keys starting with
``_`` are comments) and are overridden by environment variables, which main.py
loads from ``.env`` with python-dotenv. Out-of-range values fall back to their
defaults with a warning instead of failing startup.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .codec import max_chunk_size
from .log import logger as log

MB = 1024 * 1024
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class PlatformCredentials:
    token: str
    target: str


@dataclass
class Config:
    primary: Optional[PlatformCredentials] = None
    backup: Optional[PlatformCredentials] = None
    # Upload
    chunk_size: int = 8 * MB
    upload_concurrency: int = 4
    send_retries: int = 3
    retry_backoff: float = 2.0
    mirror_to_backup: bool = True
    attachment_limit: int = 10 * MB
    backup_attachment_limit: int = 50 * MB
    safe_ratio: float = 0.85
    encryption_key: Optional[str] = None
    discord_category: Optional[str] = "Discord Drive"
    # Download
    fetch_retries: int = 3
    read_ahead: int = 2
    stream_buffer: int = 64 * 1024
    http_timeout: float = 600.0
    # Sessions
    session_ttl: float = 3600.0
    gc_interval: float = 600.0
    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    # Data files
    data_dir: Path = field(default_factory=Path.cwd)
    history_file: str = "file_history.json"
    folders_file: str = "folders.json"
    sessions_file: str = "upload_sessions.json"
    meta_file: str = "drive_meta.json"

    @property
    def backup_enabled(self) -> bool:
        return self.backup is not None

    @property
    def encryption_enabled(self) -> bool:
        return bool(self.encryption_key)

    def summary(self) -> str:
        backup = "telegram" if self.backup_enabled else "disabled (primary-only)"
        return (
            f"chunk={self.chunk_size / MB:.2f}MB concurrency={self.upload_concurrency} "
            f"retries={self.send_retries} read_ahead={self.read_ahead} ttl={self.session_ttl / 60:.0f}min "
            f"backup={backup} mirror={self.mirror_to_backup} encryption={self.encryption_enabled} "
            f"server={self.host}:{self.port}"
        )


def _strip_comment_keys(value):
    if isinstance(value, dict):
        return {k: _strip_comment_keys(v) for k, v in value.items() if not str(k).startswith("_")}
    return value


def _clamp(value, default, lo, hi, name: str):
    if value is None:
        return default
    try:
        value = type(default)(value)
    except (TypeError, ValueError):
        log.warning(f"config value {name}={value!r} is not a number -> default {default}")
        return default
    if value < lo or value > hi:
        log.warning(f"config value {name}={value} out of range [{lo},{hi}] -> default {default}")
        return default
    return value


def _flag(value, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        log.warning(f"{path.name} not found -> using defaults")
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        log.warning(f"{path.name} parse error: {e} -> using defaults")
        return {}
    if not isinstance(raw, dict):
        log.warning(f"{path.name} is not a JSON object -> using defaults")
        return {}
    return _strip_comment_keys(raw)


def load_config(base_dir=None, env: Optional[Mapping[str, str]] = None) -> Config:
    base_dir = Path(base_dir) if base_dir is not None else Path.cwd()
    env = os.environ if env is None else env
    raw = read_config_file(base_dir / "config.json")
    upload = raw.get("upload") or {}
    download = raw.get("download") or {}
    ram = raw.get("ram") or {}
    server = raw.get("server") or {}
    data = raw.get("data") or {}
    telegram = raw.get("telegram") or {}

    def pick(section: dict, key: str, env_key: Optional[str] = None):
        if env_key and env.get(env_key) not in (None, ""):
            return env.get(env_key)
        return section.get(key)

    token = env.get("DISCORD_TOKEN") or env.get("TOKEN")
    guild = env.get("GUILD_ID")
    primary = PlatformCredentials(token, str(guild)) if token and guild else None

    tg_token = env.get("TELEGRAM_TOKEN") or env.get("TG_TOKEN")
    tg_chat = env.get("TELEGRAM_CHAT_ID") or env.get("TG_CHAT_ID")
    backup = PlatformCredentials(tg_token, str(tg_chat)) if tg_token and tg_chat else None
    if backup is None:
        log.info("Telegram credentials not set -> backup platform disabled (primary-only mode)")

    chunk_mb = _clamp(pick(upload, "client_chunk_mb", "CHUNK_SIZE_MB"), 8.0, 0.25, 50.0, "client_chunk_mb")
    safe_ratio = _clamp(upload.get("discord_safe_ratio"), 0.85, 0.5, 0.99, "discord_safe_ratio")
    attachment_mb = _clamp(upload.get("attachment_limit_mb"), 10, 1, 500, "attachment_limit_mb")
    tg_limit_mb = _clamp(telegram.get("file_limit_mb"), 50, 10, 4000, "file_limit_mb")

    encryption_key = None
    if _flag(env.get("ENABLE_ENCRYPTION"), _flag(upload.get("encryption"), False)):
        encryption_key = env.get("ENCRYPTION_KEY") or None
        if not encryption_key:
            log.warning("ENABLE_ENCRYPTION is set without ENCRYPTION_KEY -> encryption disabled")

    backup_limit = tg_limit_mb * MB if backup is not None else attachment_mb * MB
    limit = int(min(attachment_mb * MB, backup_limit) * safe_ratio)
    chunk_size = int(chunk_mb * MB)
    ceiling = max_chunk_size(limit, bool(encryption_key))
    if chunk_size > ceiling:
        log.warning(f"chunk size {chunk_size / MB:.2f}MB does not fit the {limit / MB:.2f}MB attachment limit "
                    f"-> using {ceiling / MB:.2f}MB")
        chunk_size = ceiling

    log_level = str(pick(server, "log_level", "LOG_LEVEL") or "INFO").upper()
    if log_level not in LOG_LEVELS:
        log_level = "INFO"

    data_dir = Path(pick(data, "dir", "DRIVE_DATA_DIR") or base_dir)
    if not data_dir.is_absolute():
        data_dir = base_dir / data_dir

    return Config(
        primary=primary,
        backup=backup,
        chunk_size=chunk_size,
        upload_concurrency=_clamp(pick(upload, "parallel_chunks", "UPLOAD_CONCURRENCY"), 4, 1, 16, "parallel_chunks"),
        send_retries=_clamp(pick(upload, "discord_send_retries", "MAX_RETRY_ATTEMPTS"), 3, 1, 10,
                            "discord_send_retries"),
        retry_backoff=_clamp(pick(upload, "discord_retry_base_delay_s", "RETRY_BACKOFF_FACTOR"), 2.0, 0.0, 30.0,
                             "discord_retry_base_delay_s"),
        mirror_to_backup=_flag(pick(upload, "mirror_to_backup", "MIRROR_TO_BACKUP"), True),
        attachment_limit=attachment_mb * MB,
        backup_attachment_limit=tg_limit_mb * MB,
        safe_ratio=safe_ratio,
        encryption_key=encryption_key,
        discord_category=pick(upload, "discord_category", "DISCORD_CATEGORY") or "Discord Drive",
        fetch_retries=_clamp(download.get("retry_count"), 3, 1, 10, "retry_count"),
        read_ahead=_clamp(download.get("read_ahead"), 2, 0, 16, "read_ahead"),
        stream_buffer=_clamp(download.get("stream_buffer_kb"), 64, 8, 4096, "stream_buffer_kb") * 1024,
        http_timeout=float(_clamp(download.get("http_timeout_s"), 600, 30, 3600, "http_timeout_s")),
        session_ttl=_clamp(pick(ram, "session_ttl_minutes", "SESSION_TTL_MINUTES"), 60, 1, 1440,
                           "session_ttl_minutes") * 60.0,
        gc_interval=_clamp(ram.get("gc_interval_minutes"), 10, 1, 120, "gc_interval_minutes") * 60.0,
        host=str(pick(server, "host", "DRIVE_HOST") or "0.0.0.0"),
        port=_clamp(pick(server, "port", "DRIVE_PORT"), 8000, 1, 65535, "port"),
        log_level=log_level,
        data_dir=data_dir,
        history_file=data.get("history_file") or "file_history.json",
        folders_file=data.get("folders_file") or "folders.json",
        sessions_file=data.get("sessions_file") or "upload_sessions.json",
        meta_file=data.get("meta_file") or "drive_meta.json",
    )
