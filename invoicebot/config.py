from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc


def _parse_user_ids(raw: str | None) -> tuple[int, ...]:
    if raw is None:
        return ()
    ids: list[int] = []
    for chunk in raw.split(","):
        entry = chunk.strip()
        if not entry:
            continue
        try:
            ids.append(int(entry))
        except ValueError as exc:
            raise ValueError(f"ALLOWED_USER_IDS contains a non-numeric id: {entry!r}") from exc
    return tuple(ids)


@dataclass(frozen=True)
class Settings:
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 2000
    openai_temperature: float = 0.1
    demo_mode: bool = False
    temp_storage_path: str = "./temp"
    max_image_size_mb: int = 10
    supported_formats: tuple[str, ...] = (
        "jpg",
        "jpeg",
        "png",
        "gif",
        "webp",
        "bmp",
        "tiff",
        "pdf",
    )
    image_retention_hours: int = 0
    session_timeout_minutes: int = 30
    allowed_user_ids: tuple[int, ...] = ()
    rate_limit_per_minute: int = 0
    rate_limit_per_hour: int = 0
    audit_log_dir: str = "./logs/audit"
    audit_log_max_size_mb: int = 100
    audit_log_rotation: bool = True
    metrics_path: str = "logs/metrics.jsonl"
    bank_rules_path: str | None = None
    log_level: str = "INFO"

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_image_size_mb * 1024 * 1024

    @classmethod
    def from_env(cls) -> "Settings":
        demo_mode = _parse_bool(os.getenv("DEMO_MODE"))
        api_key = os.getenv("OPENAI_API_KEY")
        if not demo_mode and (api_key is None or api_key.strip() == ""):
            raise ValueError("Missing required environment variable: OPENAI_API_KEY (or set DEMO_MODE=true)")

        temperature = _parse_float("OPENAI_TEMPERATURE", 0.1)
        if not 0.0 <= temperature <= 2.0:
            raise ValueError("OPENAI_TEMPERATURE must be between 0 and 2")

        formats_env = os.getenv("SUPPORTED_FORMATS", "jpg,jpeg,png,gif,webp,bmp,tiff,pdf")
        formats = tuple(v.strip().lower().lstrip(".") for v in formats_env.split(",") if v.strip())
        if not formats:
            raise ValueError("SUPPORTED_FORMATS must contain at least one format")

        bank_rules_path = os.getenv("BANK_RULES_PATH")
        if bank_rules_path and not Path(bank_rules_path).exists():
            raise ValueError(f"BANK_RULES_PATH not found: {bank_rules_path}")

        return cls(
            openai_api_key=api_key.strip() if api_key else None,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini").strip(),
            openai_max_tokens=_parse_int("OPENAI_MAX_TOKENS", 2000, minimum=1),
            openai_temperature=temperature,
            demo_mode=demo_mode,
            temp_storage_path=os.getenv("TEMP_STORAGE_PATH", "./temp"),
            max_image_size_mb=_parse_int("MAX_IMAGE_SIZE_MB", 10, minimum=1),
            supported_formats=formats,
            image_retention_hours=_parse_int("IMAGE_RETENTION_HOURS", 0),
            session_timeout_minutes=_parse_int("SESSION_TIMEOUT_MINUTES", 30, minimum=1),
            allowed_user_ids=_parse_user_ids(os.getenv("ALLOWED_USER_IDS")),
            rate_limit_per_minute=_parse_int("RATE_LIMIT_REQUESTS_PER_MINUTE", 0),
            rate_limit_per_hour=_parse_int("RATE_LIMIT_REQUESTS_PER_HOUR", 0),
            audit_log_dir=os.getenv("AUDIT_LOG_DIR", "./logs/audit"),
            audit_log_max_size_mb=_parse_int("AUDIT_LOG_MAX_SIZE_MB", 100, minimum=1),
            audit_log_rotation=_parse_bool(os.getenv("AUDIT_LOG_ROTATION"), default=True),
            metrics_path=os.getenv("METRICS_PATH", "logs/metrics.jsonl"),
            bank_rules_path=bank_rules_path or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def load_dotenv(path: str | Path = ".env") -> None:
    env_path = Path(path)
    if not env_path.exists():
        return
    for line in env_path.read_text(encoding="utf-8").splitlines():
        entry = line.strip()
        if not entry or entry.startswith("#") or "=" not in entry:
            continue
        key, value = entry.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        os.environ.setdefault(key, value)
