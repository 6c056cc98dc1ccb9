"""Settings loader: YAML file with ${VAR} / ${VAR:-default} expansion."""

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

DATABASE_URL_ENV = "ALLOTMENT_DATABASE_URL"


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    database_url: str = "sqlite:///allotment.db"
    lock_ttl_seconds: int = Field(default=900, gt=0)
    log_level: str = "INFO"
    log_path: Optional[str] = None
    default_intake: int = Field(default=1, ge=0)


def _expand_str(value: str) -> str:
    def replacer(match: re.Match) -> str:
        token = match.group(1)
        if ":-" in token:
            key, default = token.split(":-", 1)
            actual = os.getenv(key, "")
            return actual if actual.strip() else default
        actual = os.getenv(token, "")
        if not actual.strip():
            raise ValueError(f"missing environment variable: {token}")
        return actual

    return _VAR_PATTERN.sub(replacer, value)


def _expand_payload(value: Any) -> Any:
    if isinstance(value, str):
        return _expand_str(value)
    if isinstance(value, list):
        return [_expand_payload(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _expand_payload(item) for key, item in value.items()}
    return value


def load_settings(path: Optional[Path] = None) -> Settings:
    data = {}
    if path is not None:
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"invalid settings file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"settings file {path} must contain a mapping")
        data = _expand_payload(data)

    override = os.getenv(DATABASE_URL_ENV, "").strip()
    if override:
        data["database_url"] = override

    try:
        return Settings(**data)
    except ValidationError as e:
        raise ValueError(str(e)) from e
