from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "defaults.yaml"

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "ENCRYPTION_KEY": "security.encryption_key",
    "ADMIN_API_KEY": "security.admin_api_key",
    "DOWNLOAD_TOKEN_TTL_SECONDS": "security.download_token_ttl_seconds",
    "DATABASE_URL": "database.path",
    "STORAGE_ROOT": "storage.root",
    "UPLOAD_DIR": "storage.upload_dir",
    "OUTPUT_DIR": "storage.output_dir",
    "MAX_UPLOAD_BYTES": "storage.max_upload_bytes",
    "ALLOWED_MIME_TYPES": "storage.allowed_mime_types",
    "FILE_CLEANUP_INTERVAL_SECONDS": "storage.cleanup_interval_seconds",
    "ENCRYPT_UPLOADS": "storage.encrypt_uploads",
    "JOB_TIMEOUT_SECONDS": "jobs.operation_timeout_seconds",
    "GOOGLE_CLIENT_ID": "auth.providers.google.client_id",
    "GOOGLE_CLIENT_SECRET": "auth.providers.google.client_secret",
    "S3_BUCKET_NAME": "cloud.s3_bucket",
    "TESSERACT_CMD": "ocr.tesseract_cmd",
    "LOG_LEVEL": "app.log_level",
}

INTEGER_KEYS = {
    "security.download_token_ttl_seconds",
    "storage.max_upload_bytes",
    "storage.cleanup_interval_seconds",
    "jobs.operation_timeout_seconds",
}

BOOLEAN_KEYS = {"storage.encrypt_uploads"}

RATE_LIMIT_PREFIX = "RATE_LIMIT_"


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _coerce(key: str, raw: str) -> Any:
    if key in BOOLEAN_KEYS:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if key in INTEGER_KEYS:
        return int(raw)
    if key == "storage.allowed_mime_types":
        return [item.strip() for item in raw.split(",") if item.strip()]
    if key == "database.path":
        return raw.removeprefix("file:")
    return raw


def _parse_rate_limit(raw: str) -> Dict[str, int]:
    """Parse ``"<limit>/<window_seconds>"`` into a rate limit block."""
    limit, _, window = raw.partition("/")
    return {"limit": int(limit), "window_seconds": int(window or 60)}


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect configuration overrides from environment variables."""
    environ = os.environ if environ is None else environ
    dotted: Dict[str, Any] = {}
    for env_name, key in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            dotted[key] = _coerce(key, value)

    for env_name, value in environ.items():
        if env_name.startswith(RATE_LIMIT_PREFIX) and value:
            route = env_name[len(RATE_LIMIT_PREFIX):].lower()
            dotted[f"rate_limits.{route}"] = _parse_rate_limit(value)

    overrides = OmegaConf.create()
    for key, value in dotted.items():
        OmegaConf.update(overrides, key, value, force_add=True)
    return OmegaConf.to_container(overrides)  # type: ignore[return-value]


def load_settings(overrides: Optional[Dict[str, Any]] = None, use_env: bool = True) -> DictConfig:
    """
    Build the runtime settings: packaged defaults, then environment, then explicit overrides.

    Rate limit groups may be added through the environment, so that subtree
    is left open; everything else rejects unknown keys.
    """
    if use_env:
        load_dotenv()

    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)
    OmegaConf.set_struct(base.rate_limits, False)

    layers = [base]
    if use_env:
        layers.append(OmegaConf.create(env_overrides()))
    if overrides:
        layers.append(OmegaConf.create(overrides))

    merged = DictConfig(OmegaConf.merge(*layers))
    OmegaConf.set_readonly(merged, True)
    return merged


def configured_oauth_providers(settings: DictConfig) -> list[str]:
    """Names of identity providers that have both client id and secret set."""
    providers = OmegaConf.to_container(settings.auth.providers, resolve=True) or {}
    return sorted(
        name
        for name, creds in providers.items()  # type: ignore[union-attr]
        if creds and creds.get("client_id") and creds.get("client_secret")
    )
