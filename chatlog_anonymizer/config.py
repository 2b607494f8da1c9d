import logging
import os
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from .exceptions import ControlPlaneError
from .models import CamelModel

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_list(name: str) -> List[str]:
    return [x.strip() for x in os.getenv(name, "").split(",") if x.strip()]


class Settings(BaseModel):
    """Process-level settings, read from the environment at startup."""
    app_name: str = "Chat Log Anonymizer Worker"
    host: str = "0.0.0.0"
    port: int = 8020
    log_level: str = "INFO"
    uploads_dir: str = "/uploads"
    api_url: str = "http://api:3001"
    analyzer_url: str = "http://presidio-analyzer:5001"
    anonymizer_url: str = "http://presidio-anonymizer:5002"
    language: str = "en"
    presidio_entities: List[str] = []
    presidio_score_threshold: Optional[float] = None
    target_url: str = ""  # legacy single target
    target_auth_header: str = ""
    presidio_timeout_ms: int = 30000
    delivery_timeout_ms: int = 15000
    control_plane_timeout_ms: int = 10000
    analysis_timeout_ms: int = 30000
    poll_interval_ms: int = 5000
    heartbeat_interval_ms: int = 15000
    stability_threshold_ms: int = 2000
    localhost_alias: str = "host.docker.internal"  # empty disables rewriting
    audit_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        threshold = os.getenv("PRESIDIO_SCORE_THRESHOLD")
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 8020),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            uploads_dir=os.getenv("UPLOADS_DIR", "/uploads"),
            api_url=os.getenv("API_URL", "http://api:3001"),
            analyzer_url=os.getenv("PRESIDIO_ANALYZER_URL", "http://presidio-analyzer:5001"),
            anonymizer_url=os.getenv("PRESIDIO_ANONYMIZER_URL", "http://presidio-anonymizer:5002"),
            language=os.getenv("LANGUAGE", "en"),
            presidio_entities=_env_list("PRESIDIO_ENTITIES"),
            presidio_score_threshold=float(threshold) if threshold else None,
            target_url=os.getenv("TARGET_URL", ""),
            target_auth_header=os.getenv("TARGET_AUTH_HEADER", ""),
            presidio_timeout_ms=_env_int("PRESIDIO_TIMEOUT_MS", 30000),
            delivery_timeout_ms=_env_int("DELIVERY_TIMEOUT_MS", 15000),
            control_plane_timeout_ms=_env_int("CONTROL_PLANE_TIMEOUT_MS", 10000),
            analysis_timeout_ms=_env_int("ANALYSIS_TIMEOUT_MS", 30000),
            poll_interval_ms=_env_int("POLL_INTERVAL_MS", 5000),
            heartbeat_interval_ms=_env_int("WORKER_HEARTBEAT_INTERVAL_MS", 15000),
            stability_threshold_ms=_env_int("STABILITY_THRESHOLD_MS", 2000),
            localhost_alias=os.getenv("LOCALHOST_ALIAS", "host.docker.internal"),
            audit_path=os.getenv("AUDIT_PATH") or None,
        )


class RuntimeConfig(CamelModel):
    """Run-time settings owned by the control plane (`GET /api/config`)."""
    max_file_size_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    accepted_extensions: List[str] = [".json"]
    delete_after_success: bool = False
    delete_after_failure: bool = False
    anonymization_operator: Literal["replace", "redact", "hash"] = "replace"
    analysis_service_url: Optional[str] = None
    analysis_service_api_key: Optional[str] = None
    analysis_service_sentiment_enabled: bool = True
    analysis_service_toxicity_enabled: bool = True
    analysis_service_language_code: str = "en"
    analysis_service_model: Optional[str] = None
    analysis_service_channel: Optional[str] = None
    analysis_service_tags: Optional[List[str]] = None

    @property
    def analysis_enabled(self) -> bool:
        return bool(self.analysis_service_url and self.analysis_service_api_key)


class ConfigProvider:
    """Fetches RuntimeConfig per file; falls back to safe defaults."""

    def __init__(self, control_plane):
        self.control_plane = control_plane

    async def get(self) -> RuntimeConfig:
        try:
            data = await self.control_plane.get_config()
            return RuntimeConfig.model_validate(data or {})
        except ControlPlaneError as e:
            logger.warning(f"config_fetch_failed: {e}; using defaults")
        except ValidationError as e:
            logger.warning(f"config_invalid: {e.error_count()} field errors; using defaults")
        return RuntimeConfig()
