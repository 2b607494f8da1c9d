import logging
from typing import Optional

import httpx

from .analysis import AnalysisForwarder
from .config import ConfigProvider, Settings
from .control_plane import ControlPlaneClient
from .delivery import DeliveryEngine
from .presidio_client import PresidioClient
from .processor import FileProcessor
from .recorder import AuditLogger, RunRecorder
from .watcher import FolderWatcher

logger = logging.getLogger(__name__)


class Worker:
    """Builds every component once and owns their shared HTTP client."""

    def __init__(self, settings: Settings, http: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.http = http or httpx.AsyncClient()
        self.control_plane = ControlPlaneClient(self.http, settings.api_url, settings.control_plane_timeout_ms)
        self.config_provider = ConfigProvider(self.control_plane)
        self.presidio = PresidioClient(
            self.http, settings.analyzer_url, settings.anonymizer_url, settings.presidio_timeout_ms
        )
        self.delivery = DeliveryEngine(
            self.http,
            control_plane=self.control_plane,
            localhost_alias=settings.localhost_alias,
            legacy_url=settings.target_url,
            legacy_auth_header=settings.target_auth_header,
            legacy_timeout_ms=settings.delivery_timeout_ms,
        )
        audit_logger = AuditLogger(settings.audit_path) if settings.audit_path else None
        self.recorder = RunRecorder(self.control_plane, audit_logger)
        self.processor = FileProcessor(
            self.config_provider,
            self.presidio,
            self.delivery,
            self.recorder,
            analysis=AnalysisForwarder(self.http, settings.analysis_timeout_ms),
            language=settings.language,
            entities=settings.presidio_entities or None,
            score_threshold=settings.presidio_score_threshold,
        )
        self.watcher = FolderWatcher(
            self.processor,
            self.recorder,
            settings.uploads_dir,
            poll_interval_ms=settings.poll_interval_ms,
            heartbeat_interval_ms=settings.heartbeat_interval_ms,
            stability_ms=settings.stability_threshold_ms,
        )

    def start(self) -> None:
        self.watcher.start()

    async def stop(self) -> None:
        await self.watcher.stop()
        await self.recorder.drain()
        await self.http.aclose()
