"""
File processing pipeline.

One detected file moves through:
  detected -> queued -> processing -> anonymized -> (analysis) -> delivering
  -> delivered | failed, optionally -> deleted.
Only hashes, counts, codes and durations leave this module.
"""

import asyncio
import hashlib
import json
import logging
import os
import time
from collections import Counter
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from .analysis import AnalysisForwarder
from .config import ConfigProvider, RuntimeConfig
from .delivery import DeliveryEngine
from .exceptions import PresidioError
from .models import (
    AnonymizationResult,
    AnonymizedMessage,
    AuditEventType,
    AuditLevel,
    ChatLog,
    ErrorCode,
    RunStatus,
)
from .presidio_client import PresidioClient, build_operators
from .recorder import RunHandle, RunRecorder

logger = logging.getLogger(__name__)

SAFE_MESSAGES = {
    ErrorCode.read_error: "Could not read file",
    ErrorCode.invalid_schema: "Invalid chat log schema",
    ErrorCode.presidio_error: "PII detection service error",
}


def hash_file_name(file_name: str) -> str:
    """Hex SHA-256 of a file's base name. Never the content."""
    return hashlib.sha256(file_name.encode("utf-8")).hexdigest()


def now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class FileProcessor:
    """
    Orchestrates the pipeline for single files.

    Owns the set of paths currently being processed; `handle()` ignores a
    path that is already in flight.
    """

    def __init__(
        self,
        config_provider: ConfigProvider,
        presidio: PresidioClient,
        delivery: DeliveryEngine,
        recorder: RunRecorder,
        analysis: Optional[AnalysisForwarder] = None,
        language: str = "en",
        entities: Optional[List[str]] = None,
        score_threshold: Optional[float] = None,
    ):
        self.config_provider = config_provider
        self.presidio = presidio
        self.delivery = delivery
        self.recorder = recorder
        self.analysis = analysis
        self.language = language
        self.entities = entities
        self.score_threshold = score_threshold
        self.in_flight: Set[str] = set()

    async def handle(self, path: str) -> None:
        if path in self.in_flight:
            return
        self.in_flight.add(path)
        try:
            await self.process(path)
        except Exception as e:
            logger.error(f"unhandled_error: {type(e).__name__}")
        finally:
            self.in_flight.discard(path)

    async def process(self, path: str) -> Optional[RunStatus]:
        """Run the pipeline for one file. Returns the final run status, or None if skipped."""
        cfg = await self.config_provider.get()
        file_path = Path(path)

        ext = file_path.suffix.lower()
        if ext not in [e.lower() for e in cfg.accepted_extensions]:
            logger.info(f"file_skipped: reason=extension ext={ext or 'none'}")
            return None
        try:
            byte_size = (await asyncio.to_thread(file_path.stat)).st_size
        except OSError:
            # Removed before we got to it
            return None
        if byte_size > cfg.max_file_size_bytes:
            logger.warning(f"file_skipped: reason=too_large byteSize={byte_size}")
            return None

        file_hash = hash_file_name(file_path.name)
        logger.info(f"file_processing: hash={file_hash} byteSize={byte_size}")

        run = await self.recorder.start_run(f"sha256:{file_hash}", byte_size)
        self.recorder.emit(run, AuditEventType.file_detected, meta={"byteSize": byte_size})

        await self.recorder.transition(run, RunStatus.processing)
        self.recorder.emit(run, AuditEventType.anonymize_started)

        try:
            raw = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return await self._fail(run, file_path, cfg, ErrorCode.read_error.value, SAFE_MESSAGES[ErrorCode.read_error])

        try:
            chat_log = ChatLog.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            logger.warning(f"invalid_schema: hash={file_hash}")
            return await self._fail(run, file_path, cfg, ErrorCode.invalid_schema.value, SAFE_MESSAGES[ErrorCode.invalid_schema])

        try:
            messages, stats = await self.anonymize_messages(chat_log, cfg.anonymization_operator)
        except PresidioError as e:
            logger.error(f"presidio_error: hash={file_hash} error={type(e).__name__} status={getattr(e, 'status_code', None)}")
            return await self._fail(run, file_path, cfg, ErrorCode.presidio_error.value, SAFE_MESSAGES[ErrorCode.presidio_error])

        result = AnonymizationResult(
            source_file_hash=file_hash,
            byte_size=byte_size,
            processed_at=now_iso(),
            messages=messages,
            metadata=chat_log.metadata,
        )

        await self.recorder.transition(run, RunStatus.anonymized, presidio_stats=stats)
        self.recorder.emit(run, AuditEventType.anonymize_succeeded, meta={"entityCount": sum(stats.values())})

        if self.analysis is not None:
            await self.analysis.forward(result, cfg)

        return await self._deliver(run, file_path, cfg, result)

    async def anonymize_messages(self, chat_log: ChatLog, operator: str) -> Tuple[List[AnonymizedMessage], Dict[str, int]]:
        """Anonymize messages in order; returns messages and entity-type counts."""
        operators = build_operators(operator)
        stats: Counter = Counter()
        out = []
        for msg in chat_log.messages:
            findings = await self.presidio.analyze(msg.content, self.language, self.entities, self.score_threshold)
            content = msg.content
            if findings:
                content = await self.presidio.anonymize(msg.content, findings, operators)
                stats.update(f.entity_type for f in findings)
            out.append(AnonymizedMessage(
                id=msg.id,
                role=msg.role,
                content=content,
                timestamp=msg.timestamp,
                entities_found=len(findings),
            ))
        return out, dict(stats)

    async def _deliver(self, run: RunHandle, file_path: Path, cfg: RuntimeConfig, result: AnonymizationResult) -> RunStatus:
        self.recorder.emit(run, AuditEventType.delivery_started)
        targets = await self.delivery.resolve_targets()
        if not targets:
            logger.warning(f"delivery_skipped: no targets hash={result.source_file_hash}")

        outcome = await self.delivery.deliver_all(targets, result)
        counts = dict(
            delivery_target_count=outcome.target_count,
            delivery_success_count=outcome.success_count,
            delivery_failure_count=outcome.failure_count,
            delivery_duration_ms=outcome.duration_ms,
        )

        if not outcome.ok:
            for attempt in outcome.attempts:
                if attempt.ok:
                    continue
                meta = {"targetIndex": attempt.index, "errorCode": attempt.error.code}
                if attempt.status_code is not None:
                    meta["statusCode"] = attempt.status_code
                self.recorder.emit(run, AuditEventType.delivery_failed, AuditLevel.error, meta)
            first = outcome.first_error
            message = f"{first.error.code}: {first.error.safe_message}"
            if outcome.target_count > 1:
                message = f"{message} (target {first.index + 1} of {outcome.target_count})"
            return await self._fail(
                run, file_path, cfg, ErrorCode.delivery_error.value, message,
                delivery_status_code=outcome.status_code, **counts,
            )

        await self.recorder.transition(
            run, RunStatus.delivered,
            delivery_status_code=outcome.status_code,
            duration_ms=run.elapsed_ms,
            **counts,
        )
        self.recorder.emit(run, AuditEventType.delivery_succeeded, meta={
            "targetCount": outcome.target_count,
            "durationMs": outcome.duration_ms,
        })
        logger.info(f"delivered: hash={result.source_file_hash} targets={outcome.target_count}")

        if cfg.delete_after_success and await self._delete(file_path):
            await self.recorder.transition(run, RunStatus.deleted)
            self.recorder.emit(run, AuditEventType.cleanup_deleted)
        return run.status

    async def _fail(self, run: RunHandle, file_path: Path, cfg: RuntimeConfig, code: str, message: str, **fields) -> RunStatus:
        await self.recorder.transition(
            run, RunStatus.failed,
            error_code=code,
            error_message_safe=message,
            duration_ms=run.elapsed_ms,
            **fields,
        )
        self.recorder.emit(run, AuditEventType.run_failed, AuditLevel.error, {"errorCode": code})
        if cfg.delete_after_failure and await self._delete(file_path):
            self.recorder.emit(run, AuditEventType.cleanup_deleted, meta={"afterFailure": True})
        return run.status

    async def _delete(self, file_path: Path) -> bool:
        try:
            await asyncio.to_thread(os.unlink, file_path)
            return True
        except OSError as e:
            logger.warning(f"cleanup_failed: {type(e).__name__}")
            return False
