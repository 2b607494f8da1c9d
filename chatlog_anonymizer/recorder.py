import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

import orjson

from .exceptions import ControlPlaneError, InvalidTransitionError
from .models import (
    ALLOWED_TRANSITIONS,
    AuditEvent,
    AuditEventType,
    AuditLevel,
    RunCreate,
    RunStatus,
    RunUpdate,
)
from .pii_guard import contains_pii

logger = logging.getLogger(__name__)

SAFE_CODE = re.compile(r"^[A-Za-z0-9_.:\-]{0,64}$")


def safe_meta(meta: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Keep only numbers, booleans and short identifier-like string codes."""
    if not meta:
        return None
    clean = {}
    for key, value in meta.items():
        if isinstance(value, (bool, int, float)):
            clean[key] = value
        elif isinstance(value, str) and SAFE_CODE.match(value) and not contains_pii(value):
            clean[key] = value
        else:
            logger.debug(f"audit_meta_dropped: key={key}")
    return clean or None


class AuditLogger:
    """Append-only local JSONL mirror of audit events."""

    def __init__(self, path: str):
        self.path = path
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def write(self, record: Dict[str, Any]):
        line = orjson.dumps(record).decode("utf-8")
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")


@dataclass
class RunHandle:
    """Local view of one processing run. `run_id` is None when creation failed."""
    run_id: Optional[str]
    status: RunStatus = RunStatus.queued
    started: float = 0.0

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class RunRecorder:
    """
    Creates and mutates processing runs and appends audit events.

    Run writes are awaited but never raise: a missing run id simply turns
    later updates into no-ops. Audit events are dispatched as background
    tasks whose failures are logged and dropped.
    """

    def __init__(self, control_plane, audit_logger: Optional[AuditLogger] = None):
        self.control_plane = control_plane
        self.audit_logger = audit_logger
        self._pending: Set[asyncio.Task] = set()
        self._mirror_lock: Optional[asyncio.Lock] = None

    async def start_run(self, source_file_name: str, source_file_size: int) -> RunHandle:
        handle = RunHandle(run_id=None, started=time.monotonic())
        try:
            handle.run_id = await self.control_plane.create_run(RunCreate(
                source_file_name=source_file_name,
                source_file_size=source_file_size,
            ))
        except ControlPlaneError as e:
            logger.error(f"run_create_failed: {e}")
        return handle

    async def transition(self, handle: RunHandle, status: RunStatus, **fields) -> None:
        """
        Move the run to `status` and persist `fields` alongside it.

        Raises:
            InvalidTransitionError: if the move is not allowed from the
                current status (checked even without a run id)
        """
        if status not in ALLOWED_TRANSITIONS[handle.status]:
            raise InvalidTransitionError(handle.status, status)
        handle.status = status
        await self.update(handle, status=status, **fields)

    async def update(self, handle: RunHandle, **fields) -> None:
        if handle.run_id is None:
            return
        try:
            await self.control_plane.update_run(handle.run_id, RunUpdate(**fields))
        except ControlPlaneError as e:
            logger.error(f"run_update_failed: run={handle.run_id} {e}")

    def emit(
        self,
        handle: Optional[RunHandle],
        event_type: AuditEventType,
        level: AuditLevel = AuditLevel.info,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Fire-and-forget audit event."""
        event = AuditEvent(
            run_id=handle.run_id if handle else None,
            event_type=event_type,
            level=level,
            meta=safe_meta(meta),
        )
        record = None
        if self.audit_logger:
            record = event.model_dump(mode="json", by_alias=True, exclude_none=True)
            record["timestamp"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        task = asyncio.get_running_loop().create_task(self._append(event, record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _mirror(self, record: Dict[str, Any]) -> None:
        # Serialized so the file keeps emit order
        if self._mirror_lock is None:
            self._mirror_lock = asyncio.Lock()
        async with self._mirror_lock:
            try:
                await asyncio.to_thread(self.audit_logger.write, record)
            except OSError as e:
                logger.warning(f"audit_mirror_failed: {type(e).__name__}")

    async def _append(self, event: AuditEvent, record: Optional[Dict[str, Any]] = None) -> None:
        if record is not None:
            await self._mirror(record)
        try:
            await self.control_plane.append_log(event)
        except Exception as e:
            logger.warning(f"audit_append_failed: event={event.event_type.value} {type(e).__name__}")

    async def drain(self) -> None:
        """Wait for in-flight audit appends (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
