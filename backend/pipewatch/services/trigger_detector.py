"""
Trigger Detector: turns external signals into Engine-created pipeline runs.

Signals:
- version-control polling: HEAD moved since the last check → ``git`` trigger
- dispatch markers: a sentinel file modified within the marker window → ``manual`` trigger
- registered webhook listeners: ``process_webhook_trigger`` → ``webhook`` trigger

A failed detection pass is logged by the scheduler and retried on the next tick.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

from pipewatch.exceptions import GitCommandError, PipewatchError
from pipewatch.services.engine import PipelineEngine
from pipewatch.services.sanitize import sanitize, sanitize_headers
from pipewatch.services.scheduler import Scheduler
from pipewatch.timeutil import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

WebhookHandler = Callable[[str, Any, dict[str, str]], Awaitable[Any]]
GitRunner = Callable[..., Awaitable[str]]


class TriggerDetector:
    def __init__(
        self,
        engine: PipelineEngine,
        *,
        repo_path: str = ".",
        marker_files: list[str] | tuple[str, ...] = (),
        marker_window_seconds: int = 300,
        git_runner: GitRunner | None = None,
    ):
        self.engine = engine
        self.repo_path = Path(repo_path)
        self.marker_files = list(marker_files)
        self.marker_window_seconds = marker_window_seconds
        self._git_runner = git_runner or self._run_git
        self._last_commit: str | None = None
        self._seen_markers: dict[str, float] = {}
        self._listeners: dict[str, WebhookHandler] = {}

    # ── Run creation ─────────────────────────────────────────────────────────

    async def detect_trigger(
        self,
        trigger_type: str,
        source: str,
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> str:
        """Open a run for a detected trigger and record the ``trigger_detected`` stage."""
        detected_at = utcnow()
        metadata = metadata or {}
        run_id = await self.engine.create_pipeline_run({
            "type": trigger_type,
            "source": source,
            "timestamp": timestamp or detected_at,
            "metadata": metadata,
        })
        try:
            await self.engine.update_pipeline_stage(run_id, "trigger_detected", "completed", {
                "trigger_type": trigger_type,
                "trigger_source": source,
                "detection_time": detected_at.isoformat(),
                "metadata": metadata,
            })
        except PipewatchError as exc:
            logger.warning("Could not record trigger detection for %s: %s", run_id, exc)

        logger.info("Trigger detected: %s/%s -> %s", trigger_type, source, run_id)
        return run_id

    # ── Version control ──────────────────────────────────────────────────────

    async def _run_git(self, *args: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            cwd=str(self.repo_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise GitCommandError(
                f"git {' '.join(args)} failed: {stderr.decode(errors='replace').strip()}",
                returncode=proc.returncode,
            )
        return stdout.decode(errors="replace")

    async def initialize(self) -> None:
        """Record the current HEAD as the baseline so the first poll does not fire."""
        try:
            self._last_commit = (await self._git_runner("rev-parse", "HEAD")).strip()
            logger.info("Git baseline at %s", self._last_commit[:12])
        except (GitCommandError, OSError) as exc:
            logger.warning("Git baseline unavailable: %s", exc)

    async def _commit_info(self, commit: str) -> dict[str, Any]:
        raw = (await self._git_runner("show", "--no-patch", "--format=%an|%ae|%cI|%s", commit)).strip()
        author, email, committed_at, message = (raw.split("|", 3) + ["", "", "", ""])[:4]
        branch = (await self._git_runner("branch", "--show-current")).strip()
        parsed = parse_timestamp(committed_at)
        return {
            "author": author,
            "email": email,
            "message": message,
            "timestamp": parsed.isoformat() if parsed else committed_at,
            "branch": branch or None,
        }

    async def check_git_trigger(self) -> str | None:
        current = (await self._git_runner("rev-parse", "HEAD")).strip()
        if self._last_commit is None:
            self._last_commit = current
            return None
        if current == self._last_commit:
            return None

        previous = self._last_commit
        self._last_commit = current
        info = await self._commit_info(current)
        return await self.detect_trigger("git", "commit", {
            "commit_hash": current,
            "previous_commit": previous,
            **info,
        })

    # ── Dispatch markers ─────────────────────────────────────────────────────

    async def check_manual_markers(self, now: datetime | None = None) -> str | None:
        """Fire one ``manual`` trigger for freshly modified marker files not seen before."""
        now_ts = (now or utcnow()).timestamp()
        fresh: list[tuple[str, float]] = []
        for rel in self.marker_files:
            try:
                mtime = (self.repo_path / rel).stat().st_mtime
            except FileNotFoundError:
                continue
            if now_ts - mtime > self.marker_window_seconds:
                continue
            if self._seen_markers.get(rel) == mtime:
                continue
            fresh.append((rel, mtime))

        if not fresh:
            return None
        for rel, mtime in fresh:
            self._seen_markers[rel] = mtime

        rel, mtime = fresh[0]
        return await self.detect_trigger("manual", "workflow_dispatch", {
            "marker_file": rel,
            "marker_files": [r for r, _ in fresh],
            "modified_at": datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat(),
        })

    # ── Webhook listeners ────────────────────────────────────────────────────

    def register_webhook_listener(self, source: str, handler: WebhookHandler) -> None:
        self._listeners[source] = handler
        logger.debug("Registered webhook listener for %s", source)

    def unregister_webhook_listener(self, source: str) -> None:
        self._listeners.pop(source, None)

    @property
    def registered_sources(self) -> list[str]:
        return sorted(self._listeners)

    async def process_webhook_trigger(
        self, source: str, payload: Any, headers: dict[str, str]
    ) -> str | None:
        """Open a ``webhook`` run for ``source`` and hand it to the registered listener.

        Returns None when no listener is registered for the source.
        """
        handler = self._listeners.get(source)
        if handler is None:
            logger.warning("No webhook listener registered for source %s", source)
            return None

        headers = {k.lower(): v for k, v in headers.items()}
        run_id = await self.detect_trigger("webhook", source, {
            "webhook_type": source,
            "payload": sanitize(payload),
            "headers": sanitize_headers(headers),
            "user_agent": headers.get("user-agent"),
            "content_type": headers.get("content-type"),
        })
        await handler(run_id, payload, headers)
        return run_id

    # ── Scheduling ───────────────────────────────────────────────────────────

    async def start(
        self,
        scheduler: Scheduler,
        *,
        git_interval: float = 30.0,
        marker_interval: float = 30.0,
        enable_git: bool = True,
        enable_markers: bool = True,
    ) -> None:
        if enable_git:
            await self.initialize()
            scheduler.every("trigger-git", git_interval, self.check_git_trigger)
        if enable_markers and self.marker_files:
            scheduler.every("trigger-markers", marker_interval, self.check_manual_markers)
