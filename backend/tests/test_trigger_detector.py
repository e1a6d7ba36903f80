"""Tests for trigger detection from version control, dispatch markers and webhooks."""

import os
import time

import pytest

from pipewatch.exceptions import GitCommandError
from pipewatch.services.scheduler import Scheduler
from pipewatch.services.trigger_detector import TriggerDetector


class FakeGit:
    """Stands in for the git subprocess; HEAD is whatever ``head`` is set to."""

    def __init__(self, head: str = "a" * 40):
        self.head = head
        self.fail = False

    async def __call__(self, *args: str) -> str:
        if self.fail:
            raise GitCommandError("git rev-parse HEAD failed: not a git repository", returncode=128)
        if args[:2] == ("rev-parse", "HEAD"):
            return self.head + "\n"
        if args[0] == "show":
            return "Ada Lovelace|ada@example.com|2025-01-01T10:00:00+00:00|Publish new post\n"
        if args[0] == "branch":
            return "main\n"
        raise AssertionError(f"unexpected git call {args}")


@pytest.mark.asyncio
class TestGitTrigger:
    async def test_new_commit_opens_git_run(self, engine):
        git = FakeGit()
        detector = TriggerDetector(engine, git_runner=git)
        await detector.initialize()

        assert await detector.check_git_trigger() is None

        git.head = "b" * 40
        run_id = await detector.check_git_trigger()

        run = await engine.get_pipeline_run(run_id)
        assert run.trigger.type == "git"
        assert run.trigger.source == "commit"
        meta = run.trigger.metadata
        assert meta["commit_hash"] == "b" * 40
        assert meta["previous_commit"] == "a" * 40
        assert meta["author"] == "Ada Lovelace"
        assert meta["branch"] == "main"
        stage = run.get_stage("trigger_detected")
        assert stage.status == "completed"
        assert stage.data["trigger_type"] == "git"

        assert await detector.check_git_trigger() is None

    async def test_first_check_without_baseline_does_not_fire(self, engine, store):
        detector = TriggerDetector(engine, git_runner=FakeGit())
        assert await detector.check_git_trigger() is None
        assert await engine.get_recent_pipeline_runs() == []

    async def test_missing_repository_is_tolerated_at_startup(self, engine):
        git = FakeGit()
        git.fail = True
        detector = TriggerDetector(engine, git_runner=git)

        await detector.initialize()

        with pytest.raises(GitCommandError):
            await detector.check_git_trigger()


@pytest.mark.asyncio
class TestMarkerTrigger:
    async def test_fresh_marker_fires_once(self, engine, tmp_path):
        marker = tmp_path / ".deploy-trigger"
        marker.write_text("go")
        detector = TriggerDetector(engine, repo_path=str(tmp_path), marker_files=[".deploy-trigger", "absent"])

        run_id = await detector.check_manual_markers()

        run = await engine.get_pipeline_run(run_id)
        assert run.trigger.type == "manual"
        assert run.trigger.source == "workflow_dispatch"
        assert run.trigger.metadata["marker_file"] == ".deploy-trigger"
        assert await detector.check_manual_markers() is None

        later = time.time() + 5
        os.utime(marker, (later, later))
        assert await detector.check_manual_markers() is not None

    async def test_stale_marker_ignored(self, engine, tmp_path):
        marker = tmp_path / ".deploy-trigger"
        marker.write_text("go")
        old = time.time() - 3600
        os.utime(marker, (old, old))
        detector = TriggerDetector(
            engine, repo_path=str(tmp_path), marker_files=[".deploy-trigger"], marker_window_seconds=300
        )

        assert await detector.check_manual_markers() is None


@pytest.mark.asyncio
class TestWebhookListeners:
    async def test_listener_receives_new_run(self, engine):
        detector = TriggerDetector(engine)
        seen = []

        async def listener(run_id, payload, headers):
            seen.append((run_id, payload, headers))

        detector.register_webhook_listener("content-platform", listener)
        run_id = await detector.process_webhook_trigger(
            "content-platform", {"event": "campaign.sent", "token": "s3cret"}, {"User-Agent": "platform/1.0"}
        )

        assert seen == [(run_id, {"event": "campaign.sent", "token": "s3cret"}, {"user-agent": "platform/1.0"})]
        run = await engine.get_pipeline_run(run_id)
        assert run.trigger.type == "webhook"
        assert run.trigger.metadata["payload"]["token"] == "[REDACTED]"
        assert run.trigger.metadata["user_agent"] == "platform/1.0"
        assert detector.registered_sources == ["content-platform"]

    async def test_unregistered_source(self, engine):
        detector = TriggerDetector(engine)
        detector.register_webhook_listener("ci", lambda *a: None)
        detector.unregister_webhook_listener("ci")

        assert await detector.process_webhook_trigger("ci", {}, {}) is None
        assert detector.registered_sources == []


@pytest.mark.asyncio
async def test_start_schedules_enabled_monitors(engine, tmp_path):
    scheduler = Scheduler()
    detector = TriggerDetector(
        engine, repo_path=str(tmp_path), marker_files=[".deploy-trigger"], git_runner=FakeGit()
    )

    await detector.start(scheduler, git_interval=3600, marker_interval=3600)
    assert set(scheduler.jobs) == {"trigger-git", "trigger-markers"}
    await scheduler.cancel_all()

    await detector.start(scheduler, enable_git=False, enable_markers=False)
    assert scheduler.jobs == {}
