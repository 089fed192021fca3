"""Controllers for sync, quota and embedding CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from practice_sync.guardrails import Blocked, GuardrailLedger
from practice_sync.ingestion.sources.static import StaticProviderSource
from practice_sync.jobs.controllers import load_settings, open_database, open_pipeline
from practice_sync.jobs.models import JobStatus
from practice_sync.sessions.models import SessionView
from practice_sync.sessions.tracker import SyncSessionTracker
from practice_sync.storage.common import day_start, utc_now


@dataclass(slots=True)
class SyncImportCommand:
    """CLI inputs for a bulk import from a JSONL export."""

    db_path: Path | None
    user_id: str
    provider: str
    file_path: Path
    run_jobs: bool


@dataclass(slots=True)
class SyncStatusCommand:
    db_path: Path | None
    user_id: str
    session_id: str | None
    service: str | None


@dataclass(slots=True)
class QuotaShowCommand:
    db_path: Path | None
    user_id: str


@dataclass(slots=True)
class EmbedSearchCommand:
    """CLI inputs for a similarity search."""

    db_path: Path | None
    user_id: str
    query: str
    owner_type: str | None
    limit: int
    threshold: float | None


class IngestionCliController:
    """Coordinates sync, quota and embedding command execution."""

    def sync_import(self, command: SyncImportCommand) -> list[str]:
        settings = load_settings(command.db_path)
        source = StaticProviderSource.from_jsonl(command.provider, command.file_path)
        with open_pipeline(settings) as pipeline:
            pipeline.register_source(source)
            result = pipeline.sync(command.user_id, command.provider, run_jobs=command.run_jobs)
            session = pipeline.tracker.get_session(result.session_id)

        lines = [
            "Sync completed: "
            f"session_id={result.session_id} batch_id={result.batch_id} "
            f"imported={result.imported_items} failed={result.failed_items}",
        ]
        if result.jobs is not None:
            lines.append(
                "Jobs: "
                f"done={result.jobs.get(JobStatus.DONE)} "
                f"error={result.jobs.get(JobStatus.ERROR)} "
                f"queued={result.jobs.get(JobStatus.QUEUED)}",
            )
        if session is not None:
            lines.extend(_session_lines(session))
        return lines

    def sync_status(self, command: SyncStatusCommand) -> list[str]:
        settings = load_settings(command.db_path)
        with open_database(settings) as database:
            tracker = SyncSessionTracker(database)
            if command.session_id is not None:
                session = tracker.get_session(command.session_id)
                if session is not None and session.user_id != command.user_id:
                    session = None
            else:
                session = tracker.latest_session(command.user_id, command.service)
            active = tracker.list_active_sessions(command.user_id)

        if session is None:
            return [f"No sync session found for user={command.user_id}"]
        lines = _session_lines(session)
        lines.append(f"Active sessions: {len(active)}")
        return lines

    def quota_show(self, command: QuotaShowCommand) -> list[str]:
        settings = load_settings(command.db_path)
        now = utc_now()
        month_begin = datetime(now.year, now.month, 1, tzinfo=UTC)
        with open_database(settings) as database:
            ledger = GuardrailLedger.from_settings(database, settings.guardrails)
            quota = ledger.ensure_monthly_quota(command.user_id)
            today = ledger.usage_summary(command.user_id, since=day_start(now))
            month = ledger.usage_summary(command.user_id, since=month_begin)

        cap = (
            f"{settings.guardrails.daily_cost_cap_usd:.4f}"
            if settings.guardrails.daily_cost_cap_usd > 0
            else "disabled"
        )
        return [
            f"Quota: user={quota.user_id} period_start={quota.period_start.isoformat()} "
            f"credits_left={quota.credits_left}/{settings.guardrails.credits_monthly}",
            f"Rate limit: {settings.guardrails.requests_per_minute} request(s)/minute",
            f"Today: requests={today.requests} input_tokens={today.input_tokens} "
            f"output_tokens={today.output_tokens} cost_usd={today.cost_usd:.6f} cap={cap}",
            f"This month: requests={month.requests} cost_usd={month.cost_usd:.6f}",
        ]

    def embed_search(self, command: EmbedSearchCommand) -> list[str]:
        settings = load_settings(command.db_path)
        with open_pipeline(settings) as pipeline:
            matches = pipeline.embed_service.search_similar(
                command.user_id,
                command.query,
                owner_type=command.owner_type,
                limit=command.limit,
                threshold=command.threshold,
            )
        if isinstance(matches, Blocked):
            return [f"Search blocked: {matches.reason.value} ({matches.message})"]
        lines = [f"Matches: {len(matches)}"]
        for match in matches:
            lines.append(
                f"  {match.similarity:.4f} {match.owner_type}/{match.owner_id} "
                f"chunk={match.chunk_index} embedding={match.embedding_id}",
            )
        return lines


def _session_lines(session: SessionView) -> list[str]:
    lines = [
        f"Session: {session.session_id} service={session.service} "
        f"status={session.status.value} progress={session.progress_percentage}%",
        f"Step: {session.current_step or '-'}",
        f"Items: total={session.total_items} imported={session.imported_items} "
        f"processed={session.processed_items} failed={session.failed_items}",
    ]
    if session.error_details:
        lines.append(f"Error: {session.error_details.get('error', '-')}")
    return lines
