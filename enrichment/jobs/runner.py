"""
Job Runner

Executes market-intelligence and seller-pull phase sequences outside the
request that triggered them:
- Supervised background tasks (observable, awaitable, cancellable)
- Progress persistence after every sub-step
- Inter-call pacing for the scraping API
- Top-level failure capture into the job record
"""

import asyncio
import logging
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from enrichment.config import Settings, get_settings
from enrichment.jobs.errors import EnrichmentError, JobStateConflictError
from enrichment.jobs.job_types import FAMILY_TABLES, KIND_FAMILIES, JobFamily, JobKind, JobProgress
from enrichment.jobs.state_machine import active_statuses, assert_transition
from enrichment.jobs.store import JobStore

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """
    Context object passed to job handlers.
    Provides progress reporting, partial-result persistence and the external clients.
    """
    job_id: str
    kind: JobKind
    family: JobFamily
    record: Dict[str, Any]
    params: Dict[str, Any]
    settings: Settings
    scraper: Any = None
    llm: Any = None

    _store: JobStore = field(default=None, repr=False)
    _current_step: str = field(default="starting", repr=False)
    _warnings: List[str] = field(default_factory=list, repr=False)

    def update_progress(
        self,
        step: str,
        current: int = 0,
        total: int = 0,
        message: Optional[str] = None,
        completed_phases: Optional[List[str]] = None,
        **fields: Any
    ) -> Dict[str, Any]:
        """Persist a progress snapshot, plus any partial results passed as keyword fields."""
        self._current_step = step
        progress = JobProgress(
            step=step,
            current=current,
            total=total,
            message=message,
            completed_phases=list(completed_phases or []),
        )
        return self.save(progress=progress.model_dump(), **fields)

    def save(self, **fields: Any) -> Dict[str, Any]:
        """Write fields onto the job record and keep the local copy in sync."""
        updated = self._store.update(self.job_id, fields)
        if updated:
            self.record = updated
        else:
            self.record.update(fields)
        return self.record

    def transition(self, target: str, **fields: Any) -> Dict[str, Any]:
        """
        Move the job to `target`, writing `fields` in the same update. The
        write is guarded on the status this runner last saw, so a job the
        watchdog already failed is not silently revived.
        """
        current = self.record.get("status")
        assert_transition(self.family, current, target)
        updated = self._store.update(
            self.job_id,
            {**fields, "status": target},
            expected_status=[current]
        )
        if updated is None:
            latest = self._store.get(self.job_id) or {}
            raise JobStateConflictError(
                f"Job moved to '{latest.get('status')}' while running",
                current_status=latest.get("status")
            )
        self.record = updated
        self._current_step = target
        return updated

    def fail(self, message: str) -> Dict[str, Any]:
        """Persist an expected, non-exceptional failure."""
        self.warn(message)
        return self.transition("failed", error_message=message)

    def refresh(self) -> Dict[str, Any]:
        self.record = self._store.require(self.job_id)
        return self.record

    def table(self, name: str) -> JobStore:
        """Store for a collaborator table (countries, products, lookups)."""
        return JobStore(name, supabase=self._store.supabase, touch_updated_at=False)

    async def pace(self, seconds: Optional[float] = None):
        """Fixed delay between successive scraping calls."""
        delay = self.settings.scrape_delay_seconds if seconds is None else seconds
        if delay > 0:
            await asyncio.sleep(delay)

    def log(self, message: str):
        logger.info(f"[Job {self.kind.value} {self.job_id}] {message}")

    def warn(self, message: str):
        self._warnings.append(message)
        logger.warning(f"[Job {self.kind.value} {self.job_id}] Warning: {message}")

    def get_warnings(self) -> List[str]:
        return list(self._warnings)


class JobRunner:
    """
    Executes job handlers as supervised background tasks.

    Every started task is tracked in `_running_jobs` until it finishes, so a
    caller (tests, shutdown) can await completion deterministically.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        supabase=None,
        scraper=None,
        llm=None
    ):
        self.settings = settings or get_settings()
        self.supabase = supabase
        self.scraper = scraper
        self.llm = llm
        self._handlers: Dict[JobKind, Callable] = {}
        self._running_jobs: Dict[str, asyncio.Task] = {}

    def register_handler(self, kind: JobKind, handler: Callable):
        """Register a handler coroutine for a job kind."""
        self._handlers[kind] = handler
        logger.info(f"Registered handler for job kind: {kind.value}")

    def get_handler(self, kind: JobKind) -> Optional[Callable]:
        return self._handlers.get(kind)

    def store_for(self, family: JobFamily) -> JobStore:
        return JobStore(FAMILY_TABLES[family], supabase=self.supabase)

    def _clients(self):
        if self.scraper is None:
            from enrichment.clients.scraper import ScraperClient
            self.scraper = ScraperClient(self.settings)
        if self.llm is None:
            from enrichment.clients.llm import AnalysisClient
            self.llm = AnalysisClient(self.settings)
        return self.scraper, self.llm

    async def execute_job(self, kind: JobKind, job_id: str, params: Optional[Dict[str, Any]] = None) -> bool:
        """
        Execute one handler pass for a job.
        Returns True if the handler finished, False if it failed.
        """
        family = KIND_FAMILIES[kind]
        store = self.store_for(family)
        handler = self.get_handler(kind)

        if not handler:
            logger.error(f"No handler registered for job kind {kind.value}")
            self._mark_failed(store, family, job_id, f"No handler registered for job kind {kind.value}")
            return False

        record = store.get(job_id)
        if not record:
            logger.error(f"Job {job_id} not found")
            return False

        scraper, llm = self._clients()
        ctx = JobContext(
            job_id=job_id,
            kind=kind,
            family=family,
            record=record,
            params=dict(params or {}),
            settings=self.settings,
            scraper=scraper,
            llm=llm,
            _store=store,
        )

        logger.info(f"Starting job {job_id} of kind {kind.value}")

        try:
            await handler(ctx)
            logger.info(f"Job {job_id} ({kind.value}) finished")
            return True

        except asyncio.CancelledError:
            # Left in its active state; the staleness watchdog fails it later
            logger.info(f"Job {job_id} ({kind.value}) was cancelled at step {ctx._current_step}")
            raise

        except Exception as e:
            error_trace = traceback.format_exc()
            message = self._failure_message(e)
            self._mark_failed(store, family, job_id, message)
            logger.error(
                f"Job {job_id} ({kind.value}) failed at step {ctx._current_step}: {message}\n{error_trace}"
            )
            return False

    def _failure_message(self, error: Exception) -> str:
        """Human-readable message persisted on the job record."""
        if isinstance(error, EnrichmentError):
            return error.message
        text = str(error)
        return text if text else f"Unexpected error ({type(error).__name__})"

    def _mark_failed(self, store: JobStore, family: JobFamily, job_id: str, message: str):
        """Fail the job unless it already reached a terminal status."""
        try:
            store.update(
                job_id,
                {"status": "failed", "error_message": message},
                expected_status=active_statuses(family)
            )
        except Exception as e:
            logger.error(f"Could not persist failure for job {job_id}: {e}")

    def run_job_background(
        self,
        kind: JobKind,
        job_id: str,
        params: Optional[Dict[str, Any]] = None
    ) -> asyncio.Task:
        """Run a job in background, returns immediately."""
        task = asyncio.create_task(
            self.execute_job(kind, job_id, params),
            name=f"{kind.value}:{job_id}"
        )
        self._running_jobs[job_id] = task

        # Clean up when done
        def on_complete(t):
            if self._running_jobs.get(job_id) is t:
                self._running_jobs.pop(job_id, None)

        task.add_done_callback(on_complete)
        return task

    def is_running(self, job_id: str) -> bool:
        task = self._running_jobs.get(job_id)
        return bool(task and not task.done())

    async def wait_for(self, job_id: str) -> Optional[bool]:
        """Await a running job's task. None when nothing is running for it."""
        task = self._running_jobs.get(job_id)
        if task is None:
            return None
        return await task

    async def drain(self, timeout: Optional[float] = None):
        """Wait for every running job to finish."""
        tasks = list(self._running_jobs.values())
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def cancel_running_job(self, job_id: str) -> bool:
        """Cancel a running job task."""
        task = self._running_jobs.get(job_id)
        if task and not task.done():
            task.cancel()
            return True
        return False

    async def shutdown(self, timeout: float = 10.0):
        """Cancel everything still running and release client connections."""
        tasks = [t for t in self._running_jobs.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
        if self.scraper is not None and hasattr(self.scraper, "aclose"):
            await self.scraper.aclose()


# ============================================================================
# Global runner instance
# ============================================================================

_runner: Optional[JobRunner] = None


def get_runner() -> JobRunner:
    """Get the global job runner instance, with all handlers registered."""
    global _runner
    if _runner is None:
        from enrichment.jobs.handlers import register_all_handlers
        _runner = JobRunner()
        register_all_handlers(_runner)
    return _runner


def run_job_background(kind: JobKind, job_id: str, params: Optional[Dict[str, Any]] = None) -> asyncio.Task:
    """Run a job in background using the global runner."""
    return get_runner().run_job_background(kind, job_id, params)
