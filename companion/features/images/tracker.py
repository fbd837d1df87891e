"""
Async image job tracker.

States: IDLE -> SUBMITTING -> POLLING -> {SUCCEEDED | FAILED} -> IDLE

One tracker owns one conversation. Polling is a retry-after-delay loop
driven by a Scheduler: each tick polls once, inspects the result and only
then schedules the next tick. Every job carries a CancellationToken that is
checked before a tick polls and again before its result is applied.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional, Protocol

from companion.core.config import settings
from companion.core.database import utc_now
from companion.core.errors import AccessDeniedError, JobInProgressError, ProviderError, QuotaExceededError
from companion.core.logging import log_event
from companion.features.images.providers import ImageProvider, PollResult
from companion.models.image_job import ImageJob, ImageJobView

GENERATION_FAILED_MESSAGE = "Sorry, I couldn't create that picture right now. Please try again in a moment."
GENERATION_TIMEOUT_MESSAGE = "Sorry, that picture is taking too long. Please try again."


class ScheduledCall(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:
        ...


class ThreadingScheduler:
    """Runs each callback on a daemon timer thread."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


class CancellationToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ImageJobSink(Protocol):
    """Receives terminal outcomes; persists them into the conversation."""

    def on_success(self, job: ImageJob) -> None:
        ...

    def on_failure(self, job: Optional[ImageJob], message: str) -> None:
        ...


class ImageJobTracker:
    def __init__(
        self,
        conversation_id: str,
        primary: ImageProvider,
        secondary: Optional[ImageProvider],
        sink: ImageJobSink,
        scheduler: Optional[Scheduler] = None,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self.conversation_id = conversation_id
        self.primary = primary
        self.secondary = secondary
        self.sink = sink
        self.scheduler = scheduler or ThreadingScheduler()
        self.poll_interval = poll_interval if poll_interval is not None else settings.IMAGE_POLL_INTERVAL_SECONDS
        self.max_attempts = max_attempts if max_attempts is not None else settings.IMAGE_POLL_MAX_ATTEMPTS

        self._lock = threading.Lock()
        self._state = "IDLE"
        self._job: Optional[ImageJob] = None
        self._last_job: Optional[ImageJob] = None
        self._provider: Optional[ImageProvider] = None
        self._token: Optional[CancellationToken] = None
        self._pending: Optional[ScheduledCall] = None
        self._processing = False
        self._attempts = 0
        self.on_idle: Optional[Callable[[ImageJobTracker], None]] = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state in ("SUBMITTING", "POLLING")

    def view(self) -> ImageJobView:
        with self._lock:
            return ImageJobView(
                conversation_id=self.conversation_id,
                state=self._state,
                job=self._job or self._last_job,
                attempts=self._attempts,
            )

    def submit(self, prompt: str, source_image: Optional[str] = None) -> str:
        """
        Start a job: primary provider first, secondary on any generic failure.

        Raises:
            JobInProgressError: a job is already submitting or polling
            QuotaExceededError / AccessDeniedError: provider-reported, not retried
            ProviderError: neither provider produced a task id
        """
        with self._lock:
            if self.busy:
                raise JobInProgressError("An image is already being generated for this conversation")
            token = CancellationToken()
            self._token = token
            self._state = "SUBMITTING"
            self._attempts = 0

        try:
            task_id, provider = self._submit_with_fallback(prompt, source_image)
        except Exception:
            with self._lock:
                if self._token is token:
                    self._token = None
                    self._state = "IDLE"
            raise

        with self._lock:
            if token.cancelled or self._token is not token:
                return task_id
            self._provider = provider
            self._job = ImageJob(
                task_id=task_id,
                conversation_id=self.conversation_id,
                status="SUBMITTED",
                provider=provider.name,
                created_at=utc_now(),
            )
            self._state = "POLLING"
            self._schedule_next(token)

        log_event(
            "info",
            "images.submitted",
            session_id=self.conversation_id,
            event_type="images.submit",
            extra={"task_id": task_id, "provider": provider.name},
        )
        return task_id

    def _submit_with_fallback(self, prompt: str, source_image: Optional[str]):
        try:
            task_id = self.primary.submit(prompt, source_image)
            if task_id:
                return task_id, self.primary
            reason = "no task id"
        except (QuotaExceededError, AccessDeniedError):
            raise
        except Exception as e:
            reason = str(e)

        log_event(
            "warning",
            "images.primary_failed",
            session_id=self.conversation_id,
            event_type="images.submit",
            extra={"provider": self.primary.name, "reason": reason},
        )
        if self.secondary is None:
            raise ProviderError("Image generation is unavailable right now")

        try:
            task_id = self.secondary.submit(prompt, source_image)
        except (QuotaExceededError, AccessDeniedError, ProviderError):
            raise
        except Exception as e:
            raise ProviderError("Image generation is unavailable right now") from e
        if not task_id:
            raise ProviderError("Image generation is unavailable right now")
        return task_id, self.secondary

    def _schedule_next(self, token: CancellationToken) -> None:
        # Caller holds the lock
        if token.cancelled:
            return
        self._pending = self.scheduler.call_later(self.poll_interval, lambda: self._tick(token))

    def poll(self) -> Optional[PollResult]:
        """Run one poll tick for the current job (no-op when idle)."""
        with self._lock:
            token = self._token
        if token is None:
            return None
        return self._tick(token)

    def _tick(self, token: CancellationToken) -> Optional[PollResult]:
        with self._lock:
            if token.cancelled or self._token is not token or self._state != "POLLING":
                return None
            if self._processing:
                return None
            self._processing = True
            self._pending = None
            self._attempts += 1
            job, provider, attempts = self._job, self._provider, self._attempts

        error: Optional[Exception] = None
        result: Optional[PollResult] = None
        try:
            result = provider.poll(job.task_id)
        except Exception as e:
            error = e
        finally:
            with self._lock:
                self._processing = False

        if token.cancelled:
            return None

        if error is not None:
            log_event(
                "warning",
                "images.poll_failed",
                session_id=self.conversation_id,
                event_type="images.poll",
                extra={"task_id": job.task_id, "error": error},
            )
            self._terminate(token, job, succeeded=False, message=GENERATION_FAILED_MESSAGE)
            return None

        if result.status == "SUCCEEDED":
            self._terminate(token, job.model_copy(update={"result_urls": result.urls}), succeeded=True)
        elif result.status == "FAILED":
            log_event(
                "warning",
                "images.task_failed",
                session_id=self.conversation_id,
                event_type="images.poll",
                extra={"task_id": job.task_id, "reason": result.reason},
            )
            self._terminate(token, job, succeeded=False, message=GENERATION_FAILED_MESSAGE)
        elif attempts >= self.max_attempts:
            self._terminate(token, job, succeeded=False, message=GENERATION_TIMEOUT_MESSAGE)
        else:
            with self._lock:
                if token.cancelled or self._token is not token:
                    return None
                self._job = job.model_copy(update={"status": "RUNNING"})
                self._schedule_next(token)
        return result

    def _terminate(self, token: CancellationToken, job: ImageJob, *, succeeded: bool, message: Optional[str] = None) -> None:
        with self._lock:
            if token.cancelled or self._token is not token:
                return
            final = job.model_copy(update={"status": "SUCCEEDED" if succeeded else "FAILED"})
            self._state = "SUCCEEDED" if succeeded else "FAILED"
            self._token = None
            self._pending = None
            self._job = None
            self._last_job = final

        try:
            if succeeded:
                self.sink.on_success(final)
            else:
                self.sink.on_failure(final, message or GENERATION_FAILED_MESSAGE)
        except Exception as e:
            log_event(
                "error",
                "images.result_not_persisted",
                session_id=self.conversation_id,
                event_type="images.terminal",
                error_code="persistence_error",
                extra={"task_id": final.task_id, "error": e},
            )
        finally:
            with self._lock:
                idle = self._token is None and self._state in ("SUCCEEDED", "FAILED")
                if idle:
                    self._state = "IDLE"
            if idle and self.on_idle is not None:
                self.on_idle(self)

    def cancel(self) -> None:
        """Drop the current job; any scheduled or in-flight poll becomes a no-op."""
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            if self._pending is not None:
                self._pending.cancel()
            self._token = None
            self._pending = None
            self._job = None
            self._provider = None
            self._state = "IDLE"


class ImageJobRegistry:
    """
    Process-wide map of conversation id -> tracker.

    A tracker stays registered while a request holds it or a job is in
    flight. Once it is idle and unheld it is dropped, so the map only holds
    conversations with live work.
    """

    def __init__(self):
        self._trackers: Dict[str, ImageJobTracker] = {}
        self._holds: Dict[str, int] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._trackers)

    def get(self, conversation_id: str) -> Optional[ImageJobTracker]:
        with self._lock:
            return self._trackers.get(conversation_id)

    def _get_or_create(self, conversation_id: str, factory: Callable[[], ImageJobTracker]) -> ImageJobTracker:
        # Caller holds the lock
        tracker = self._trackers.get(conversation_id)
        if tracker is None:
            tracker = factory()
            tracker.on_idle = self._tracker_idle
            self._trackers[conversation_id] = tracker
        return tracker

    def get_or_create(self, conversation_id: str, factory: Callable[[], ImageJobTracker]) -> ImageJobTracker:
        with self._lock:
            return self._get_or_create(conversation_id, factory)

    @contextmanager
    def hold(self, conversation_id: str, factory: Callable[[], ImageJobTracker]) -> Iterator[ImageJobTracker]:
        """Pin the conversation's tracker for the duration of a request."""
        with self._lock:
            tracker = self._get_or_create(conversation_id, factory)
            self._holds[conversation_id] = self._holds.get(conversation_id, 0) + 1
        try:
            yield tracker
        finally:
            with self._lock:
                remaining = self._holds.get(conversation_id, 1) - 1
                if remaining > 0:
                    self._holds[conversation_id] = remaining
                else:
                    self._holds.pop(conversation_id, None)
            self.release_if_idle(conversation_id, tracker)

    def release_if_idle(self, conversation_id: str, tracker: Optional[ImageJobTracker] = None) -> bool:
        """Drop the tracker when it is idle and no request holds it."""
        with self._lock:
            current = self._trackers.get(conversation_id)
            if current is None or (tracker is not None and current is not tracker):
                return False
            if self._holds.get(conversation_id) or current.state != "IDLE":
                return False
            del self._trackers[conversation_id]
            return True

    def _tracker_idle(self, tracker: ImageJobTracker) -> None:
        self.release_if_idle(tracker.conversation_id, tracker)

    def cancel(self, conversation_id: str) -> bool:
        with self._lock:
            tracker = self._trackers.pop(conversation_id, None)
        if tracker is None:
            return False
        tracker.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            trackers = list(self._trackers.values())
            self._trackers.clear()
        for tracker in trackers:
            tracker.cancel()


registry = ImageJobRegistry()
