from types import SimpleNamespace
from typing import Callable, List, Optional

from companion.features.images.providers import PollResult
from companion.features.providers.text import Retryable, Success


class FakeTextBackend:
    """Scripted text backend; pops one outcome per call, repeats the last."""

    def __init__(self, name: str, outcomes=None, available: bool = True):
        self.name = name
        self.outcomes = list(outcomes or [Success(text=f"hello from {name}", total_tokens=42)])
        self.available = available
        self.calls: List[list] = []

    def is_available(self) -> bool:
        return self.available

    def complete(self, messages):
        self.calls.append(messages)
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]


def failing_backend(name: str) -> FakeTextBackend:
    return FakeTextBackend(name, [Retryable("HTTP 503")])


class FakeImageProvider:
    """
    Scripted image provider.

    submit_results / poll_results entries are returned in order; an
    Exception instance is raised instead.
    """

    def __init__(self, name: str, submit_results=None, poll_results=None):
        self.name = name
        self.submit_results = list(submit_results if submit_results is not None else ["task-1"])
        self.poll_results = list(poll_results or [PollResult(status="SUCCEEDED", urls=["https://img/1.jpg"])])
        self.submits: List[tuple] = []
        self.polls: List[str] = []

    def _next(self, results):
        value = results.pop(0) if len(results) > 1 else results[0]
        if isinstance(value, Exception):
            raise value
        return value

    def submit(self, prompt: str, source_image: Optional[str] = None):
        self.submits.append((prompt, source_image))
        return self._next(self.submit_results)

    def poll(self, task_id: str) -> PollResult:
        self.polls.append(task_id)
        return self._next(self.poll_results)


class ManualCall:
    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler that only fires callbacks when the test says so."""

    def __init__(self):
        self.calls: List[ManualCall] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualCall:
        call = ManualCall(delay, callback)
        self.calls.append(call)
        return call

    @property
    def pending(self) -> List[ManualCall]:
        return [c for c in self.calls if not c.cancelled]

    def run_pending(self) -> int:
        """Fire every pending callback once; returns how many ran."""
        due = self.pending
        self.calls = []
        for call in due:
            call.callback()
        return len(due)

    def run_until_idle(self, limit: int = 500) -> int:
        ticks = 0
        while self.pending and ticks < limit:
            ticks += self.run_pending()
        return ticks


class RecordingSink:
    def __init__(self):
        self.successes = []
        self.failures = []

    def on_success(self, job) -> None:
        self.successes.append(job)

    def on_failure(self, job, message: str) -> None:
        self.failures.append((job, message))


class FakeGroqCompletions:
    def __init__(self, content: Optional[str] = "hi there", total_tokens: int = 30, error: Optional[Exception] = None):
        self.content = content
        self.total_tokens = total_tokens
        self.error = error
        self.kwargs = []

    def create(self, **kwargs):
        self.kwargs.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=message)],
            usage=SimpleNamespace(total_tokens=self.total_tokens),
        )


class FakeGroq:
    def __init__(self, **kwargs):
        self.completions = FakeGroqCompletions(**kwargs)
        self.chat = SimpleNamespace(completions=self.completions)
