"""
Stage dispatch for the ingestion pipeline.

Each stage invocation is a self-contained call over durable state; a dispatcher only
decides where and when the next invocation runs. Nothing here keeps job state.
"""
import logging
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

import httpx

from ragchat.models.stage import EmbedPayload, ParsePayload

logger = logging.getLogger(__name__)

StagePayloadType = ParsePayload | EmbedPayload
StageHandler = Callable[[StagePayloadType], object]


class StageDispatcher(ABC):
    def __init__(self):
        self._handler: Optional[StageHandler] = None

    def bind(self, handler: StageHandler) -> None:
        self._handler = handler

    @property
    def handler(self) -> StageHandler:
        if self._handler is None:
            raise RuntimeError(f"{type(self).__name__} has no stage handler bound")
        return self._handler

    @abstractmethod
    def dispatch(self, payload: StagePayloadType) -> None:
        """Schedules one stage invocation and returns without waiting for it."""
        pass

    def shutdown(self) -> None:
        pass


class ThreadPoolDispatcher(StageDispatcher):
    """Runs stage invocations on a bounded in-process worker pool."""

    def __init__(self, max_workers: int = 4):
        super().__init__()
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ingest")

    def dispatch(self, payload: StagePayloadType) -> None:
        try:
            self.executor.submit(self._run, payload)
        except RuntimeError as e:
            # Pool already shut down; the rows stay queued for a later resubmit
            logger.error(f"Failed to dispatch {payload.stage} for job {payload.job_id}: {e}")

    def _run(self, payload: StagePayloadType) -> None:
        try:
            self.handler(payload)
        except Exception:
            # Worker boundary: the stage already recorded the failure on the job
            logger.exception(f"Stage {payload.stage} failed for job {payload.job_id}")

    def shutdown(self) -> None:
        self.executor.shutdown(wait=True)


class HTTPDispatcher(StageDispatcher):
    """
    Chains stages through the process endpoint (POST /api/ingest/process).
    The endpoint acknowledges with 202 and runs the stage in the background, so the
    caller never waits on the stage itself. Dispatch failures are logged, not raised.
    """

    def __init__(self,
                 base_url: str,
                 timeout: float = 5.0,
                 client: Optional[httpx.Client] = None,
                 secret: str = ""):
        super().__init__()
        self.url = f"{base_url.rstrip('/')}/api/ingest/process"
        self.timeout = timeout
        self.client = client
        self.headers = {"Authorization": f"Bearer {secret}"} if secret else {}

    def dispatch(self, payload: StagePayloadType) -> None:
        try:
            if self.client is not None:
                response = self.client.post(self.url, json=payload.model_dump(), headers=self.headers, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.url, json=payload.model_dump(), headers=self.headers)
            if response.status_code >= 400:
                logger.error(
                    f"Failed to dispatch {payload.stage} for job {payload.job_id}: "
                    f"{response.status_code} {response.reason_phrase}"
                )
        except httpx.HTTPError as e:
            logger.error(f"Failed to dispatch {payload.stage} for job {payload.job_id}: {e}")


class InlineDispatcher(StageDispatcher):
    """
    Runs stages in the calling thread, one after another.
    Nested dispatches are queued and drained in FIFO order instead of recursing.
    """

    def __init__(self):
        super().__init__()
        self._queue: deque = deque()
        self._draining = False

    def dispatch(self, payload: StagePayloadType) -> None:
        self._queue.append(payload)
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue:
                self.handler(self._queue.popleft())
        finally:
            self._queue.clear()
            self._draining = False


def build_dispatcher(kind: str,
                     max_workers: int = 4,
                     base_url: str = "",
                     timeout: float = 5.0,
                     secret: str = "") -> StageDispatcher:
    if kind == "thread":
        return ThreadPoolDispatcher(max_workers=max_workers)
    if kind == "http":
        return HTTPDispatcher(base_url=base_url, timeout=timeout, secret=secret)
    if kind == "inline":
        return InlineDispatcher()
    raise ValueError(f"Unknown dispatcher: {kind}")
