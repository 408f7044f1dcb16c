import logging
import threading
import time
from typing import Callable, Optional

from .errors import PlatformError
from .models import PRState, PullRequestRecord, Terminal

logger = logging.getLogger(__name__)


class PRWatcher:
    """Polls a pull request until its checks settle, it merges, or the timeout runs out."""

    def __init__(self, platforms, poll_interval: float = 60, keep_failed_prs: bool = False,
                 sleep: Callable[[float], None] = time.sleep, clock: Callable[[], float] = time.monotonic):
        self.platforms = platforms
        self.poll_interval = poll_interval
        self.keep_failed_prs = keep_failed_prs
        self._sleep = sleep
        self._clock = clock

    def await_pr(self, record: PullRequestRecord, timeout: float,
                 cancel: Optional[threading.Event] = None) -> Terminal:
        platform = self.platforms.for_record(record)
        deadline = self._clock() + timeout
        logger.info(f"Waiting up to {int(timeout)}s for {record.url}")

        verdict = Terminal.TIMED_OUT
        while True:
            state = platform.pr_state(record)
            if state == PRState.SUCCEEDED:
                verdict = Terminal.SUCCEEDED
                break
            if state == PRState.FAILED:
                verdict = Terminal.FAILED
                break
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            if cancel is not None:
                if cancel.wait(min(self.poll_interval, remaining)):
                    logger.info(f"Stopped waiting for {record.url} on request")
                    break
            else:
                self._sleep(min(self.poll_interval, remaining))

        record.status = verdict.value
        logger.info(f"{record.url}: {verdict.value}")
        if verdict != Terminal.SUCCEEDED:
            self._close_failed(platform, record)
        return verdict

    def _close_failed(self, platform, record: PullRequestRecord):
        if self.keep_failed_prs:
            logger.info(f"Leaving {record.url} open (--keep-failed-prs)")
            return
        try:
            platform.close_pr(record)
        except PlatformError as e:
            logger.warning(f"Could not close {record.url}: {e}")
            return
        record.status = 'closed'
        logger.info(f"Closed {record.url}")
