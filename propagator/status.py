import logging
from typing import Dict, Iterable, List, Optional

from .models import PullRequestRecord, RepoStatus, Status

logger = logging.getLogger(__name__)

FINAL_STATUSES = (Status.UPDATED, Status.SKIPPED)


class StatusTracker:
    def __init__(self, names: Iterable[str]):
        self._order: List[str] = list(names)
        self._statuses: Dict[str, RepoStatus] = {name: RepoStatus() for name in self._order}

    def load(self, statuses: Dict[str, RepoStatus]):
        for name, st in statuses.items():
            if name in self._statuses:
                self._statuses[name] = RepoStatus(status=st.status, pr=st.pr, message=st.message)

    def get(self, name: str) -> RepoStatus:
        return self._statuses[name]

    def set_status(self, name: str, status: Status, pr: Optional[PullRequestRecord] = None, message: str = ''):
        current = self._statuses[name]
        if current.status in FINAL_STATUSES and status != current.status:
            raise ValueError(f"{name} is already {current.status.value}; refusing to move it to {status.value}")
        current.status = status
        if pr is not None:
            current.pr = pr
        current.message = message
        suffix = f" ({message})" if message else ''
        link = f" {current.pr.url}" if current.pr else ''
        logger.info(f"[{status.value}] {name}{link}{suffix}")

    def reset_for_resume(self):
        for name in self._order:
            st = self._statuses[name]
            if st.status in (Status.FAILED, Status.IN_PROGRESS):
                logger.info(f"{name}: {st.status.value} -> pending for retry")
                st.status = Status.PENDING
                st.message = ''

    def pending(self) -> List[str]:
        return [name for name in self._order if self._statuses[name].status == Status.PENDING]

    def snapshot(self) -> Dict[str, RepoStatus]:
        return {name: RepoStatus(status=st.status, pr=st.pr, message=st.message)
                for name, st in self._statuses.items()}

    def report(self, final: bool = False) -> bool:
        """Print the status table; True when no repository failed."""
        rows = []
        for name in self._order:
            st = self._statuses[name]
            rows.append((name, st.status.value, st.pr.url if st.pr else '', st.message))

        headers = ('Repository', 'Status', 'Pull request', 'Message')
        widths = [max(len(h), *(len(r[i]) for r in rows)) if rows else len(h) for i, h in enumerate(headers)]

        print(f"\n{'Final' if final else 'Current'} propagation status:")
        print('  '.join(h.ljust(w) for h, w in zip(headers, widths)).rstrip())
        print('  '.join('-' * w for w in widths))
        for row in rows:
            print('  '.join(c.ljust(w) for c, w in zip(row, widths)).rstrip())

        failed = [r[0] for r in rows if r[1] == Status.FAILED.value]
        counts = {s.value: sum(1 for r in rows if r[1] == s.value) for s in Status}
        print('\n' + ', '.join(f"{v} {k}" for k, v in counts.items() if v))
        if failed:
            print(f"Failed: {', '.join(failed)}")
        return not failed
