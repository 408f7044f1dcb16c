from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional


class Status(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    UPDATED = 'updated'
    SKIPPED = 'skipped'
    FAILED = 'failed'


class UpdateOutcome(str, Enum):
    NO_OP = 'no_op'
    CHANGED = 'changed'


class PRState(str, Enum):
    PENDING = 'pending'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


class Terminal(str, Enum):
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'


@dataclass(frozen=True)
class RepoNode:
    name: str
    url: str
    depth: int = 0


@dataclass
class PullRequestRecord:
    platform: str
    url: str
    status: str = 'open'
    number: int = 0
    repo_url: str = ''
    branch: str = ''

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'PullRequestRecord':
        return cls(
            platform=data['platform'],
            url=data['url'],
            status=data.get('status', 'open'),
            number=int(data.get('number') or 0),
            repo_url=data.get('repo_url', ''),
            branch=data.get('branch', ''),
        )


@dataclass
class RepoStatus:
    status: Status = Status.PENDING
    pr: Optional[PullRequestRecord] = None
    message: str = ''

    def to_dict(self) -> dict:
        return {
            'status': self.status.value,
            'pr': self.pr.to_dict() if self.pr else None,
            'message': self.message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'RepoStatus':
        pr = data.get('pr')
        return cls(
            status=Status(data['status']),
            pr=PullRequestRecord.from_dict(pr) if pr else None,
            message=data.get('message', ''),
        )


@dataclass
class PropagationState:
    """Everything a resumed run needs; written after every repository."""

    branch_name: str
    repo_order: List[str]
    repo_url_map: Dict[str, str]
    fixed_commits: Dict[str, str]
    repo_statuses: Dict[str, RepoStatus] = field(default_factory=dict)
    root_list: List[str] = field(default_factory=list)
    work_item_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'branch_name': self.branch_name,
            'repo_order': list(self.repo_order),
            'repo_url_map': dict(self.repo_url_map),
            'fixed_commits': dict(self.fixed_commits),
            'repo_statuses': {name: st.to_dict() for name, st in self.repo_statuses.items()},
            'root_list': list(self.root_list),
            'work_item_id': self.work_item_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PropagationState':
        work_item = data.get('work_item_id')
        return cls(
            branch_name=data['branch_name'],
            repo_order=list(data['repo_order']),
            repo_url_map=dict(data['repo_url_map']),
            fixed_commits=dict(data['fixed_commits']),
            repo_statuses={name: RepoStatus.from_dict(st) for name, st in (data.get('repo_statuses') or {}).items()},
            root_list=list(data.get('root_list') or []),
            work_item_id=int(work_item) if work_item is not None else None,
        )
