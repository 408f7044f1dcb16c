import json
import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import STATE_FILE_NAME
from .errors import StateLoadError
from .models import PropagationState

logger = logging.getLogger(__name__)

BRANCH_PREFIX = 'propagate_'
BRANCH_PATTERN = re.compile(rf'^{BRANCH_PREFIX}(\d{{14}})$')
REQUIRED_FIELDS = ('branch_name', 'repo_order', 'repo_url_map', 'fixed_commits', 'repo_statuses', 'root_list')


def new_branch_name(now: Optional[datetime] = None) -> str:
    return f"{BRANCH_PREFIX}{(now or datetime.now()).strftime('%Y%m%d%H%M%S')}"


class StateStore:
    """Checkpoint files, one per session directory <work_root>/<branch_name>/."""

    def __init__(self, work_root: Path):
        self.work_root = Path(work_root)

    def session_dir(self, branch_name: str) -> Path:
        return self.work_root / branch_name

    def state_path(self, branch_name: str) -> Path:
        return self.session_dir(branch_name) / STATE_FILE_NAME

    def save(self, state: PropagationState) -> Path:
        path = self.state_path(state.branch_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix('.tmp')
        tmp.write_text(json.dumps(state.to_dict(), indent=2), encoding='utf-8')
        os.replace(tmp, path)
        logger.debug(f"Saved propagation state to {path}")
        return path

    def find_latest(self) -> Optional[Path]:
        if not self.work_root.is_dir():
            return None
        candidates = []
        for entry in self.work_root.iterdir():
            m = BRANCH_PATTERN.match(entry.name)
            if m and entry.is_dir() and (entry / STATE_FILE_NAME).is_file():
                candidates.append((m.group(1), entry / STATE_FILE_NAME))
        if not candidates:
            return None
        return max(candidates)[1]

    def load(self, path: Path) -> PropagationState:
        try:
            data = json.loads(Path(path).read_text(encoding='utf-8'))
        except (OSError, json.JSONDecodeError) as e:
            raise StateLoadError(f"Cannot read propagation state {path}: {e}") from e
        if not isinstance(data, dict):
            raise StateLoadError(f"Propagation state {path} is not a JSON object")

        missing = [f for f in REQUIRED_FIELDS if f not in data]
        if missing:
            raise StateLoadError(f"Propagation state {path} lacks {', '.join(missing)}; refusing to resume")
        if not data['fixed_commits']:
            raise StateLoadError(f"Propagation state {path} has no fixed commit snapshot; refusing to resume")
        unpinned = [name for name in data['repo_order'] if name not in data['fixed_commits']]
        if unpinned:
            raise StateLoadError(f"No fixed commit recorded for {', '.join(unpinned)}; refusing to resume")

        try:
            state = PropagationState.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StateLoadError(f"Propagation state {path} is malformed: {e}") from e
        logger.info(f"Loaded propagation state for {state.branch_name} from {path}")
        return state
