import logging
from contextlib import suppress
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from git import Git, Repo, GitCommandError
from git.exc import InvalidGitRepositoryError, NoSuchPathError

from .errors import MaterializeError
from .models import UpdateOutcome
from .urls import repo_name_from_url, resolve_submodule_url

logger = logging.getLogger(__name__)

COMMIT_TITLE = '[autogenerated] update dependencies'
GITLINK_MODE = '160000'


class Materializer:
    """Clones repositories into the session workspace and rewrites their submodule pointers."""

    def __init__(self, workspace: Path):
        self.workspace = Path(workspace)

    # ========================
    # Workspace
    # ========================

    def path_for(self, name: str) -> Path:
        return self.workspace / name

    def has_clone(self, name: str) -> bool:
        return (self.path_for(name) / '.git').exists()

    def repo(self, name: str) -> Repo:
        try:
            return Repo(self.path_for(name))
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise MaterializeError(f"'{name}' is not cloned in {self.workspace}: {e}") from e

    def ensure_clone(self, url: str) -> Path:
        try:
            name = repo_name_from_url(url)
        except ValueError as e:
            raise MaterializeError(str(e)) from e
        path = self.path_for(name)
        if self.has_clone(name):
            logger.info(f"Reusing clone of {name} at {path}")
            try:
                self.repo(name).remotes.origin.fetch(prune=True)  # type: ignore[attr-defined]
            except (GitCommandError, AttributeError) as e:
                raise MaterializeError(f"Failed to fetch {name}: {e}") from e
            return path
        logger.info(f"Cloning {url} into {path}")
        self.workspace.mkdir(parents=True, exist_ok=True)
        try:
            Repo.clone_from(url, path)
        except GitCommandError as e:
            raise MaterializeError(f"Failed to clone {url}: {e}") from e
        return path

    def origin_url(self, name: str) -> str:
        try:
            return self.repo(name).remotes.origin.url  # type: ignore[attr-defined]
        except (AttributeError, IndexError, ValueError) as e:
            raise MaterializeError(f"No origin remote URL for '{name}'") from e

    def remote_head(self, url: str) -> str:
        """Commit the remote's HEAD points at right now, without fetching."""
        try:
            out = Git().ls_remote(url, 'HEAD')
        except GitCommandError as e:
            raise MaterializeError(f"ls-remote failed for {url}: {e}") from e
        for line in out.splitlines():
            sha, _, ref = line.partition('\t')
            if ref.strip() == 'HEAD' and sha:
                return sha.strip()
        raise MaterializeError(f"Remote {url} has no HEAD")

    def default_branch(self, name: str) -> str:
        repo = self.repo(name)
        with suppress(GitCommandError):
            ref = repo.git.symbolic_ref('refs/remotes/origin/HEAD')
            return ref.replace('refs/remotes/origin/', '', 1).strip()
        with suppress(GitCommandError):
            for ln in repo.git.remote('show', 'origin').splitlines():
                if 'HEAD branch:' in ln:
                    return ln.split(':', 1)[1].strip()
        return 'main'

    # ========================
    # Submodule manifest
    # ========================

    def submodules(self, name: str, rev: Optional[str] = None) -> List[Tuple[str, str]]:
        """(path, resolved url) for every submodule declared in .gitmodules, in manifest order."""
        repo = self.repo(name)
        if rev is None:
            # discovery reads the remote default branch, not whatever is checked out
            rev = f"origin/{self.default_branch(name)}"
            try:
                repo.git.rev_parse('--verify', rev)
            except GitCommandError:
                rev = 'HEAD'

        try:
            repo.git.cat_file('-e', f"{rev}:.gitmodules")
        except GitCommandError:
            return []
        try:
            out = repo.git.config('--blob', f"{rev}:.gitmodules", '--get-regexp', r'^submodule\..*\.(path|url)$')
        except GitCommandError as e:
            if e.status == 1:
                return []
            raise MaterializeError(f"Cannot read .gitmodules of '{name}': {e}") from e

        entries: Dict[str, Dict[str, str]] = {}
        for line in out.splitlines():
            key, _, value = line.strip().partition(' ')
            if not key.startswith('submodule.') or not value:
                continue
            sub_key, _, attr = key[len('submodule.'):].rpartition('.')
            entries.setdefault(sub_key, {})[attr] = value.strip()

        parent_url = self.origin_url(name)
        result = []
        for sub_key, attrs in entries.items():
            if 'path' not in attrs or 'url' not in attrs:
                logger.warning(f"Submodule '{sub_key}' in {name} lacks a path or url; ignoring it")
                continue
            try:
                url = resolve_submodule_url(parent_url, attrs['url'])
                repo_name_from_url(url)
            except ValueError as e:
                raise MaterializeError(f"Submodule '{sub_key}' of '{name}' has an unusable url: {e}") from e
            result.append((attrs['path'], url))
        return result

    def submodule_urls(self, name: str) -> List[str]:
        return [url for _, url in self.submodules(name)]

    # ========================
    # Update
    # ========================

    def _gitlink(self, repo: Repo, path: str) -> Optional[str]:
        out = repo.git.ls_tree('HEAD', '--', path).strip()
        if not out:
            return None
        meta, _, _ = out.partition('\t')
        mode, _, sha = meta.split(' ', 2)
        return sha if mode == GITLINK_MODE else None

    def update_repo(self, name: str, branch_name: str, fixed_commits: Dict[str, str]) -> UpdateOutcome:
        """Point every tracked submodule of `name` at its fixed commit on `branch_name`."""
        repo = self.repo(name)
        base = self.default_branch(name)
        try:
            repo.remotes.origin.fetch(prune=True)  # type: ignore[attr-defined]
            repo.git.checkout('-B', branch_name, f"origin/{base}")
        except (GitCommandError, AttributeError) as e:
            raise MaterializeError(f"Failed to prepare branch {branch_name} in '{name}': {e}") from e

        bumped = []
        try:
            for path, url in self.submodules(name, rev='HEAD'):
                sub_name = repo_name_from_url(url)
                target = fixed_commits.get(sub_name)
                if not target:
                    continue
                current = self._gitlink(repo, path)
                if current is None:
                    logger.warning(f"{name}: submodule {path} has no gitlink in HEAD; leaving it alone")
                    continue
                if current == target:
                    continue
                repo.git.update_index('--cacheinfo', f"{GITLINK_MODE},{target},{path}")
                bumped.append(f"{path}: {current[:12]} -> {target[:12]}")
        except GitCommandError as e:
            raise MaterializeError(f"Failed to update submodule pointers in '{name}': {e}") from e

        if not bumped:
            logger.info(f"{name}: nothing to commit")
            return UpdateOutcome.NO_OP

        message = COMMIT_TITLE + '\n\n' + '\n'.join(bumped)
        try:
            repo.index.commit(message)
        except (GitCommandError, OSError, ValueError) as e:
            raise MaterializeError(f"Failed to commit in '{name}': {e}") from e
        for line in bumped:
            logger.info(f"{name}: {line}")
        return UpdateOutcome.CHANGED
