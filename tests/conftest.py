"""Shared fixtures for propagator tests."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

import pytest
from git import Repo

from propagator.errors import MaterializeError
from propagator.urls import repo_name_from_url


# ========================
# Local git "forge"
# ========================


class GitForge:
    """Bare repositories under tmp_path standing in for hosted remotes."""

    def __init__(self, root: Path):
        self.root = root
        self.remotes = root / 'remotes'
        self.scratch = root / 'scratch'
        self.remotes.mkdir()
        self.scratch.mkdir()

    def url(self, name: str) -> str:
        return str(self.remotes / f"{name}.git")

    def _configure(self, repo: Repo):
        with repo.config_writer() as cw:
            cw.set_value('user', 'name', 'Propagation Test')
            cw.set_value('user', 'email', 'propagation@example.com')

    def create(self, name: str, submodules: Optional[Dict[str, tuple]] = None) -> str:
        """submodules: path -> (url written to .gitmodules, pinned sha)."""
        work = self.scratch / name
        repo = Repo.init(work, initial_branch='main')
        self._configure(repo)
        (work / 'README.md').write_text(f"# {name}\n")
        repo.git.add('README.md')
        if submodules:
            lines = []
            for path, (url, sha) in submodules.items():
                lines += [f'[submodule "{path}"]', f"\tpath = {path}", f"\turl = {url}"]
                repo.git.update_index('--add', '--cacheinfo', f"160000,{sha},{path}")
            (work / '.gitmodules').write_text('\n'.join(lines) + '\n')
            repo.git.add('.gitmodules')
        repo.git.commit('-m', f"init {name}")

        Repo.init(self.url(name), bare=True, initial_branch='main')
        repo.git.push(self.url(name), 'main:main')
        return self.url(name)

    def head(self, name: str) -> str:
        return Repo(self.url(name)).commit('main').hexsha

    def advance(self, name: str, message: str = 'change') -> str:
        """Add a commit to the remote's main branch and return its sha."""
        work = self.scratch / name
        repo = Repo(work)
        (work / 'CHANGES.md').write_text(message + '\n')
        repo.git.add('CHANGES.md')
        repo.git.commit('-m', message)
        repo.git.push(self.url(name), 'main:main')
        return repo.head.commit.hexsha


@pytest.fixture
def forge(tmp_path) -> GitForge:
    return GitForge(tmp_path)


# ========================
# Fake graph source
# ========================


class FakeSource:
    """Answers the graph builder's questions from a dict of name -> submodule names."""

    def __init__(self, manifests: Dict[str, list], unreachable=()):
        self.manifests = manifests
        self.unreachable = set(unreachable)
        self.cloned = []

    @staticmethod
    def url(name: str) -> str:
        return f"https://github.com/contoso/{name}.git"

    def ensure_clone(self, url: str):
        name = repo_name_from_url(url)
        if name in self.unreachable:
            raise MaterializeError(f"cannot clone {url}")
        self.cloned.append(name)
        return Path('/workspace') / name

    def origin_url(self, name: str) -> str:
        return self.url(name)

    def submodule_urls(self, name: str):
        return [self.url(child) for child in self.manifests.get(name, [])]


@pytest.fixture
def fake_source_factory():
    return FakeSource


# ========================
# Config
# ========================


@pytest.fixture
def cfg(tmp_path) -> dict:
    return {
        'root_list': ['https://github.com/contoso/app.git'],
        'work_item_id': 4242,
        'gh_token': 'gh-test-token',
        'azure_token': 'ado-test-token',
        'gh_api': 'https://api.github.com',
        'azure_api': 'https://dev.azure.com',
        'use_cached_order': False,
        'keep_failed_prs': False,
        'resume': False,
        'work_root': tmp_path / 'work',
        'cache_path': tmp_path / 'work' / '.cache' / 'order_cache.json',
        'ignore_file': tmp_path / 'ignores.json',
        'pr_timeout': 600,
        'poll_interval': 10,
    }
