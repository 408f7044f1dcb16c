"""Tests for the propagation orchestrator, with fake git and platform collaborators."""

from __future__ import annotations

import os

import pytest

from propagator.errors import ConfigError, MaterializeError, PlatformError, StateLoadError
from propagator.models import (
    PRState,
    PropagationState,
    PullRequestRecord,
    RepoStatus,
    Status,
    Terminal,
    UpdateOutcome,
)
from propagator.order_cache import OrderCache
from propagator.orchestrator import Orchestrator
from propagator.state import StateStore
from propagator.urls import repo_name_from_url

ORDER = ['logging', 'util', 'net', 'app']
URLS = {name: f"https://github.com/contoso/{name}.git" for name in ORDER}
IGNORED = {'vcpkg'}


class FakeMaterializer:
    def __init__(self, outcomes=None, errors=None):
        self.outcomes = outcomes or {}
        self.errors = errors or {}
        self.workspace = None
        self.cloned = set()
        self.updates = []
        self.heads_read = []

    def __call__(self, workspace):
        self.workspace = workspace
        return self

    def has_clone(self, name):
        return name in self.cloned

    def ensure_clone(self, url):
        self.cloned.add(repo_name_from_url(url))

    def remote_head(self, url):
        name = repo_name_from_url(url)
        self.heads_read.append(name)
        return f"{name}-t0"

    def update_repo(self, name, branch_name, fixed_commits):
        self.updates.append((name, branch_name, dict(fixed_commits)))
        if name in self.errors:
            raise self.errors[name]
        return self.outcomes.get(name, UpdateOutcome.CHANGED)

    def repo(self, name):
        return f"<repo {name}>"

    def default_branch(self, name):
        return 'main'


class FakePlatform:
    name = 'github'

    def __init__(self, errors=None, states=None, merge_errors=None):
        self.errors = errors or {}
        self.states = states or {}
        self.merge_errors = merge_errors or {}
        self.opened = []

    def open_update_pr(self, repo, repo_name, branch, base_branch, work_item_id=None):
        if repo_name in self.errors:
            raise self.errors[repo_name]
        self.opened.append((repo_name, branch, base_branch, work_item_id))
        return PullRequestRecord(platform='github', url=f"https://github.com/contoso/{repo_name}/pull/1",
                                 number=1, repo_url=URLS[repo_name], branch=branch)

    def pr_state(self, record):
        return self.states.get(repo_name_from_url(record.repo_url), PRState.PENDING)

    def merge_commit(self, record):
        name = repo_name_from_url(record.repo_url)
        if name in self.merge_errors:
            raise self.merge_errors[name]
        return f"{name}-merged"


class FakeRegistry:
    def __init__(self, platform):
        self.platform = platform

    def for_url(self, url):
        return self.platform

    def for_record(self, record):
        return self.platform


class FakeWatcher:
    def __init__(self, verdicts=None):
        self.verdicts = verdicts or {}
        self.awaited = []

    def await_pr(self, record, timeout):
        name = repo_name_from_url(record.repo_url)
        self.awaited.append((name, timeout))
        return self.verdicts.get(name, Terminal.SUCCEEDED)


class FakeBuilder:
    calls = []

    def __init__(self, source, ignore_list):
        self.ignore_list = ignore_list

    def build(self, roots):
        FakeBuilder.calls.append(list(roots))
        return list(ORDER), dict(URLS)


@pytest.fixture(autouse=True)
def reset_builder_calls():
    FakeBuilder.calls = []


@pytest.fixture
def store(cfg):
    return StateStore(cfg['work_root'])


@pytest.fixture
def cache(cfg):
    return OrderCache(cfg['cache_path'])


def make(cfg, store, cache, materializer=None, platform=None, watcher=None):
    materializer = materializer or FakeMaterializer()
    platform = platform or FakePlatform()
    watcher = watcher or FakeWatcher()
    orchestrator = Orchestrator(cfg, store=store, cache=cache, platforms=FakeRegistry(platform), watcher=watcher,
                                ignore_list=IGNORED, materializer_factory=materializer,
                                graph_builder_factory=FakeBuilder)
    return orchestrator, materializer, platform, watcher


def saved_state(store) -> PropagationState:
    return store.load(store.find_latest())


class TestFreshRun:

    def test_all_repositories_updated_in_order(self, cfg, store, cache):
        orchestrator, materializer, platform, watcher = make(cfg, store, cache)

        assert orchestrator.run() is True

        assert [u[0] for u in materializer.updates] == ORDER
        assert [o[0] for o in platform.opened] == ORDER
        assert all(o[3] == 4242 for o in platform.opened)
        assert watcher.awaited == [(name, 600) for name in ORDER]
        state = saved_state(store)
        assert all(st.status == Status.UPDATED for st in state.repo_statuses.values())
        assert state.fixed_commits == {name: f"{name}-merged" for name in ORDER}
        assert state.root_list == cfg['root_list']
        assert FakeBuilder.calls == [cfg['root_list']]

    def test_merged_commits_feed_later_repositories(self, cfg, store, cache):
        orchestrator, materializer, _, _ = make(cfg, store, cache)
        orchestrator.run()
        fixed_seen_by = {name: fixed for name, _, fixed in materializer.updates}
        assert fixed_seen_by['logging'] == {name: f"{name}-t0" for name in ORDER}
        assert fixed_seen_by['net']['logging'] == 'logging-merged'
        assert fixed_seen_by['net']['util'] == 'util-merged'
        assert fixed_seen_by['net']['app'] == 'app-t0'
        assert fixed_seen_by['app']['net'] == 'net-merged'

    def test_no_op_repositories_are_skipped(self, cfg, store, cache):
        materializer = FakeMaterializer(outcomes={'util': UpdateOutcome.NO_OP})
        orchestrator, _, platform, _ = make(cfg, store, cache, materializer=materializer)

        assert orchestrator.run() is True

        assert 'util' not in [o[0] for o in platform.opened]
        state = saved_state(store)
        assert state.repo_statuses['util'].status == Status.SKIPPED
        assert state.fixed_commits['util'] == 'util-t0'

    def test_failed_pr_does_not_block_other_repositories(self, cfg, store, cache):
        watcher = FakeWatcher(verdicts={'logging': Terminal.FAILED, 'util': Terminal.TIMED_OUT})
        orchestrator, materializer, platform, _ = make(cfg, store, cache, watcher=watcher)

        assert orchestrator.run() is False

        assert [u[0] for u in materializer.updates] == ORDER
        state = saved_state(store)
        assert state.repo_statuses['logging'].status == Status.FAILED
        assert state.repo_statuses['logging'].message == 'PR failed'
        assert state.repo_statuses['util'].message == 'PR timed_out'
        assert state.repo_statuses['net'].status == Status.UPDATED
        assert state.repo_statuses['app'].status == Status.UPDATED
        assert state.fixed_commits['logging'] == 'logging-t0'

    def test_cached_order_skips_graph_build(self, cfg, store, cache):
        cache.put(cfg['root_list'], ORDER, URLS, IGNORED)
        cfg['use_cached_order'] = True
        orchestrator, materializer, _, _ = make(cfg, store, cache)

        assert orchestrator.run() is True

        assert FakeBuilder.calls == []
        assert materializer.cloned == set(ORDER)

    def test_cache_ignored_unless_requested(self, cfg, store, cache):
        cache.put(cfg['root_list'], ['app'], {'app': URLS['app']}, IGNORED)
        orchestrator, _, _, _ = make(cfg, store, cache)
        orchestrator.run()
        assert FakeBuilder.calls == [cfg['root_list']]
        assert cache.get(cfg['root_list'], IGNORED) == (ORDER, URLS)

    def test_missing_inputs(self, cfg, store, cache):
        cfg['root_list'] = []
        orchestrator, materializer, _, _ = make(cfg, store, cache)
        with pytest.raises(ConfigError):
            orchestrator.run()
        assert materializer.updates == []
        assert store.find_latest() is None

    def test_platform_error_is_fatal_and_checkpointed(self, cfg, store, cache):
        platform = FakePlatform(errors={'net': PlatformError('github', 'push rejected')})
        orchestrator, _, _, _ = make(cfg, store, cache, platform=platform)

        with pytest.raises(PlatformError):
            orchestrator.run()

        state = saved_state(store)
        assert [state.repo_statuses[n].status for n in ORDER] == [
            Status.UPDATED, Status.UPDATED, Status.FAILED, Status.PENDING]
        assert 'push rejected' in state.repo_statuses['net'].message

    def test_cached_order_from_other_ignore_list_is_rebuilt(self, cfg, store, cache):
        vcpkg_url = 'https://github.com/microsoft/vcpkg.git'
        cache.put(cfg['root_list'], ['vcpkg'] + ORDER, dict(URLS, vcpkg=vcpkg_url))
        cfg['use_cached_order'] = True
        orchestrator, materializer, platform, _ = make(cfg, store, cache)

        assert orchestrator.run() is True

        assert FakeBuilder.calls == [cfg['root_list']]
        assert 'vcpkg' not in materializer.cloned
        assert 'vcpkg' not in [u[0] for u in materializer.updates]
        assert 'vcpkg' not in [o[0] for o in platform.opened]
        assert 'vcpkg' not in saved_state(store).repo_order

    def test_fatal_error_still_prints_final_table(self, cfg, store, cache, capsys):
        platform = FakePlatform(errors={'net': PlatformError('github', 'push rejected')})
        orchestrator, _, _, _ = make(cfg, store, cache, platform=platform)

        with pytest.raises(PlatformError):
            orchestrator.run()

        out = capsys.readouterr().out
        assert 'Final propagation status:' in out
        assert 'Failed: net' in out
        assert all(name in out for name in ORDER)

    def test_working_directory_restored_after_fatal_error(self, cfg, store, cache, tmp_path):
        original = os.getcwd()

        class WanderingMaterializer(FakeMaterializer):
            def update_repo(self, name, branch_name, fixed_commits):
                os.chdir(tmp_path)
                raise MaterializeError('checkout failed')

        orchestrator, _, _, _ = make(cfg, store, cache, materializer=WanderingMaterializer())
        with pytest.raises(MaterializeError):
            orchestrator.run()
        assert os.getcwd() == original


class TestResume:

    def _state(self, statuses, fixed=None):
        return PropagationState(
            branch_name='propagate_20260301101500',
            repo_order=list(ORDER),
            repo_url_map=dict(URLS),
            fixed_commits=fixed or {
                'logging': 'logging-merged', 'util': 'util-merged', 'net': 'net-t0', 'app': 'app-t0'},
            repo_statuses=statuses,
            root_list=['https://github.com/contoso/app.git'],
            work_item_id=77,
        )

    def test_only_failed_and_pending_are_reprocessed(self, cfg, store, cache):
        store.save(self._state({
            'logging': RepoStatus(Status.UPDATED),
            'util': RepoStatus(Status.UPDATED),
            'net': RepoStatus(Status.FAILED, message='PR failed'),
            'app': RepoStatus(Status.PENDING),
        }))
        cfg.update(resume=True, root_list=[], work_item_id=None)
        orchestrator, materializer, platform, _ = make(cfg, store, cache)

        assert orchestrator.run() is True

        assert [u[0] for u in materializer.updates] == ['net', 'app']
        assert [o[0] for o in platform.opened] == ['net', 'app']
        assert all(o[1] == 'propagate_20260301101500' and o[3] == 77 for o in platform.opened)
        assert materializer.updates[0][2]['logging'] == 'logging-merged'
        assert materializer.heads_read == []
        assert FakeBuilder.calls == []
        assert materializer.cloned == {'net', 'app'}

    def test_resume_after_fatal_error(self, cfg, store, cache):
        platform = FakePlatform(errors={'net': PlatformError('github', 'token expired')})
        orchestrator, _, _, _ = make(cfg, store, cache, platform=platform)
        with pytest.raises(PlatformError):
            orchestrator.run()

        resumed, materializer, platform, _ = make(cfg, store, cache)
        assert resumed.resume() is True

        assert [u[0] for u in materializer.updates] == ['net', 'app']
        assert materializer.updates[0][2]['util'] == 'util-merged'
        state = saved_state(store)
        assert all(st.status == Status.UPDATED for st in state.repo_statuses.values())

    def test_pr_merged_while_interrupted_is_counted(self, cfg, store, cache):
        waiting = PullRequestRecord(platform='github', url='https://github.com/contoso/net/pull/4', number=4,
                                    repo_url=URLS['net'], branch='propagate_20260301101500')
        store.save(self._state({
            'logging': RepoStatus(Status.UPDATED),
            'util': RepoStatus(Status.SKIPPED),
            'net': RepoStatus(Status.IN_PROGRESS, pr=waiting, message='waiting for PR'),
            'app': RepoStatus(Status.PENDING),
        }))
        cfg['resume'] = True
        platform = FakePlatform(states={'net': PRState.SUCCEEDED})
        orchestrator, materializer, _, _ = make(cfg, store, cache, platform=platform)

        assert orchestrator.run() is True

        assert [u[0] for u in materializer.updates] == ['app']
        assert materializer.updates[0][2]['net'] == 'net-merged'
        assert saved_state(store).repo_statuses['net'].status == Status.UPDATED

    def test_merged_pr_of_failed_repo_advances_fixed_commit(self, cfg, store, cache):
        platform = FakePlatform(merge_errors={'net': PlatformError('github', 'rate limited')})
        orchestrator, _, _, _ = make(cfg, store, cache, platform=platform)
        with pytest.raises(PlatformError):
            orchestrator.run()
        interrupted = saved_state(store).repo_statuses['net']
        assert interrupted.status == Status.FAILED
        assert interrupted.pr is not None

        platform = FakePlatform(states={'net': PRState.SUCCEEDED})
        materializer = FakeMaterializer(outcomes={'net': UpdateOutcome.NO_OP})
        resumed, _, _, _ = make(cfg, store, cache, materializer=materializer, platform=platform)
        assert resumed.resume() is True

        assert [u[0] for u in materializer.updates] == ['app']
        assert materializer.updates[0][2]['net'] == 'net-merged'
        state = saved_state(store)
        assert state.repo_statuses['net'].status == Status.UPDATED
        assert state.fixed_commits['net'] == 'net-merged'

    def test_failed_repo_with_closed_pr_is_redone(self, cfg, store, cache):
        closed = PullRequestRecord(platform='github', url='https://github.com/contoso/net/pull/4', number=4,
                                   status='closed', repo_url=URLS['net'], branch='propagate_20260301101500')
        store.save(self._state({
            'logging': RepoStatus(Status.UPDATED),
            'util': RepoStatus(Status.UPDATED),
            'net': RepoStatus(Status.FAILED, pr=closed, message='PR failed'),
            'app': RepoStatus(Status.PENDING),
        }))
        cfg['resume'] = True
        platform = FakePlatform(states={'net': PRState.FAILED})
        orchestrator, materializer, platform, _ = make(cfg, store, cache, platform=platform)

        assert orchestrator.run() is True

        assert [u[0] for u in materializer.updates] == ['net', 'app']
        assert [o[0] for o in platform.opened] == ['net', 'app']

    def test_nothing_to_resume(self, cfg, store, cache):
        cfg['resume'] = True
        orchestrator, _, _, _ = make(cfg, store, cache)
        with pytest.raises(StateLoadError):
            orchestrator.run()
