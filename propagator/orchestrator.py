"""
End-to-end propagation run.

- Obtain the leaf-first repo order (cache or fresh graph build)
- Snapshot every repository's HEAD commit once, at the start
- For each repo in order: bump submodule pointers to the snapshot, push, open a PR,
  wait for it to merge, then advance that repo's snapshot entry to the merge commit
- Checkpoint after every repository so --resume can pick up where a run stopped
"""

import logging
import os
from typing import Callable, Dict, Iterable, Optional

from .config import validate_config
from .errors import MaterializeError, PlatformError, PropagationError, StateLoadError
from .graph import SubmoduleGraphBuilder
from .log import end_log_group, log_error, start_log_group
from .materializer import Materializer
from .models import PRState, PropagationState, Status, Terminal, UpdateOutcome
from .order_cache import OrderCache
from .state import StateStore, new_branch_name
from .status import StatusTracker

logger = logging.getLogger(__name__)


class Orchestrator:
    def __init__(self, cfg: Dict[str, object], store: StateStore, cache: OrderCache, platforms, watcher,
                 ignore_list: Iterable[str] = (),
                 materializer_factory: Callable[..., Materializer] = Materializer,
                 graph_builder_factory: Callable[..., SubmoduleGraphBuilder] = SubmoduleGraphBuilder):
        self.cfg = cfg
        self.store = store
        self.cache = cache
        self.platforms = platforms
        self.watcher = watcher
        self.ignore_list = set(ignore_list)
        self.materializer_factory = materializer_factory
        self.graph_builder_factory = graph_builder_factory
        self.materializer: Optional[Materializer] = None
        self.tracker: Optional[StatusTracker] = None

    # ========================
    # Entry points
    # ========================

    def run(self) -> bool:
        """Run (or resume) a propagation; True when every repository ended updated or skipped."""
        original_cwd = os.getcwd()
        try:
            state = self._resume_state() if self.cfg.get('resume') else self._fresh_state()
            for name in self.tracker.pending():
                self._process(state, name)
            return self.tracker.report(final=True)
        except PropagationError:
            if self.tracker is not None:
                self.tracker.report(final=True)
            raise
        finally:
            os.chdir(original_cwd)

    def resume(self) -> bool:
        self.cfg['resume'] = True
        return self.run()

    def _fresh_state(self) -> PropagationState:
        validate_config(self.cfg)
        roots = list(self.cfg['root_list'])  # type: ignore[arg-type]
        branch_name = new_branch_name()
        self.materializer = self.materializer_factory(self.store.session_dir(branch_name))
        logger.info(f"Starting propagation {branch_name} for {len(roots)} root(s)")

        cached = self.cache.get(roots, self.ignore_list) if self.cfg.get('use_cached_order') else None
        if cached:
            order, url_map = cached
            for name in order:
                if not self.materializer.has_clone(name):
                    self.materializer.ensure_clone(url_map[name])
        else:
            builder = self.graph_builder_factory(self.materializer, self.ignore_list)
            order, url_map = builder.build(roots)
            self.cache.put(roots, order, url_map, self.ignore_list)

        logger.info(f"Pinning current commits of {len(order)} repositories")
        fixed_commits = {name: self.materializer.remote_head(url_map[name]) for name in order}

        self.tracker = StatusTracker(order)
        state = PropagationState(
            branch_name=branch_name,
            repo_order=order,
            repo_url_map=url_map,
            fixed_commits=fixed_commits,
            repo_statuses=self.tracker.snapshot(),
            root_list=roots,
            work_item_id=self.cfg.get('work_item_id'),  # type: ignore[arg-type]
        )
        self.store.save(state)
        return state

    def _resume_state(self) -> PropagationState:
        path = self.store.find_latest()
        if path is None:
            raise StateLoadError(f"No propagation state to resume under {self.store.work_root}")
        state = self.store.load(path)
        logger.info(f"Resuming propagation {state.branch_name}")
        self.materializer = self.materializer_factory(self.store.session_dir(state.branch_name))
        self.tracker = StatusTracker(state.repo_order)
        self.tracker.load(state.repo_statuses)
        self._settle_interrupted(state)
        self.tracker.reset_for_resume()

        for name in self.tracker.pending():
            if not self.materializer.has_clone(name):
                self.materializer.ensure_clone(state.repo_url_map[name])
        self._checkpoint(state)
        return state

    def _settle_interrupted(self, state: PropagationState):
        """A PR recorded before the run stopped may have merged since; count it rather than redo it.

        Covers failed repos too: merge_commit or a status poll can fail after the merge itself.
        """
        for name in state.repo_order:
            st = self.tracker.get(name)
            if st.status not in (Status.IN_PROGRESS, Status.FAILED) or st.pr is None:
                continue
            platform = self.platforms.for_record(st.pr)
            if platform.pr_state(st.pr) == PRState.SUCCEEDED:
                state.fixed_commits[name] = platform.merge_commit(st.pr)
                st.pr.status = Terminal.SUCCEEDED.value
                self.tracker.set_status(name, Status.UPDATED, pr=st.pr, message='merged while interrupted')

    # ========================
    # Per repository
    # ========================

    def _checkpoint(self, state: PropagationState):
        state.repo_statuses = self.tracker.snapshot()
        self.store.save(state)

    def _process(self, state: PropagationState, name: str):
        start_log_group(f"Propagating {name}")
        try:
            self.tracker.set_status(name, Status.IN_PROGRESS)
            outcome = self.materializer.update_repo(name, state.branch_name, state.fixed_commits)
            if outcome == UpdateOutcome.NO_OP:
                self.tracker.set_status(name, Status.SKIPPED, message='already up to date')
                return

            platform = self.platforms.for_url(state.repo_url_map[name])
            record = platform.open_update_pr(
                self.materializer.repo(name), name, state.branch_name,
                self.materializer.default_branch(name), state.work_item_id,
            )
            self.tracker.set_status(name, Status.IN_PROGRESS, pr=record, message='waiting for PR')
            self._checkpoint(state)

            verdict = self.watcher.await_pr(record, self.cfg.get('pr_timeout'))
            if verdict == Terminal.SUCCEEDED:
                state.fixed_commits[name] = platform.merge_commit(record)
                self.tracker.set_status(name, Status.UPDATED, pr=record)
            else:
                self.tracker.set_status(name, Status.FAILED, pr=record, message=f"PR {verdict.value}")
        except (MaterializeError, PlatformError) as e:
            self.tracker.set_status(name, Status.FAILED, message=str(e))
            log_error(f"Propagation stopped at {name}: {e}")
            raise
        finally:
            self._checkpoint(state)
            end_log_group()
