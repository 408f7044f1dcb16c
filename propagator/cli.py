#!/usr/bin/env python3
"""
Propagate dependency updates bottom-up through a tree of repositories linked by submodules.

- Discover the submodule graph from the given roots and order it leaves first
- Pin every repository's current commit
- For each repository, bump its submodule pointers, push a branch and open a PR
  (GitHub or Azure DevOps), then wait for the PR before moving on
- Supports --resume after an interrupted run

Requires: GitPython, PyGithub, requests
"""

import argparse
import logging
import sys

from .config import build_config, load_ignore_list
from .errors import PropagationError
from .log import log_error, setup_logging
from .order_cache import OrderCache
from .orchestrator import Orchestrator
from .platforms import PlatformRegistry
from .state import StateStore
from .watcher import PRWatcher

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='propagate-updates',
        description='Open one PR per repository, leaves first, to propagate submodule updates.'
    )
    parser.add_argument('--root', dest='roots', action='append', metavar='URL',
                        help='Root repository URL (repeatable); required unless --resume')
    parser.add_argument('--work-item', dest='work_item', metavar='ID',
                        help='Azure DevOps work item to link PRs to; required unless --resume')
    parser.add_argument('--token', help='Access token (default: GH_API_TOKEN / AZURE_DEVOPS_EXT_PAT, then SSO)')
    parser.add_argument('--use-cached-order', action='store_true',
                        help='Reuse the repo order computed by an earlier run for the same roots')
    parser.add_argument('--keep-failed-prs', action='store_true',
                        help='Leave PRs whose checks fail open instead of closing them')
    parser.add_argument('--resume', action='store_true', help='Resume the latest interrupted run')
    parser.add_argument('--work-root', metavar='DIR', help='Where session directories live (default: ~/propagate)')
    parser.add_argument('--ignore-file', metavar='PATH', help='JSON list of repository names never to update')
    parser.add_argument('--pr-timeout', type=int, metavar='SECONDS', help='How long to wait for each PR')
    parser.add_argument('--poll-interval', type=int, metavar='SECONDS', help='Seconds between PR status checks')
    parser.add_argument('--log-level', default='INFO', help='Logging level (default: INFO)')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level)
    try:
        cfg = build_config(args)
        platforms = PlatformRegistry(cfg)
        orchestrator = Orchestrator(
            cfg,
            store=StateStore(cfg['work_root']),
            cache=OrderCache(cfg['cache_path']),
            platforms=platforms,
            watcher=PRWatcher(platforms, poll_interval=cfg['poll_interval'], keep_failed_prs=cfg['keep_failed_prs']),
            ignore_list=load_ignore_list(cfg['ignore_file']),
        )
        ok = orchestrator.run()
    except PropagationError as e:
        log_error(str(e))
        sys.exit(1)
    sys.exit(0 if ok else 1)


if __name__ == '__main__':
    main()
