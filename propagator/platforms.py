"""
Hosting platform adapters: push an update branch, open (or reuse) its pull request,
and answer the questions the PR watcher asks. One adapter per platform, picked by the
remote URL's host.

Requires: GitPython, PyGithub, requests
"""

import logging
import subprocess
import urllib.parse
from typing import Callable, Dict, Optional, Set

import requests
from git import Repo, GitCommandError
from github import Github, Auth
from github.GithubException import GithubException

from .errors import PlatformError
from .models import PRState, PullRequestRecord
from .urls import AZURE, GITHUB, parse_azure_repo, parse_github_owner_repo, platform_for_url

logger = logging.getLogger(__name__)

PR_TITLE = '[autogenerated] update dependencies'
AZURE_DEVOPS_RESOURCE = '499b84ac-1321-427f-aa17-267ca6975798'


def pr_body(branch: str) -> str:
    return (
        'Automated dependency update.\n\n'
        f'Submodule pointers are moved to the commits pinned for propagation branch `{branch}`. '
        'Dependencies of this repository were updated and merged before this pull request was opened.'
    )


class Platform:
    name = ''

    def __init__(self, cfg: Dict[str, object]):
        self.cfg = cfg

    def push_branch(self, repo: Repo, branch: str):
        logger.info(f"Pushing {branch} to origin")
        try:
            # resumed runs rewrite the update branch
            repo.git.push('origin', '--force-with-lease', f"{branch}:{branch}")
        except GitCommandError as e:
            raise PlatformError(self.name, f"Failed to push {branch}: {e}") from e

    def open_update_pr(self, repo: Repo, repo_name: str, branch: str, base_branch: str,
                       work_item_id: Optional[int] = None) -> PullRequestRecord:
        try:
            repo_url = repo.remotes.origin.url  # type: ignore[attr-defined]
        except (AttributeError, IndexError) as e:
            raise PlatformError(self.name, f"'{repo_name}' has no origin remote") from e

        self.push_branch(repo, branch)
        if existing := self.find_open_pr(repo_url, branch, base_branch):
            logger.info(f"Reusing open PR for {repo_name}: {existing.url}")
            return existing

        record = self.create_pr(repo_url, branch, base_branch, PR_TITLE, pr_body(branch), work_item_id)
        logger.info(f"Opened PR for {repo_name}: {record.url}")
        self.enable_auto_complete(record)
        return record

    def find_open_pr(self, repo_url: str, branch: str, base_branch: str) -> Optional[PullRequestRecord]:
        raise NotImplementedError

    def create_pr(self, repo_url: str, branch: str, base_branch: str, title: str, body: str,
                  work_item_id: Optional[int]) -> PullRequestRecord:
        raise NotImplementedError

    def enable_auto_complete(self, record: PullRequestRecord):
        raise NotImplementedError

    def pr_state(self, record: PullRequestRecord) -> PRState:
        raise NotImplementedError

    def close_pr(self, record: PullRequestRecord):
        raise NotImplementedError

    def merge_commit(self, record: PullRequestRecord) -> str:
        raise NotImplementedError


# ========================
# GitHub
# ========================

FAILED_CHECK_CONCLUSIONS = {'failure', 'cancelled', 'timed_out', 'action_required', 'startup_failure'}


class GitHubPlatform(Platform):
    name = GITHUB

    def __init__(self, cfg: Dict[str, object], client: Optional[Github] = None):
        super().__init__(cfg)
        if client is not None:
            self.gh = client
        else:
            token = str(cfg.get('gh_token') or '')
            api = str(cfg.get('gh_api') or 'https://api.github.com')
            if not token:
                logger.warning('GH_API_TOKEN not set; using unauthenticated GitHub access')
            self.gh = Github(auth=Auth.Token(token), base_url=api) if token else Github(base_url=api)

    def _owner_repo(self, repo_url: str):
        if not (parsed := parse_github_owner_repo(repo_url)):
            raise PlatformError(self.name, f"Not a GitHub repository URL: {repo_url}")
        return parsed

    def _repo(self, repo_url: str):
        owner, repo_name = self._owner_repo(repo_url)
        try:
            return self.gh.get_repo(f"{owner}/{repo_name}")
        except GithubException as e:
            raise PlatformError(self.name, f"Cannot access {owner}/{repo_name} ({e.status}): {e.data or e}") from e

    def _pull(self, record: PullRequestRecord):
        try:
            return self._repo(record.repo_url).get_pull(record.number)
        except GithubException as e:
            raise PlatformError(self.name, f"Cannot read PR {record.url} ({e.status}): {e.data or e}") from e

    def _record(self, pr, repo_url: str, branch: str) -> PullRequestRecord:
        return PullRequestRecord(platform=self.name, url=pr.html_url, number=pr.number,
                                 repo_url=repo_url, branch=branch)

    def find_open_pr(self, repo_url, branch, base_branch):
        owner, _ = self._owner_repo(repo_url)
        gh_repo = self._repo(repo_url)
        try:
            for pr in gh_repo.get_pulls(state='open', base=base_branch, head=f"{owner}:{branch}"):
                if pr.head.ref == branch:
                    return self._record(pr, repo_url, branch)
        except GithubException as e:
            raise PlatformError(self.name, f"Listing PRs failed ({e.status}): {e.data or e}") from e
        return None

    def create_pr(self, repo_url, branch, base_branch, title, body, work_item_id):
        # work items are an Azure DevOps concept; nothing to link here
        gh_repo = self._repo(repo_url)
        try:
            pr = gh_repo.create_pull(title=title, body=body, head=branch, base=base_branch, maintainer_can_modify=True)
        except GithubException as e:
            raise PlatformError(self.name, f"PR creation failed ({e.status}): {e.data or e}") from e
        return self._record(pr, repo_url, branch)

    def enable_auto_complete(self, record):
        try:
            self._pull(record).enable_automerge(merge_method='SQUASH')
        except GithubException as e:
            logger.warning(f"Could not enable auto-merge on {record.url} ({e.status}); it needs a manual merge")

    def _required_checks(self, gh_repo, base_branch: str) -> Optional[Set[str]]:
        """Status contexts the base branch requires, or None when branch protection can't be read."""
        try:
            required = gh_repo.get_branch(base_branch).get_required_status_checks()
        except GithubException as e:
            logger.debug(f"No required checks readable for {base_branch} ({e.status}); every check counts")
            return None
        return set(required.contexts or [])

    def pr_state(self, record):
        pr = self._pull(record)
        if pr.merged:
            return PRState.SUCCEEDED
        if pr.state == 'closed':
            return PRState.FAILED
        gh_repo = self._repo(record.repo_url)
        required = self._required_checks(gh_repo, pr.base.ref)
        try:
            commit = gh_repo.get_commit(pr.head.sha)
            for run in commit.get_check_runs():
                if run.conclusion in FAILED_CHECK_CONCLUSIONS and (required is None or run.name in required):
                    logger.info(f"Check '{run.name}' concluded {run.conclusion} on {record.url}")
                    return PRState.FAILED
            for status in commit.get_combined_status().statuses:
                if status.state in ('failure', 'error') and (required is None or status.context in required):
                    logger.info(f"Status '{status.context}' is {status.state} on {record.url}")
                    return PRState.FAILED
        except GithubException as e:
            raise PlatformError(self.name, f"Reading checks for {record.url} failed ({e.status}): {e.data or e}") from e
        return PRState.PENDING

    def close_pr(self, record):
        try:
            self._pull(record).edit(state='closed')
        except GithubException as e:
            raise PlatformError(self.name, f"Closing {record.url} failed ({e.status}): {e.data or e}") from e

    def merge_commit(self, record):
        sha = self._pull(record).merge_commit_sha
        if not sha:
            raise PlatformError(self.name, f"{record.url} has no merge commit")
        return sha


# ========================
# Azure DevOps
# ========================

def az_cli_token() -> str:
    """Access token from the signed-in Azure CLI session (interactive/SSO fallback)."""
    try:
        out = subprocess.run(
            ['az', 'account', 'get-access-token', '--resource', AZURE_DEVOPS_RESOURCE,
             '--query', 'accessToken', '-o', 'tsv'],
            check=True, capture_output=True, text=True, timeout=120,
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise PlatformError(AZURE, f"No Azure DevOps token given and 'az account get-access-token' failed: {e}") from e
    return out.stdout.strip()


class AzureDevOpsPlatform(Platform):
    name = AZURE
    api_version = '7.1'
    policy_api_version = '7.1-preview.1'

    def __init__(self, cfg: Dict[str, object], session: Optional[requests.Session] = None,
                 token_provider: Callable[[], str] = az_cli_token):
        super().__init__(cfg)
        self.api = str(cfg.get('azure_api') or 'https://dev.azure.com').rstrip('/')
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json', 'User-Agent': 'propagate-updates/1.0'})
        self._token_provider = token_provider
        self._authenticated = False
        if token := str(cfg.get('azure_token') or ''):
            self.session.auth = ('', token)
            self._authenticated = True

    def _ensure_auth(self):
        if self._authenticated:
            return
        self.session.headers['Authorization'] = f"Bearer {self._token_provider()}"
        self._authenticated = True

    def _request(self, method: str, url: str, api_version: Optional[str] = None, **kwargs) -> dict:
        self._ensure_auth()
        params = dict(kwargs.pop('params', None) or {})
        params.setdefault('api-version', api_version or self.api_version)
        try:
            resp = self.session.request(method, url, params=params, timeout=30, **kwargs)
        except requests.RequestException as e:
            raise PlatformError(self.name, f"{method} {url} failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise PlatformError(self.name, f"{method} {url} failed: {resp.status_code} {resp.text[:500]}")
        return resp.json() if resp.content else {}

    def _parts(self, repo_url: str):
        if not (parsed := parse_azure_repo(repo_url)):
            raise PlatformError(self.name, f"Not an Azure DevOps repository URL: {repo_url}")
        return tuple(urllib.parse.quote(p, safe='') for p in parsed)

    def _repo_api(self, repo_url: str) -> str:
        org, project, repo = self._parts(repo_url)
        return f"{self.api}/{org}/{project}/_apis/git/repositories/{repo}"

    def _web_url(self, repo_url: str, pr_id: int) -> str:
        org, project, repo = self._parts(repo_url)
        return f"{self.api}/{org}/{project}/_git/{repo}/pullrequest/{pr_id}"

    def _record(self, pr: dict, repo_url: str, branch: str) -> PullRequestRecord:
        pr_id = int(pr['pullRequestId'])
        return PullRequestRecord(platform=self.name, url=self._web_url(repo_url, pr_id), number=pr_id,
                                 repo_url=repo_url, branch=branch)

    def _get_pr(self, record: PullRequestRecord) -> dict:
        return self._request('GET', f"{self._repo_api(record.repo_url)}/pullrequests/{record.number}")

    def find_open_pr(self, repo_url, branch, base_branch):
        found = self._request('GET', f"{self._repo_api(repo_url)}/pullrequests", params={
            'searchCriteria.status': 'active',
            'searchCriteria.sourceRefName': f"refs/heads/{branch}",
            'searchCriteria.targetRefName': f"refs/heads/{base_branch}",
        })
        for pr in found.get('value', []):
            return self._record(pr, repo_url, branch)
        return None

    def create_pr(self, repo_url, branch, base_branch, title, body, work_item_id):
        payload = {
            'sourceRefName': f"refs/heads/{branch}",
            'targetRefName': f"refs/heads/{base_branch}",
            'title': title,
            'description': body,
        }
        if work_item_id is not None:
            payload['workItemRefs'] = [{'id': str(work_item_id)}]
        pr = self._request('POST', f"{self._repo_api(repo_url)}/pullrequests", json=payload)
        return self._record(pr, repo_url, branch)

    def enable_auto_complete(self, record):
        pr = self._get_pr(record)
        created_by = (pr.get('createdBy') or {}).get('id')
        if not created_by:
            logger.warning(f"Cannot set auto-complete on {record.url}: creator unknown")
            return
        self._request('PATCH', f"{self._repo_api(record.repo_url)}/pullrequests/{record.number}", json={
            'autoCompleteSetBy': {'id': created_by},
            'completionOptions': {'mergeStrategy': 'squash', 'deleteSourceBranch': True},
        })

    def pr_state(self, record):
        pr = self._get_pr(record)
        status = pr.get('status')
        if status == 'completed':
            return PRState.SUCCEEDED
        if status == 'abandoned':
            return PRState.FAILED

        org, project, _ = self._parts(record.repo_url)
        project_id = ((pr.get('repository') or {}).get('project') or {}).get('id')
        if not project_id:
            return PRState.PENDING
        evaluations = self._request(
            'GET', f"{self.api}/{org}/{project}/_apis/policy/evaluations",
            api_version=self.policy_api_version,
            params={'artifactId': f"vstfs:///CodeReview/CodeReviewId/{project_id}/{record.number}"},
        )
        for evaluation in evaluations.get('value', []):
            blocking = (evaluation.get('configuration') or {}).get('isBlocking', True)
            if blocking and evaluation.get('status') in ('rejected', 'broken'):
                return PRState.FAILED
        return PRState.PENDING

    def close_pr(self, record):
        self._request('PATCH', f"{self._repo_api(record.repo_url)}/pullrequests/{record.number}",
                      json={'status': 'abandoned'})

    def merge_commit(self, record):
        sha = (self._get_pr(record).get('lastMergeCommit') or {}).get('commitId')
        if not sha:
            raise PlatformError(self.name, f"{record.url} has no merge commit")
        return sha


# ========================
# Dispatch
# ========================

class PlatformRegistry:
    """One adapter per platform, created on first use and chosen by remote URL host."""

    def __init__(self, cfg: Dict[str, object], factories: Optional[Dict[str, Callable[[Dict[str, object]], Platform]]] = None):
        self.cfg = cfg
        self.factories = factories or {GITHUB: GitHubPlatform, AZURE: AzureDevOpsPlatform}
        self._platforms: Dict[str, Platform] = {}

    def get(self, name: str) -> Platform:
        if name not in self._platforms:
            if name not in self.factories:
                raise PlatformError(name, 'No adapter registered')
            self._platforms[name] = self.factories[name](self.cfg)
        return self._platforms[name]

    def for_url(self, url: str) -> Platform:
        return self.get(platform_for_url(url))

    def for_record(self, record: PullRequestRecord) -> Platform:
        return self.get(record.platform)
