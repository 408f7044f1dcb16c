import re
import urllib.parse
from typing import Optional, Tuple

from .errors import PlatformError

GITHUB = 'github'
AZURE = 'azure'


def repo_name_from_url(url: str) -> str:
    """Final path segment of a remote URL, without a trailing .git."""
    trimmed = url.strip().rstrip('/')
    if trimmed.endswith('.git'):
        trimmed = trimmed[:-4]
    cut = max(trimmed.rfind('/'), trimmed.rfind(':'), trimmed.rfind('\\'))
    name = trimmed[cut + 1:]
    if not name:
        raise ValueError(f"Cannot derive a repository name from '{url}'")
    return name


def normalize_url(url: str) -> str:
    normalized = url.strip().lower().rstrip('/')
    if normalized.endswith('.git'):
        normalized = normalized[:-4]
    # https://org@dev.azure.com/... and https://dev.azure.com/... are the same remote
    return re.sub(r'^(https?://)[^@/]+@', r'\1', normalized)


def _parent_of(url: str) -> str:
    scheme_end = url.find('://')
    slash = url.rfind('/')
    if slash != -1 and (scheme_end == -1 or slash > scheme_end + 2):
        return url[:slash]
    colon = url.rfind(':')
    if colon != -1 and scheme_end == -1:
        return url[:colon + 1]
    raise ValueError(f"Cannot resolve a relative submodule URL against '{url}'")


def resolve_submodule_url(parent_url: str, sub_url: str) -> str:
    """Resolve ./ and ../ submodule URLs against the superproject's remote, as git does."""
    if not sub_url.startswith(('./', '../')):
        return sub_url
    base = parent_url.strip().rstrip('/')
    rel = sub_url
    while True:
        if rel.startswith('./'):
            rel = rel[2:]
        elif rel.startswith('../'):
            rel = rel[3:]
            base = _parent_of(base)
        else:
            break
    separator = '' if base.endswith(':') else '/'
    return f"{base}{separator}{rel}"


def url_host(url: str) -> str:
    parsed = urllib.parse.urlparse(url)
    if parsed.hostname:
        return parsed.hostname.lower()
    m = re.match(r'^(?:[^@/]+@)?([^:/]+):', url)
    return m.group(1).lower() if m else ''


def platform_for_url(url: str) -> str:
    host = url_host(url)
    if host == 'github.com' or host.endswith('.github.com'):
        return GITHUB
    if host in ('dev.azure.com', 'ssh.dev.azure.com') or host.endswith('.visualstudio.com'):
        return AZURE
    raise PlatformError('unknown', f"No hosting platform handles '{url}' (host '{host or '?'}')")


def parse_github_owner_repo(url: str) -> Optional[Tuple[str, str]]:
    m = re.search(r'github\.com[/:]([^/]+)/([^/]+?)(?:\.git)?/?$', url)
    return (m.group(1), m.group(2)) if m else None


def parse_azure_repo(url: str) -> Optional[Tuple[str, str, str]]:
    """(organization, project, repository) for any Azure DevOps remote form."""
    patterns = (
        r'dev\.azure\.com/([^/]+)/([^/]+)/_git/([^/]+?)(?:\.git)?/?$',
        r'ssh\.dev\.azure\.com:v3/([^/]+)/([^/]+)/([^/]+?)(?:\.git)?/?$',
    )
    for pattern in patterns:
        if m := re.search(pattern, url):
            return tuple(urllib.parse.unquote(g) for g in m.groups())  # type: ignore[return-value]
    if m := re.search(r'([^/.@]+)\.visualstudio\.com/(?:DefaultCollection/)?([^/]+)/_git/([^/]+?)(?:\.git)?/?$', url):
        return tuple(urllib.parse.unquote(g) for g in m.groups())  # type: ignore[return-value]
    return None
