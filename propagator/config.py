import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Set

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_PR_TIMEOUT = 2 * 60 * 60
DEFAULT_POLL_INTERVAL = 60
STATE_FILE_NAME = 'propagation_state.json'
IGNORE_FILE_NAME = 'ignores.json'


# ========================
# Configuration
# ========================

def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, '').strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{raw}'")


def build_config(args) -> Dict[str, object]:
    """Merge parsed CLI arguments with environment defaults into one config dict."""
    token = (getattr(args, 'token', None) or '').strip()
    work_root = getattr(args, 'work_root', None) or os.environ.get('PROPAGATE_WORK_ROOT') or str(Path.home() / 'propagate')
    work_root_path = Path(work_root).expanduser().resolve()

    pr_timeout = getattr(args, 'pr_timeout', None)
    poll_interval = getattr(args, 'poll_interval', None)

    return {
        'root_list': list(getattr(args, 'roots', None) or []),
        'work_item_id': getattr(args, 'work_item', None),
        'gh_token': token or os.environ.get('GH_API_TOKEN', '').strip(),
        'azure_token': token or os.environ.get('AZURE_DEVOPS_EXT_PAT', '').strip(),
        'gh_api': os.environ.get('GH_API', 'https://api.github.com'),
        'azure_api': os.environ.get('AZURE_DEVOPS_API', 'https://dev.azure.com'),
        'use_cached_order': bool(getattr(args, 'use_cached_order', False)),
        'keep_failed_prs': bool(getattr(args, 'keep_failed_prs', False)),
        'resume': bool(getattr(args, 'resume', False)),
        'work_root': work_root_path,
        'cache_path': work_root_path / '.cache' / 'propagate_updates' / 'order_cache.json',
        'ignore_file': Path(getattr(args, 'ignore_file', None) or work_root_path / IGNORE_FILE_NAME),
        'pr_timeout': pr_timeout if pr_timeout is not None else _int_env('PROPAGATE_PR_TIMEOUT', DEFAULT_PR_TIMEOUT),
        'poll_interval': poll_interval if poll_interval is not None else _int_env('PROPAGATE_POLL_INTERVAL', DEFAULT_POLL_INTERVAL),
    }


def validate_config(cfg: Dict[str, object]):
    if cfg.get('resume'):
        return
    missing = []
    if not cfg.get('root_list'):
        missing.append('--root')
    if cfg.get('work_item_id') is None:
        missing.append('--work-item')
    if missing:
        raise ConfigError(f"Missing required arguments (unless --resume): {', '.join(missing)}")
    try:
        cfg['work_item_id'] = int(cfg['work_item_id'])  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ConfigError(f"Work item id must be numeric, got '{cfg['work_item_id']}'")


# ========================
# Ignore list
# ========================

def load_ignore_list(path: Optional[Path]) -> Set[str]:
    """Repository names that are never graphed or updated (vendored third-party code).

    Accepts either a bare JSON list or {"ignore": [...]}. A missing file means nothing is ignored.
    """
    if not path or not Path(path).exists():
        logger.info(f"No ignore list at {path}; graphing every submodule")
        return set()
    try:
        data = json.loads(Path(path).read_text(encoding='utf-8'))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not read ignore list {path}: {e}")
    names: List[str] = data.get('ignore', []) if isinstance(data, dict) else data
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        raise ConfigError(f"Ignore list {path} must be a list of repository names")
    ignored = {n.strip().lower() for n in names if n.strip()}
    logger.info(f"Loaded {len(ignored)} ignored repositories from {path}")
    return ignored
