import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .urls import normalize_url

logger = logging.getLogger(__name__)


def cache_key(root_list: Iterable[str], ignore_list: Iterable[str] = ()) -> str:
    """Order-independent key: the same roots in any sequence hit the same entry.

    The ignore list is part of the key, since it changes which repositories the order holds.
    """
    key = '|'.join(sorted({normalize_url(u) for u in root_list}))
    ignored = sorted({n.strip().lower() for n in ignore_list if n.strip()})
    return f"{key}#ignore={','.join(ignored)}" if ignored else key


class OrderCache:
    """Previously computed repo orders, keyed by root list and ignore list. An optimisation, never a source of truth."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable order cache {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, root_list: Iterable[str], ignore_list: Iterable[str] = ()) -> Optional[Tuple[List[str], Dict[str, str]]]:
        entry = self._read().get(cache_key(root_list, ignore_list))
        if not entry:
            return None
        order = entry.get('order')
        url_map = entry.get('url_map')
        if not isinstance(order, list) or not isinstance(url_map, dict) or any(n not in url_map for n in order):
            logger.warning(f"Order cache entry in {self.path} is incomplete; rebuilding")
            return None
        logger.info(f"Using cached repo order from {entry.get('cached_at', 'unknown time')} ({len(order)} repos)")
        return list(order), dict(url_map)

    def put(self, root_list: Iterable[str], order: List[str], url_map: Dict[str, str], ignore_list: Iterable[str] = ()):
        entries = self._read()
        entries[cache_key(root_list, ignore_list)] = {
            'order': list(order),
            'url_map': dict(url_map),
            'cached_at': datetime.now(timezone.utc).isoformat(),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix('.tmp')
        tmp.write_text(json.dumps(entries, indent=2), encoding='utf-8')
        os.replace(tmp, self.path)
