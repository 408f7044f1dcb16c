"""
Submodule dependency graph discovery and leaf-first ordering.

- Breadth-first discovery from the root URLs: each repository is cloned once and its
  .gitmodules read; ignored names are dropped before they become nodes or edges.
- Depth is the longest distance from any root, assigned with Kahn's algorithm over the
  explicit adjacency, so a cyclic submodule reference surfaces as an error.
- Order is depth descending (leaves first), ties in discovery order.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set, Tuple

from .errors import GraphBuildError, MaterializeError
from .models import RepoNode
from .urls import repo_name_from_url

logger = logging.getLogger(__name__)


@dataclass
class DependencyGraph:
    urls: Dict[str, str] = field(default_factory=dict)          # name -> url, discovery order
    edges: Dict[str, List[str]] = field(default_factory=dict)   # parent -> submodules
    roots: List[str] = field(default_factory=list)

    def add_node(self, name: str, url: str) -> bool:
        if name in self.urls:
            return False
        self.urls[name] = url
        self.edges[name] = []
        return True

    def add_edge(self, parent: str, child: str):
        if child not in self.edges[parent]:
            self.edges[parent].append(child)

    def edge_list(self) -> List[Tuple[str, str]]:
        return [(parent, child) for parent, children in self.edges.items() for child in children]


def assign_depths(graph: DependencyGraph) -> Dict[str, RepoNode]:
    in_degree = {name: 0 for name in graph.urls}
    for _, child in graph.edge_list():
        in_degree[child] += 1

    depth = {name: 0 for name in graph.urls}
    ready = deque(name for name in graph.urls if in_degree[name] == 0)
    visited = 0
    while ready:
        name = ready.popleft()
        visited += 1
        for child in graph.edges[name]:
            depth[child] = max(depth[child], depth[name] + 1)
            in_degree[child] -= 1
            if in_degree[child] == 0:
                ready.append(child)

    if visited < len(graph.urls):
        stuck = [name for name, degree in in_degree.items() if degree > 0]
        raise GraphBuildError(f"Submodule references form a cycle through: {', '.join(stuck)}")

    return {name: RepoNode(name=name, url=url, depth=depth[name]) for name, url in graph.urls.items()}


def leaf_first_order(nodes: Dict[str, RepoNode]) -> List[str]:
    # sorted() is stable, so equal depths keep discovery order
    return [node.name for node in sorted(nodes.values(), key=lambda n: -n.depth)]


class SubmoduleGraphBuilder:
    def __init__(self, source, ignore_list: Iterable[str] = ()):
        self.source = source
        self.ignore_list: Set[str] = {n.lower() for n in ignore_list}
        self.graph = DependencyGraph()

    def _is_ignored(self, name: str) -> bool:
        return name.lower() in self.ignore_list

    @staticmethod
    def _name_of(url: str, parent: str = '') -> str:
        try:
            return repo_name_from_url(url)
        except ValueError as e:
            where = f" (submodule of '{parent}')" if parent else ''
            raise GraphBuildError(f"Unusable repository URL{where}: {e}") from e

    def _materialize(self, name: str, url: str) -> str:
        try:
            self.source.ensure_clone(url)
            return self.source.origin_url(name)
        except MaterializeError as e:
            raise GraphBuildError(f"Could not reach '{name}' ({url}): {e}") from e

    def discover(self, root_urls: List[str]) -> DependencyGraph:
        graph = DependencyGraph()
        queue = deque()
        for url in root_urls:
            name = self._name_of(url)
            if self._is_ignored(name):
                raise GraphBuildError(f"Root '{name}' is on the ignore list")
            if graph.add_node(name, url):
                graph.roots.append(name)
                queue.append(name)

        while queue:
            name = queue.popleft()
            graph.urls[name] = self._materialize(name, graph.urls[name])
            try:
                submodule_urls = self.source.submodule_urls(name)
            except MaterializeError as e:
                raise GraphBuildError(f"Could not read submodules of '{name}': {e}") from e

            for sub_url in submodule_urls:
                sub_name = self._name_of(sub_url, parent=name)
                if self._is_ignored(sub_name):
                    logger.info(f"  {name} -> {sub_name} (ignored)")
                    continue
                if graph.add_node(sub_name, sub_url):
                    queue.append(sub_name)
                graph.add_edge(name, sub_name)
                logger.debug(f"  {name} -> {sub_name}")

        self.graph = graph
        return graph

    def build(self, root_urls: List[str]) -> Tuple[List[str], Dict[str, str]]:
        if not root_urls:
            raise GraphBuildError('No root repositories given')
        logger.info(f"Discovering submodule graph from {len(root_urls)} root(s)")
        graph = self.discover(root_urls)
        nodes = assign_depths(graph)
        order = leaf_first_order(nodes)
        for name in order:
            logger.info(f"  depth {nodes[name].depth}: {name}")
        return order, {name: nodes[name].url for name in order}
