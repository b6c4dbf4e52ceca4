"""
Accessibility Snapshot - Turn CDP's flat AX node list into an addressable tree.

Nodes are parsed into an arena and referenced by integer index. Children come
from ``childIds`` when a node has any, otherwise from the nodes naming it as
their ``parentId``. Ignored nodes are elided and their children spliced into
the parent at the same position. Interactive nodes get sequential UIDs
(``s1``, ``s2``, ...) in depth-first document order, and the UID map is
persisted so later invocations can resolve a UID to a DOM node.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from chromectl.cdp.session import CDPSession
from chromectl.core.errors import CDPTargetError
from chromectl.state import SnapshotState, StateStore

logger = logging.getLogger("chromectl")

MAX_NODES = 10_000

INTERACTIVE_ROLES: FrozenSet[str] = frozenset({
    "link",
    "button",
    "textbox",
    "checkbox",
    "radio",
    "combobox",
    "menuitem",
    "tab",
    "switch",
    "slider",
    "spinbutton",
    "searchbox",
    "option",
    "treeitem",
})

UID_RE = re.compile(r"^s\d+$")
BACKEND_ID_RE = re.compile(r"^\d+$")
CSS_PREFIX = "css:"


# =============================================================================
# Parsed nodes
# =============================================================================

def _ax_value(value: Any) -> Any:
    # AXValue objects wrap the payload; bare values are accepted as-is
    if isinstance(value, dict):
        return value.get("value")
    return value


@dataclass
class AXNode:
    """One entry of Accessibility.getFullAXTree."""
    node_id: str
    role: str = ""
    name: str = ""
    ignored: bool = False
    backend_node_id: Optional[int] = None
    child_ids: List[str] = field(default_factory=list)
    parent_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_cdp(cls, data: Dict[str, Any]) -> Optional[AXNode]:
        """Parse one raw node; returns None when ``nodeId`` is missing."""
        node_id = data.get("nodeId")
        if isinstance(node_id, int) and not isinstance(node_id, bool):
            node_id = str(node_id)
        if not isinstance(node_id, str) or not node_id:
            return None

        child_ids = []
        for child in data.get("childIds") or []:
            if isinstance(child, (str, int)) and not isinstance(child, bool):
                child_ids.append(str(child))

        parent_id = data.get("parentId")
        if isinstance(parent_id, int) and not isinstance(parent_id, bool):
            parent_id = str(parent_id)

        properties = {}
        for prop in data.get("properties") or []:
            if isinstance(prop, dict) and isinstance(prop.get("name"), str):
                properties[prop["name"]] = _ax_value(prop.get("value"))

        role = _ax_value(data.get("role"))
        name = _ax_value(data.get("name"))
        backend_id = data.get("backendDOMNodeId")
        return cls(
            node_id=node_id,
            role=role if isinstance(role, str) else "",
            name=name if isinstance(name, str) else "",
            ignored=bool(data.get("ignored", False)),
            backend_node_id=backend_id if isinstance(backend_id, int) and not isinstance(backend_id, bool) else None,
            child_ids=child_ids,
            parent_id=parent_id if isinstance(parent_id, str) else None,
            properties=properties,
        )


def parse_ax_nodes(nodes: Iterable[Any]) -> List[AXNode]:
    parsed = []
    for raw in nodes:
        node = AXNode.from_cdp(raw) if isinstance(raw, dict) else None
        if node is None:
            logger.debug(f"Skipping AX node without nodeId: {raw!r}")
            continue
        parsed.append(node)
    return parsed


# =============================================================================
# Output tree
# =============================================================================

@dataclass
class SnapshotNode:
    role: str
    name: str = ""
    uid: Optional[str] = None
    properties: Optional[Dict[str, Any]] = None
    backend_node_id: Optional[int] = None
    children: List[SnapshotNode] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "name": self.name}
        if self.uid is not None:
            data["uid"] = self.uid
        if self.properties:
            data["properties"] = dict(self.properties)
        data["children"] = [child.to_dict() for child in self.children]
        return data

    def walk(self):
        """Yield nodes in depth-first document order."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


@dataclass
class BuildResult:
    root: SnapshotNode
    uid_map: Dict[str, int]
    truncated: bool
    total_nodes: int


def _child_indices(arena: List[AXNode], index: Dict[str, int]) -> List[List[int]]:
    """Child index lists: childIds where present, parentId grouping otherwise."""
    by_parent: Dict[int, List[int]] = {}
    for i, node in enumerate(arena):
        if node.parent_id is not None and node.parent_id in index:
            by_parent.setdefault(index[node.parent_id], []).append(i)

    children = []
    for i, node in enumerate(arena):
        if node.child_ids:
            children.append([index[c] for c in node.child_ids if c in index])
        else:
            children.append(by_parent.get(i, []))
    return children


def _find_root(arena: List[AXNode], index: Dict[str, int], children: List[List[int]]) -> int:
    has_parent = [False] * len(arena)
    for i, node in enumerate(arena):
        if node.parent_id is not None and node.parent_id in index and index[node.parent_id] != i:
            has_parent[i] = True
        for child in children[i]:
            if child != i:
                has_parent[child] = True
    for i, parented in enumerate(has_parent):
        if not parented:
            return i
    return 0


def build_tree(nodes: Iterable[Any], verbose: bool = False,
               interactive_roles: FrozenSet[str] = INTERACTIVE_ROLES,
               max_nodes: int = MAX_NODES) -> BuildResult:
    """
    Build the collapsed snapshot tree and its UID map.

    Args:
        nodes: Raw ``nodes`` of an Accessibility.getFullAXTree response.
        verbose: Keep each node's AX properties.
        interactive_roles: Roles that receive a UID (when they have a backend id).
        max_nodes: Emit at most this many nodes; ``truncated`` reports a cut.
    """
    arena = parse_ax_nodes(nodes)
    total_nodes = len(arena)
    if not arena:
        return BuildResult(root=SnapshotNode(role="document"), uid_map={}, truncated=False, total_nodes=0)

    index: Dict[str, int] = {}
    for i, node in enumerate(arena):
        index.setdefault(node.node_id, i)
    children = _child_indices(arena, index)
    root_index = _find_root(arena, index, children)

    uid_map: Dict[str, int] = {}
    visited = [False] * len(arena)
    emitted = 0
    truncated = False
    top: List[SnapshotNode] = []

    # pre-order walk; each entry carries the list its output node is appended to
    stack: List[Tuple[int, List[SnapshotNode]]] = [(root_index, top)]
    while stack:
        i, sink = stack.pop()
        if visited[i]:
            continue
        visited[i] = True
        ax = arena[i]

        if ax.ignored:
            for child in reversed(children[i]):
                stack.append((child, sink))
            continue

        if emitted >= max_nodes:
            truncated = True
            continue
        emitted += 1

        uid = None
        if ax.role in interactive_roles and ax.backend_node_id is not None:
            uid = f"s{len(uid_map) + 1}"
            uid_map[uid] = ax.backend_node_id

        out = SnapshotNode(
            role=ax.role,
            name=ax.name,
            uid=uid,
            properties=dict(ax.properties) if verbose and ax.properties else None,
            backend_node_id=ax.backend_node_id,
        )
        sink.append(out)
        for child in reversed(children[i]):
            stack.append((child, out.children))

    if len(top) == 1:
        root = top[0]
    else:
        root = SnapshotNode(role="document", children=top)

    if truncated:
        logger.warning(f"Snapshot truncated to {max_nodes} of {total_nodes} nodes")
    return BuildResult(root=root, uid_map=uid_map, truncated=truncated, total_nodes=total_nodes)


# =============================================================================
# Search and text rendering
# =============================================================================

@dataclass
class SearchHit:
    role: str
    name: str
    uid: Optional[str] = None
    backend_node_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "name": self.name}
        if self.uid is not None:
            data["uid"] = self.uid
        if self.backend_node_id is not None:
            data["backendDOMNodeId"] = self.backend_node_id
        return data


def search_tree(root: SnapshotNode, query: str, role: Optional[str] = None,
                exact: bool = False, limit: int = 50) -> List[SearchHit]:
    """
    Find nodes by name (and optionally role), in document order.

    Matching is a case-insensitive substring test unless ``exact`` is set, in
    which case the name must equal ``query``. An empty query matches every name.
    """
    hits: List[SearchHit] = []
    needle = query.lower()
    for node in root.walk():
        if len(hits) >= limit:
            break
        if role is not None and node.role != role:
            continue
        if query:
            if exact and node.name != query:
                continue
            if not exact and needle not in node.name.lower():
                continue
        hits.append(SearchHit(role=node.role, name=node.name, uid=node.uid,
                              backend_node_id=node.backend_node_id))
    return hits


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def format_text(root: SnapshotNode, verbose: bool = False) -> str:
    """Indented text: one ``- role "name" [uid]`` line per node."""
    lines = []
    stack = [(root, 0)]
    while stack:
        node, depth = stack.pop()
        line = f'{"  " * depth}- {node.role} "{node.name}"'
        if node.uid:
            line += f" [{node.uid}]"
        if verbose and node.properties:
            line += " " + " ".join(sorted(f"{k}={_format_value(v)}" for k, v in node.properties.items()))
        lines.append(line)
        stack.extend((child, depth + 1) for child in reversed(node.children))
    return "\n".join(lines) + "\n"


# =============================================================================
# Live operations
# =============================================================================

async def take_snapshot(session: CDPSession, store: StateStore, tab_id: Optional[str] = None,
                        verbose: bool = False,
                        interactive_roles: FrozenSet[str] = INTERACTIVE_ROLES) -> BuildResult:
    """Fetch the full AX tree, build it and replace the persisted snapshot state."""
    await session.ensure_domain("Accessibility")
    response = await session.send("Accessibility.getFullAXTree")
    nodes = response.get("nodes")
    if not isinstance(nodes, list):
        nodes = []

    result = build_tree(nodes, verbose=verbose, interactive_roles=interactive_roles)

    url = await session.evaluate("location.href")
    state = store.replace_snapshot(
        tab_id if tab_id is not None else session.target_id,
        result.uid_map,
        url=url if isinstance(url, str) else "",
    )
    logger.info(
        f"Snapshot taken: {len(result.uid_map)} interactive of {result.total_nodes} nodes",
        extra={"session_id": session.session_id, "generation": state.generation},
    )
    return result


def _current_snapshot(store: StateStore, target: str, tab_id: Optional[str]) -> SnapshotState:
    snapshot = store.load_snapshot()
    if snapshot is None:
        raise CDPTargetError(
            f"No snapshot state found; take a snapshot before resolving '{target}'",
        )
    if tab_id is not None and snapshot.tab_id is not None and snapshot.tab_id != tab_id:
        raise CDPTargetError(
            f"'{target}' belongs to a snapshot of another tab; take a new snapshot",
            target_id=tab_id,
        )
    return snapshot


async def _query_selector(session: CDPSession, selector: str,
                          attempts: int, interval: float) -> int:
    for attempt in range(1, attempts + 1):
        document = await session.send("DOM.getDocument", {"depth": 0})
        root_id = (document.get("root") or {}).get("nodeId")
        if isinstance(root_id, int):
            found = await session.send("DOM.querySelector", {"nodeId": root_id, "selector": selector})
            node_id = found.get("nodeId") or 0
            if node_id:
                described = await session.send("DOM.describeNode", {"nodeId": node_id})
                backend_id = (described.get("node") or {}).get("backendNodeId")
                if isinstance(backend_id, int):
                    return backend_id
        if attempt < attempts:
            await asyncio.sleep(interval)
    raise CDPTargetError(f"Element not found for selector: {selector}", session_id=session.session_id)


async def resolve_node(session: CDPSession, store: StateStore, target: str,
                       tab_id: Optional[str] = None,
                       attempts: int = 3, interval: float = 0.05) -> int:
    """
    Resolve a UID (``s3``), raw backend node id (``42``) or ``css:<selector>``
    to a backend DOM node id.

    UIDs and raw ids must belong to the current snapshot of the tab; anything
    missing or stale is a CDPTargetError. Selector lookups retry a few times
    in case the element has not been attached yet.
    """
    if tab_id is None:
        tab_id = session.target_id

    if UID_RE.match(target):
        snapshot = _current_snapshot(store, target, tab_id)
        backend_id = snapshot.uid_map.get(target)
        if backend_id is None:
            raise CDPTargetError(f"UID '{target}' not found in the current snapshot")
        return backend_id

    if BACKEND_ID_RE.match(target):
        snapshot = _current_snapshot(store, target, tab_id)
        backend_id = int(target)
        if backend_id not in snapshot.backend_ids():
            raise CDPTargetError(f"Backend node {backend_id} is not in the current snapshot")
        return backend_id

    if target.startswith(CSS_PREFIX):
        selector = target[len(CSS_PREFIX):].strip()
        if not selector:
            raise CDPTargetError("Empty CSS selector")
        await session.ensure_domain("DOM")
        return await _query_selector(session, selector, attempts, interval)

    raise CDPTargetError(f"Element not found: {target}")
