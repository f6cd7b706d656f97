"""
graph.py
========
Relationship Graph: directed edges from a child field to its parent kind,
each annotated with a delete policy and an update (re-key) policy.

Built once from the Catalog and read-only afterwards.
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .catalog import Catalog, EntityKind, Policy


@dataclass(frozen=True)
class Edge:
    child: EntityKind
    field: str
    parent: EntityKind
    on_delete: Policy
    on_update: Policy


class GraphCycleError(ValueError):
    """Cascade-delete edges form a cycle, so a delete could never terminate."""

    def __init__(self, path: List[EntityKind]):
        self.path = path
        super().__init__("cascade cycle: " + " -> ".join(str(k) for k in path))


# read(kind, filter) -> rows, usually bound to an open unit of work
RowReader = Callable[[EntityKind, Optional[Dict[str, object]]], List[dict]]


class RelationshipGraph:

    def __init__(self, edges: Iterable[Edge]):
        self._edges: Dict[Tuple[EntityKind, str], Edge] = {}
        self._by_parent: Dict[EntityKind, List[Edge]] = defaultdict(list)
        for edge in edges:
            self._edges[(edge.child, edge.field)] = edge
            self._by_parent[edge.parent].append(edge)
        self._assert_no_cascade_cycle()

    @classmethod
    def from_catalog(cls, catalog: Catalog) -> "RelationshipGraph":
        """Collect one edge per reference field declared in the catalog."""
        edges = []
        for schema in catalog:
            for field in schema.references:
                ref = field.reference
                if ref.parent not in catalog:
                    raise ValueError(f"{schema.kind}.{field.name} references unknown kind {ref.parent}")
                if field.required and Policy.set_null in (ref.on_delete, ref.on_update):
                    raise ValueError(f"{schema.kind}.{field.name} is required and cannot be set-null")
                edges.append(Edge(schema.kind, field.name, ref.parent, ref.on_delete, ref.on_update))
        return cls(edges)

    def policy_for(self, child_kind, field: str) -> Edge:
        return self._edges[(EntityKind(child_kind), field)]

    def edges_to(self, parent_kind) -> Tuple[Edge, ...]:
        """All edges whose parent is ``parent_kind``, in declaration order."""
        return tuple(self._by_parent.get(EntityKind(parent_kind), ()))

    def edges(self) -> Tuple[Edge, ...]:
        return tuple(self._edges.values())

    def children_of(self, read: RowReader, parent_kind, parent_id) -> Set[Tuple[EntityKind, int]]:
        """Every (child_kind, child_id) whose reference points at the parent row."""
        found = set()
        for edge in self.edges_to(parent_kind):
            for row in read(edge.child, {edge.field: parent_id}):
                found.add((edge.child, row["id"]))
        return found

    # ---------------------------------------------------------------------
    # cycle detection
    # ---------------------------------------------------------------------

    def _assert_no_cascade_cycle(self):
        cascades: Dict[EntityKind, List[EntityKind]] = defaultdict(list)
        for edge in self._edges.values():
            if edge.on_delete is Policy.cascade:
                cascades[edge.parent].append(edge.child)

        done: Set[EntityKind] = set()
        for start in list(cascades):
            if start in done:
                continue
            # iterative DFS; ``path`` holds the current chain of kinds
            path = [start]
            on_path = {start}
            stack = [iter(cascades.get(start, ()))]
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    stack.pop()
                    finished = path.pop()
                    on_path.discard(finished)
                    done.add(finished)
                    continue
                if child in on_path:
                    raise GraphCycleError(path[path.index(child):] + [child])
                if child in done:
                    continue
                path.append(child)
                on_path.add(child)
                stack.append(iter(cascades.get(child, ())))
