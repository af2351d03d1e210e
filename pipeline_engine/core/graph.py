"""Adjacency index over a pipeline workflow."""

import heapq
from collections import deque
from typing import Dict, Iterator, List, Set, Tuple

from ..models.core import Node, Workflow
from .exceptions import CycleDetectedError, MalformedGraphError
from .logging import get_logger

logger = get_logger(__name__)


class WorkflowGraph:
    """Read-only graph queries over a workflow, keyed by node id.

    Adjacency is built once so validation and scheduling never walk the raw
    edge list again.
    """

    def __init__(self, workflow_id: str, nodes: Dict[str, Node],
                 outgoing: Dict[str, Tuple[str, ...]], incoming: Dict[str, Tuple[str, ...]]):
        self.workflow_id = workflow_id
        self._nodes = nodes
        self._outgoing = outgoing
        self._incoming = incoming

    @classmethod
    def build(cls, workflow: Workflow) -> "WorkflowGraph":
        """
        Build the adjacency index for a workflow.

        Raises:
            MalformedGraphError: listing every duplicate node id, duplicate edge
                id, self-loop and dangling edge endpoint found
        """
        violations: List[str] = []
        nodes: Dict[str, Node] = {}
        for node in workflow.nodes:
            if node.id in nodes:
                violations.append(f"Duplicate node id: '{node.id}'")
                continue
            nodes[node.id] = node

        outgoing: Dict[str, List[str]] = {node_id: [] for node_id in nodes}
        incoming: Dict[str, List[str]] = {node_id: [] for node_id in nodes}
        edge_ids: Set[str] = set()

        for edge in workflow.edges:
            if edge.id in edge_ids:
                violations.append(f"Duplicate edge id: '{edge.id}'")
            edge_ids.add(edge.id)

            dangling = False
            if edge.source not in nodes:
                violations.append(f"Edge '{edge.id}' references non-existent source node: '{edge.source}'")
                dangling = True
            if edge.target not in nodes:
                violations.append(f"Edge '{edge.id}' references non-existent target node: '{edge.target}'")
                dangling = True
            if edge.source == edge.target:
                violations.append(f"Edge '{edge.id}' is a self-loop on node '{edge.source}'")
                continue
            if dangling:
                continue

            # Parallel edges between the same pair collapse to one dependency
            if edge.target not in outgoing[edge.source]:
                outgoing[edge.source].append(edge.target)
                incoming[edge.target].append(edge.source)

        if violations:
            raise MalformedGraphError(
                f"Workflow '{workflow.id}' is malformed: {'; '.join(violations)}",
                violations=violations,
                workflow_id=workflow.id
            )

        return cls(
            workflow.id,
            nodes,
            {node_id: tuple(targets) for node_id, targets in outgoing.items()},
            {node_id: tuple(sources) for node_id, sources in incoming.items()},
        )

    @property
    def node_ids(self) -> Tuple[str, ...]:
        return tuple(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def node(self, node_id: str) -> Node:
        return self._nodes[node_id]

    def nodes(self) -> List[Node]:
        return list(self._nodes.values())

    def predecessors(self, node_id: str) -> Tuple[str, ...]:
        return self._incoming[node_id]

    def successors(self, node_id: str) -> Tuple[str, ...]:
        return self._outgoing[node_id]

    def input_nodes(self) -> List[str]:
        return [n.id for n in self._nodes.values() if n.node_type is not None and n.node_type.is_input]

    def output_nodes(self) -> List[str]:
        return [n.id for n in self._nodes.values() if n.node_type is not None and n.node_type.is_output]

    def descendants(self, node_id: str) -> List[str]:
        """All nodes reachable from node_id, breadth first, excluding node_id."""
        seen: Set[str] = {node_id}
        order: List[str] = []
        queue = deque(self._outgoing[node_id])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            order.append(current)
            queue.extend(self._outgoing[current])
        return order

    def ancestors(self, node_id: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self._incoming[node_id])
        while stack:
            current = stack.pop()
            if current not in seen:
                seen.add(current)
                stack.extend(self._incoming[current])
        return seen

    def topological_order(self) -> Iterator[str]:
        """
        Lazily yield node ids so that every predecessor precedes its successors.

        Ties between nodes with no ordering constraint are broken by ascending
        node id, so the order is identical across runs.

        Raises:
            CycleDetectedError: once the acyclic prefix is exhausted, naming the
                nodes that lie on a cycle
        """
        in_degree = {node_id: len(sources) for node_id, sources in self._incoming.items()}
        heap = [node_id for node_id, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)
        emitted = 0

        while heap:
            node_id = heapq.heappop(heap)
            emitted += 1
            yield node_id
            for target in self._outgoing[node_id]:
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    heapq.heappush(heap, target)

        if emitted < len(self._nodes):
            remaining = {node_id for node_id, degree in in_degree.items() if degree > 0}
            cycle_nodes = self._cycle_members(remaining)
            logger.debug(f"Cycle detected in workflow {self.workflow_id}: {sorted(cycle_nodes)}")
            raise CycleDetectedError(
                f"Workflow '{self.workflow_id}' contains a cycle through: {', '.join(sorted(cycle_nodes))}",
                cycle_nodes=cycle_nodes,
                violations=[f"Cycle detected through nodes: {', '.join(sorted(cycle_nodes))}"],
                workflow_id=self.workflow_id
            )

    def _cycle_members(self, candidates: Set[str]) -> Set[str]:
        """Nodes in strongly connected components of size > 1 (Tarjan, iterative)."""
        index_of: Dict[str, int] = {}
        lowlink: Dict[str, int] = {}
        on_stack: Set[str] = set()
        stack: List[str] = []
        members: Set[str] = set()
        counter = 0

        for root in sorted(candidates):
            if root in index_of:
                continue
            work = [(root, 0)]
            while work:
                node_id, child_index = work.pop()
                if child_index == 0:
                    index_of[node_id] = lowlink[node_id] = counter
                    counter += 1
                    stack.append(node_id)
                    on_stack.add(node_id)
                targets = [t for t in self._outgoing[node_id] if t in candidates]
                if child_index < len(targets):
                    work.append((node_id, child_index + 1))
                    target = targets[child_index]
                    if target not in index_of:
                        work.append((target, 0))
                    elif target in on_stack:
                        lowlink[node_id] = min(lowlink[node_id], index_of[target])
                    continue
                if lowlink[node_id] == index_of[node_id]:
                    component = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node_id:
                            break
                    if len(component) > 1:
                        members.update(component)
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node_id])
        return members
