"""Successor lookup and branch reachability over workflow connections."""

from typing import Dict, List, Optional, Tuple

from ..models.core import ConnectionDefinition
from ..storage.repository import WorkflowStore
from .exceptions import StorageError
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_BRANCH = "default"


def edge_branch(connection: ConnectionDefinition) -> Optional[str]:
    """The branch tag of an edge, preferring the source handle."""
    return connection.source_handle or connection.condition_type


class NodeConnections:
    """Resolves which nodes follow a node, optionally restricted to a branch."""

    def __init__(self, store: WorkflowStore):
        self.store = store

    def get_next_nodes(self, workflow_id: str, node_id: str, branch: Optional[str] = None) -> List[str]:
        """
        Get the targets of a node's outgoing edges.

        Args:
            workflow_id: Workflow the node belongs to
            node_id: Source node
            branch: When given, only edges whose source handle or condition type
                equals it; ``"default"`` also matches edges without a condition type

        Returns:
            List[str]: Target node ids in edge order
        """
        connections = self.store.get_connections(workflow_id, node_id)
        if branch is None:
            return [connection.target_node_id for connection in connections]

        return [
            connection.target_node_id
            for connection in connections
            if connection.source_handle == branch
            or connection.condition_type == branch
            or (branch == DEFAULT_BRANCH and not connection.condition_type)
        ]


class BranchDiscovery:
    """Finds every node reachable through each branch of a branching node."""

    def __init__(self, store: WorkflowStore):
        self.store = store

    def get_reachable_nodes(self, workflow_id: str, start_node_ids: List[str]) -> List[str]:
        """Forward reachability from ``start_node_ids`` (inclusive), in discovery order."""
        visited: List[str] = []
        seen = set()
        stack = list(reversed(start_node_ids))

        while stack:
            node_id = stack.pop()
            if node_id in seen:
                continue
            seen.add(node_id)
            visited.append(node_id)
            targets = [c.target_node_id for c in self.store.get_connections(workflow_id, node_id)]
            stack.extend(target for target in reversed(targets) if target not in seen)

        return visited

    def get_branch_nodes(
        self,
        workflow_id: str,
        node_id: str,
        untagged_branch: str = DEFAULT_BRANCH
    ) -> Dict[str, List[str]]:
        """
        Map each branch label of a node to the nodes reachable through it.

        Args:
            workflow_id: Workflow the node belongs to
            node_id: Branching node
            untagged_branch: Label given to edges that carry no tag

        Returns:
            Dict[str, List[str]]: Empty when the connections cannot be read
        """
        try:
            branch_roots: Dict[str, List[str]] = {}
            for connection in self.store.get_connections(workflow_id, node_id):
                label = edge_branch(connection) or untagged_branch
                branch_roots.setdefault(label, []).append(connection.target_node_id)

            return {
                label: self.get_reachable_nodes(workflow_id, roots)
                for label, roots in branch_roots.items()
            }
        except StorageError as e:
            logger.error(f"Error discovering branches of node {node_id}: {str(e)}")
            return {}

    def get_conditional_branches(self, workflow_id: str, node_id: str) -> Tuple[List[str], List[str]]:
        """
        Nodes reachable through the true and the false branch of a condition.

        Untagged edges belong to the true branch.
        """
        branches = self.get_branch_nodes(workflow_id, node_id, untagged_branch="true")
        true_nodes = branches.get("true", [])
        false_nodes = branches.get("false", [])
        logger.debug(
            f"Branches of condition {node_id}: {len(true_nodes)} true node(s), {len(false_nodes)} false node(s)"
        )
        return true_nodes, false_nodes
