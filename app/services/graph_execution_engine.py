import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_HANDLE = "default"
SEMANTIC_PORTS = ("memory", "tools")


def normalize_node_type(node_type: Optional[str]) -> str:
    return (node_type or "").strip().lower().replace("_", "-")


class FlowGraph:
    """Read-only view over a workspace's nodes and connections."""

    def __init__(self, nodes: List[dict], connections: List[dict]):
        self.nodes: Dict[str, dict] = {node['id']: node for node in (nodes or []) if node.get('id')}
        self.connections: List[dict] = [c for c in (connections or []) if c.get('from') and c.get('to')]

    @classmethod
    def from_workspace(cls, workspace) -> "FlowGraph":
        return cls(workspace.nodes or [], workspace.connections or [])

    def get_node(self, node_id: Optional[str]) -> Optional[dict]:
        if node_id is None:
            return None
        return self.nodes.get(node_id)

    def find_start_node(self) -> Optional[dict]:
        return next((n for n in self.nodes.values() if normalize_node_type(n.get('type')) == 'start'), None)

    def outgoing(self, node_id: str) -> List[dict]:
        return [c for c in self.connections if c['from'] == node_id]

    def incoming(self, node_id: str, target_handle: str = None) -> List[dict]:
        return [
            c for c in self.connections
            if c['to'] == node_id and (target_handle is None or c.get('targetHandle') == target_handle)
        ]

    def find_next_node_id(self, node_id: str, handle: Optional[str]) -> Optional[str]:
        """Follows the connection whose sourceHandle matches the chosen branch label.

        A connection without a sourceHandle counts as ``default``. Semantic wiring
        (targetHandle ``memory`` or ``tools``) is never followed.
        """
        handle = handle or DEFAULT_HANDLE
        for connection in self.outgoing(node_id):
            if connection.get('targetHandle') in SEMANTIC_PORTS:
                continue
            source_handle = connection.get('sourceHandle') or DEFAULT_HANDLE
            if source_handle == handle:
                return connection['to']
        logger.debug("No connection from node '%s' via handle '%s'", node_id, handle)
        return None

    def wired_nodes(self, node_id: str, target_handle: str) -> List[dict]:
        """Nodes wired into ``node_id`` through a semantic port."""
        wired = []
        for connection in self.incoming(node_id, target_handle):
            node = self.nodes.get(connection['from'])
            if node:
                wired.append(node)
        return wired
