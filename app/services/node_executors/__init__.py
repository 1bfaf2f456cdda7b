"""
Node executor registry.

Each node kind is a ``NodeExecutor`` registered under its normalized type tag;
importing this package registers all of them.
"""
from app.services.node_executors.base import (
    DEFAULT_EXECUTOR,
    NODE_EXECUTORS,
    DefaultNodeExecutor,
    NodeContext,
    NodeExecutor,
    Transition,
    get_executor,
)
from app.services.node_executors import agent, integrations, logic, messaging  # noqa: F401
