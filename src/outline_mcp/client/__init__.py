"""WorkFlowy client layer: transport, tree, resilience and projection."""

from .api_client import WorkFlowyClient
from .api_client_core import Session, WorkFlowyClientCore
from .errors import classify
from .projection import project, search
from .retry import BATCH, QUICK, STANDARD, WRITE, OperationRiskClass, RetryPolicy, policy_for, with_retry
from .structured_logger import LogLevel, StructuredLogger, create_logger
from .tree import DocumentTree, NodeRef

__all__ = [
    "BATCH",
    "QUICK",
    "STANDARD",
    "WRITE",
    "DocumentTree",
    "LogLevel",
    "NodeRef",
    "OperationRiskClass",
    "RetryPolicy",
    "Session",
    "StructuredLogger",
    "WorkFlowyClient",
    "WorkFlowyClientCore",
    "classify",
    "create_logger",
    "policy_for",
    "project",
    "search",
    "with_retry",
]
