"""Migration services."""

from .transformer import TransformEngine, TransformError
from .resolver import EntityResolver, EntityIndex, match_name
from .upsert import UpsertExecutor, UpsertResult
from .relationships import RelationshipGraphBuilder, RelationshipGraph, GraphReport
from .verifier import MigrationVerifier, VerificationReport
from .reversal import ReversalExecutor, ReversalError, DeletionReport

__all__ = [
    "TransformEngine",
    "TransformError",
    "EntityResolver",
    "EntityIndex",
    "match_name",
    "UpsertExecutor",
    "UpsertResult",
    "RelationshipGraphBuilder",
    "RelationshipGraph",
    "GraphReport",
    "MigrationVerifier",
    "VerificationReport",
    "ReversalExecutor",
    "ReversalError",
    "DeletionReport",
]
