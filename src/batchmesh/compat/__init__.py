"""Single-process fallback that keeps the distributed batch contract."""

from batchmesh.compat.processed_store import ProcessedStore
from batchmesh.compat.single_node import (
    BatchGateway,
    SingleNodeJobQueue,
    build_gateway,
    detect_single_node,
)

__all__ = [
    "BatchGateway",
    "ProcessedStore",
    "SingleNodeJobQueue",
    "build_gateway",
    "detect_single_node",
]
