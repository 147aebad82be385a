"""Worker process: task leasing, processor invocation and outcome recording."""

from batchmesh.worker.circuit_breaker import CircuitBreaker
from batchmesh.worker.echo_processor import EchoEnricher, EchoProcessor
from batchmesh.worker.failure_classifier import FailureClass, classify_task_failure
from batchmesh.worker.node import WorkerNode, WorkerRunSummary
from batchmesh.worker.processor import Enricher, ProcessOutcome, TaskProcessor

__all__ = [
    "CircuitBreaker",
    "EchoEnricher",
    "EchoProcessor",
    "Enricher",
    "FailureClass",
    "ProcessOutcome",
    "TaskProcessor",
    "WorkerNode",
    "WorkerRunSummary",
    "classify_task_failure",
]
