"""Coordinator-side components: queue manager, progress, forwarding and supervision."""

from batchmesh.coordinator.coordinator import Coordinator
from batchmesh.coordinator.forwarder import ChannelForwarder, ForwardEvent, has_aux_data
from batchmesh.coordinator.job_queue import JobQueueManager
from batchmesh.coordinator.locks import DistributedLock, LockHandle
from batchmesh.coordinator.metrics import MetricsRecorder, MetricsSnapshot
from batchmesh.coordinator.notifier import LoggingChannel, NotificationChannel, RetryingChannel
from batchmesh.coordinator.progress import ProgressLedger, ProgressTracker
from batchmesh.coordinator.proxy_pool import ProxyPoolManager

__all__ = [
    "ChannelForwarder",
    "Coordinator",
    "DistributedLock",
    "ForwardEvent",
    "JobQueueManager",
    "LockHandle",
    "LoggingChannel",
    "MetricsRecorder",
    "MetricsSnapshot",
    "NotificationChannel",
    "ProgressLedger",
    "ProgressTracker",
    "ProxyPoolManager",
    "RetryingChannel",
    "has_aux_data",
]
