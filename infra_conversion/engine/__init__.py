"""Generic signal-driven job engine."""

from infra_conversion.engine.job_engine import ConversionJobEngine, DeliveryOutcome, JobRun
from infra_conversion.engine.progress_tracker import ProgressPhase, ProgressTracker
from infra_conversion.engine.retry_guard import RetryTimeoutGuard, TimeoutCheck, check_timeout
from infra_conversion.engine.signal_scheduler import (
    InMemorySignalQueue,
    SignalMessage,
    SignalRouting,
    SignalScheduler,
)
from infra_conversion.engine.state_descriptors import StateDescriptor, StateDescriptorRegistry
from infra_conversion.engine.transitions import OverlaySignal, TransitionTable
from infra_conversion.engine.worker import ConversionWorker, WorkerTickReport

__all__ = [
    "ConversionJobEngine",
    "ConversionWorker",
    "DeliveryOutcome",
    "InMemorySignalQueue",
    "JobRun",
    "OverlaySignal",
    "ProgressPhase",
    "ProgressTracker",
    "RetryTimeoutGuard",
    "SignalMessage",
    "SignalRouting",
    "SignalScheduler",
    "StateDescriptor",
    "StateDescriptorRegistry",
    "TimeoutCheck",
    "TransitionTable",
    "WorkerTickReport",
    "check_timeout",
]
