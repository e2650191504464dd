"""Wiring for the infrastructure conversion engine and its in-memory runtime."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from infra_conversion.config import Settings, get_settings
from infra_conversion.engine.clock import Clock, utc_clock
from infra_conversion.engine.job_engine import ConversionJobEngine, TaskResolver
from infra_conversion.engine.signal_scheduler import InMemorySignalQueue, SignalQueue, SignalScheduler
from infra_conversion.engine.trace_service import JobTraceService
from infra_conversion.engine.worker import ConversionWorker
from infra_conversion.migration.handlers import InfraConversionHandlers
from infra_conversion.migration.in_memory import InMemoryMigrationEnvironment
from infra_conversion.migration.ports import ServiceRequestCatalog, VmInventory
from infra_conversion.migration.workflow import (
    START_SIGNAL,
    TEARDOWN_SIGNAL,
    build_state_descriptors,
    build_transition_table,
)
from infra_conversion.state_store import InMemoryStateStore, JobRepository


def build_infra_conversion_engine(
    *,
    repository: JobRepository,
    queue: SignalQueue,
    task_resolver: TaskResolver,
    inventory: VmInventory,
    service_requests: ServiceRequestCatalog,
    retry_interval_seconds: int,
    role: str,
    zone: str,
    trace_service: JobTraceService | None = None,
    clock: Clock | None = None,
) -> ConversionJobEngine:
    clock = clock or utc_clock
    scheduler = SignalScheduler(
        queue=queue,
        role=role,
        zone=zone,
        retry_interval=timedelta(seconds=retry_interval_seconds),
        clock=clock,
    )
    handlers = InfraConversionHandlers(inventory=inventory, service_requests=service_requests)
    return ConversionJobEngine(
        transitions=build_transition_table(),
        descriptors=build_state_descriptors(retry_interval_seconds),
        handlers=handlers.handlers(),
        repository=repository,
        task_resolver=task_resolver,
        scheduler=scheduler,
        trace_service=trace_service,
        start_signal=START_SIGNAL,
        teardown_signal=TEARDOWN_SIGNAL,
        clock=clock,
    )


@dataclass
class ConversionRuntime:
    store: InMemoryStateStore
    queue: InMemorySignalQueue
    environment: InMemoryMigrationEnvironment
    trace_service: JobTraceService
    engine: ConversionJobEngine
    worker: ConversionWorker


def build_in_memory_runtime(
    settings: Settings | None = None,
    *,
    clock: Clock | None = None,
) -> ConversionRuntime:
    """Engine, worker and simulated migration environment sharing one store and queue."""
    settings = settings or get_settings()
    clock = clock or utc_clock
    store = InMemoryStateStore()
    queue = InMemorySignalQueue()
    environment = InMemoryMigrationEnvironment(clock=clock)
    trace_service = JobTraceService(store=store)
    engine = build_infra_conversion_engine(
        repository=store,
        queue=queue,
        task_resolver=environment.task_for,
        inventory=environment.inventory,
        service_requests=environment.service_requests,
        retry_interval_seconds=settings.state_retry_interval_seconds,
        role=settings.queue_role,
        zone=settings.queue_zone,
        trace_service=trace_service,
        clock=clock,
    )
    worker = ConversionWorker(
        engine=engine,
        queue=queue,
        repository=store,
        batch_size=settings.worker_batch_size,
        job_timeout=timedelta(hours=settings.job_timeout_hours),
        clock=clock,
    )
    return ConversionRuntime(
        store=store,
        queue=queue,
        environment=environment,
        trace_service=trace_service,
        engine=engine,
        worker=worker,
    )


__all__ = ["ConversionRuntime", "build_in_memory_runtime", "build_infra_conversion_engine"]
