"""Infrastructure VM conversion workflow built on the job engine."""

from infra_conversion.migration.factory import ConversionRuntime, build_in_memory_runtime, build_infra_conversion_engine
from infra_conversion.migration.handlers import InfraConversionHandlers
from infra_conversion.migration.workflow import ConversionSignal, build_state_descriptors, build_transition_table

__all__ = [
    "ConversionRuntime",
    "ConversionSignal",
    "InfraConversionHandlers",
    "build_in_memory_runtime",
    "build_infra_conversion_engine",
    "build_state_descriptors",
    "build_transition_table",
]
