"""Reply generation pipeline: context, buffering, cancellation and lifecycle."""

from .assistant import AssistantService, GenerationTask
from .cancellation import CancellationRegistry, CancellationToken
from .chunk_buffer import ChunkBuffer, replace_chunk_combiner, text_chunk_combiner
from .context_builder import BranchContextBuilder, BranchContextOptions, ContextWindow
from .event_log import GenerationEventLogger
from .lifecycle import LifecycleState, StreamingBuffers, StreamingLifecycleManager
from .title_generation import TitleGenerationService

__all__ = [
    "AssistantService",
    "BranchContextBuilder",
    "BranchContextOptions",
    "CancellationRegistry",
    "CancellationToken",
    "ChunkBuffer",
    "ContextWindow",
    "GenerationEventLogger",
    "GenerationTask",
    "LifecycleState",
    "StreamingBuffers",
    "StreamingLifecycleManager",
    "TitleGenerationService",
    "replace_chunk_combiner",
    "text_chunk_combiner",
]
