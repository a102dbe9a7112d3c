"""Pipeline modules.

- scheduler: per-frame correlation driver for one rank
- correlation: staged per-point pipeline
- orchestrator: thread-per-rank run controller
"""

from dicflow.pipeline.scheduler import CorrelationScheduler
from dicflow.pipeline.correlation import CorrelationPipeline
from dicflow.pipeline.orchestrator import CorrelationOrchestrator, RankWorker
from dicflow.pipeline.objective import Objective
from dicflow.pipeline.output import OutputSpec, ResultExporter
from dicflow.pipeline.post_processors import PostProcessor, create_post_processor

__all__ = [
    "CorrelationScheduler",
    "CorrelationPipeline",
    "CorrelationOrchestrator",
    "RankWorker",
    "Objective",
    "OutputSpec",
    "ResultExporter",
    "PostProcessor",
    "create_post_processor",
]
