from .base import (  # noqa: F401
    BaseIndexPipeline,
    Crawler,
    IndexResult,
    OutputCallback,
    PipelineInvocationError,
    SeedOnlyCrawler,
)
from .command import CommandIndexPipeline  # noqa: F401
