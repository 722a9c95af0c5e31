"""Consumer side of the AI normalization agent."""

from .ai_output import IngestorOutput, NormalizedItem, parse_ingestor_output
from .client import AIIngestorClient
from .job import NormalizationJob, build_article

__all__ = [
    "AIIngestorClient",
    "IngestorOutput",
    "NormalizationJob",
    "NormalizedItem",
    "build_article",
    "parse_ingestor_output",
]
