"""
Services layer.

- matching_service: matching, confirmation, rejection and learning per organization
- job_processor: background queue for bulk and incremental matching jobs
"""

from .job_processor import JobStatus, JobType, MatchingJob, MatchingJobProcessor
from .matching_service import MatchingService

__all__ = [
    "JobStatus",
    "JobType",
    "MatchingJob",
    "MatchingJobProcessor",
    "MatchingService",
]
