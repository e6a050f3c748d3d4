"""Adaptive prefetch engine: rate tracking, reading velocity, and the orchestrator."""

from .source_behavior import SourceBehavior, SourceBehaviorTracker
from .reading_velocity import ReadingVelocityTracker, ReadingSession, split_buffer
from .jobs import CancelToken, JobStatus, PrefetchJob, PrefetchProgress, PrefetchSummary, FailedPage
from .errors import ChapterFetchError, status_code_for
from .download_queue import DownloadQueue, PageOutcome
from .orchestrator import PrefetchOrchestrator

__all__ = [
    'SourceBehavior', 'SourceBehaviorTracker',
    'ReadingVelocityTracker', 'ReadingSession', 'split_buffer',
    'CancelToken', 'JobStatus', 'PrefetchJob', 'PrefetchProgress', 'PrefetchSummary', 'FailedPage',
    'ChapterFetchError', 'status_code_for',
    'DownloadQueue', 'PageOutcome',
    'PrefetchOrchestrator',
]
