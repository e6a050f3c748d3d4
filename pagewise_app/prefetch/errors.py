"""
Failure classification for the adaptive rate tracker.

Every failed remote call is reduced to one integer status before it reaches
SourceBehaviorTracker.record_failure: the HTTP status when the error carries
one, 429 / 403 when the message mentions them, and -1 otherwise (network
errors and timeouts).
"""

import asyncio
from typing import Optional

NETWORK_ERROR = -1


class ChapterFetchError(Exception):
    """A chapter's page list could not be fetched."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _as_status(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and value:
        return value
    return None


def status_code_for(exc: BaseException) -> int:
    if isinstance(exc, asyncio.TimeoutError):
        return NETWORK_ERROR

    for attr in ('status', 'status_code'):
        status = _as_status(getattr(exc, attr, None))
        if status is not None:
            return status

    response = getattr(exc, 'response', None)
    if response is not None:
        status = _as_status(getattr(response, 'status_code', None))
        if status is not None:
            return status

    text = str(exc)
    if '429' in text:
        return 429
    if '403' in text:
        return 403
    return NETWORK_ERROR
