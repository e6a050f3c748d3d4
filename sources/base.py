"""
================================================================================
Pagewise - Base Connector
================================================================================
Abstract base class for content-source connectors.

A connector only has to answer one question for the prefetch engine: which
image URLs make up a chapter. It can answer all at once (get_pages) or in
batches as it discovers them (stream_pages); the default stream wraps
get_pages in a single terminal batch.

RATE HINTS:
  - rate_limit is the request rate a fresh source starts at (req/s)
  - max_rate is the ceiling the adaptive tracker may climb to
  - both are handed to SourceBehaviorTracker.get_or_create as manifest hints
================================================================================
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Callable, AsyncIterator

from curl_cffi.requests import AsyncSession


# =============================================================================
# LOGGING CALLBACK (avoids circular imports)
# =============================================================================

# Global logger callback - set by create_app on startup
_log_callback: Optional[Callable[[str], None]] = None


def set_log_callback(callback: Callable[[str], None]) -> None:
    """Set the logging callback function. Called by create_app on startup."""
    global _log_callback
    _log_callback = callback


def source_log(msg: str) -> None:
    """Log a message using the registered callback or fallback to print."""
    if _log_callback:
        _log_callback(msg)
    else:
        print(msg)


# =============================================================================
# ERRORS & DATA CLASSES
# =============================================================================

class FetchError(Exception):
    """A remote call failed. status_code is the HTTP status when there was one."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ChapterResult:
    """Standardized chapter information."""
    id: str                          # Chapter identifier
    chapter: str = ""                # Chapter number (string for "10.5")
    title: Optional[str] = None      # Chapter title
    volume: Optional[str] = None
    language: str = "en"
    pages: int = 0                   # Page count if known
    source: str = ""

    @property
    def label(self) -> str:
        """Human label used in progress events, e.g. 'Ch. 12 - The Storm'."""
        number = self.chapter or self.id
        if self.title:
            return f"Ch. {number} - {self.title}"
        return f"Ch. {number}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chapter": self.chapter,
            "title": self.title,
            "volume": self.volume,
            "language": self.language,
            "pages": self.pages,
            "source": self.source
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChapterResult":
        return cls(
            id=str(data["id"]),
            chapter=str(data.get("chapter") or data.get("chapter_number") or ""),
            title=data.get("title"),
            volume=data.get("volume"),
            language=data.get("language") or "en",
            pages=int(data.get("pages") or 0),
            source=data.get("source") or "",
        )


@dataclass
class PageListBatch:
    """
    One update from a page-list stream.

    `pages` is the full list discovered so far (not just the new ones).
    `done=True` is terminal. A batch carrying `error` is terminal as well.
    """
    pages: List[str] = field(default_factory=list)
    done: bool = False
    total: Optional[int] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pages": self.pages,
            "done": self.done,
            "total": self.total,
            "error": self.error,
        }


# =============================================================================
# BASE CONNECTOR CLASS
# =============================================================================

class BaseConnector(ABC):
    """
    Abstract base class for content-source connectors.

    Example:
        class MangaDexConnector(BaseConnector):
            id = "mangadex"
            name = "MangaDex"
            rate_limit = 2.0

            async def get_pages(self, chapter_id):
                ...
    """

    # =========================================================================
    # SOURCE CONFIGURATION (Override in subclass)
    # =========================================================================

    id: str = "base"                 # Unique identifier
    name: str = "Base Source"        # Display name
    base_url: str = ""               # Root URL
    icon: str = "📚"                 # Emoji for UI

    rate_limit: float = 2.0          # Starting request rate (req/s)
    max_rate: float = 10.0           # Ceiling for adaptive rate
    request_timeout: float = 20.0    # Request timeout seconds

    # Browser to impersonate (chrome110, chrome120, safari15_3, etc.)
    impersonate: str = "chrome120"

    def __init__(self):
        self._session: Optional[AsyncSession] = None

    # =========================================================================
    # SESSION
    # =========================================================================

    async def _get_session(self) -> AsyncSession:
        """Get or create curl_cffi AsyncSession."""
        if self._session is None:
            self._session = AsyncSession(impersonate=self.impersonate)
        return self._session

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _log(self, msg: str) -> None:
        source_log(f"[{self.name}] {msg}")

    # =========================================================================
    # RATE HINTS
    # =========================================================================

    def manifest_hints(self) -> Dict[str, float]:
        """Declared rate bounds, consumed by the adaptive tracker."""
        return {"initial_rate": self.rate_limit, "max_rate": self.max_rate}

    def image_headers(self) -> Dict[str, str]:
        """Headers to send when downloading this source's images."""
        headers = {"Accept": "image/webp,image/png,image/jpeg,*/*"}
        if self.base_url:
            headers["Referer"] = self.base_url
        return headers

    # =========================================================================
    # REQUIRED METHODS (Implement in subclass)
    # =========================================================================

    @abstractmethod
    async def get_pages(self, chapter_id: str) -> List[str]:
        """
        Resolve every image URL of a chapter.

        Raises:
            FetchError: the source answered with an error or was unreachable
        """
        pass

    async def get_chapters(self, manga_id: str, language: str = "en") -> List[ChapterResult]:
        """Chapter list in reading order. Optional for connectors."""
        return []

    async def stream_pages(self, chapter_id: str) -> AsyncIterator[PageListBatch]:
        """
        Yield page-list batches until one has done=True.

        Connectors that paginate their page lists override this to yield
        partial batches; errors are delivered as a terminal batch instead of
        an exception so consumers can keep what they already saw.
        """
        try:
            pages = await self.get_pages(chapter_id)
        except FetchError as e:
            yield PageListBatch(pages=[], done=True, error=str(e), status_code=e.status_code)
            return
        yield PageListBatch(pages=list(pages), done=True, total=len(pages))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "icon": self.icon,
            "rate_limit": self.rate_limit,
            "max_rate": self.max_rate,
        }
