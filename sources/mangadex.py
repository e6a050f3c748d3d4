"""
================================================================================
Pagewise - MangaDex Connector
================================================================================
MangaDex API v5 connector.

MANGADEX API RULES:
  - User-Agent MUST identify your app (no browser spoofing)
  - Don't send auth headers when downloading images
  - Use /at-home/server/ for dynamic CDN URLs (they expire after 15 minutes)
  - The load balancer allows 5 req/s; 429 means stop, 403 means banned
================================================================================
"""

from typing import List, Optional, Dict, Any

from curl_cffi.requests import AsyncSession

from .base import BaseConnector, ChapterResult, FetchError


class MangaDexConnector(BaseConnector):
    """MangaDex API connector."""

    id = "mangadex"
    name = "MangaDex"
    base_url = "https://api.mangadex.org"
    icon = "🥭"

    # Start conservative, never climb past their published limit
    rate_limit = 2.0
    max_rate = 5.0
    request_timeout = 20.0

    USER_AGENT = "Pagewise/1.0 (prefetch engine)"

    FEED_PAGE_SIZE = 500

    def _headers(self, for_images: bool = False) -> Dict[str, str]:
        """
        Get request headers.

        Image requests must NOT include auth headers: they would leak to
        MD@Home volunteer nodes.
        """
        if for_images:
            return {
                "User-Agent": self.USER_AGENT,
                "Accept": "image/webp,image/png,image/jpeg,*/*",
                "Referer": "https://mangadex.org/",
            }
        return {
            "User-Agent": self.USER_AGENT,
            "Accept": "application/json"
        }

    async def _get_session(self) -> AsyncSession:
        # MangaDex wants an honest client, so no browser impersonation here
        if self._session is None:
            self._session = AsyncSession()
        return self._session

    def image_headers(self) -> Dict[str, str]:
        return self._headers(for_images=True)

    async def _request(self, endpoint: str, params: Optional[Dict] = None) -> Dict[str, Any]:
        """GET an API endpoint and return its JSON body, or raise FetchError."""
        session = await self._get_session()
        url = f"{self.base_url}{endpoint}"

        try:
            response = await session.get(
                url,
                params=params,
                headers=self._headers(),
                timeout=self.request_timeout
            )
        except Exception as e:
            # curl_cffi raises its own RequestsError family; status is unknown here
            raise FetchError(f"MangaDex request failed: {e}") from e

        if response.status_code == 200:
            return response.json()

        if response.status_code == 429:
            self._log("⚠️ Rate limited (429)")
        elif response.status_code == 403:
            self._log("🚫 Temporarily banned (403)")
        raise FetchError(f"HTTP {response.status_code} for {endpoint}", status_code=response.status_code)

    async def get_pages(self, chapter_id: str) -> List[str]:
        data = await self._request(f"/at-home/server/{chapter_id}")

        base_url = data.get("baseUrl", "")
        chapter_data = data.get("chapter", {})
        hash_code = chapter_data.get("hash", "")
        filenames = chapter_data.get("data", [])

        return [f"{base_url}/data/{hash_code}/{filename}" for filename in filenames]

    async def get_chapters(self, manga_id: str, language: str = "en") -> List[ChapterResult]:
        """Full chapter feed, oldest first."""
        results: List[ChapterResult] = []
        offset = 0

        while True:
            params = {
                "translatedLanguage[]": [language],
                "order[chapter]": "asc",
                "limit": self.FEED_PAGE_SIZE,
                "offset": offset,
            }
            data = await self._request(f"/manga/{manga_id}/feed", params)
            entries = data.get("data", [])

            for entry in entries:
                attrs = entry.get("attributes", {})
                results.append(ChapterResult(
                    id=entry["id"],
                    chapter=attrs.get("chapter") or "",
                    title=attrs.get("title"),
                    volume=attrs.get("volume"),
                    language=attrs.get("translatedLanguage") or language,
                    pages=attrs.get("pages") or 0,
                    source=self.id,
                ))

            offset += len(entries)
            if not entries or offset >= data.get("total", 0):
                break

        self._log(f"✅ Found {len(results)} chapters")
        return results
