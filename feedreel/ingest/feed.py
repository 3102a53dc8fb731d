from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping
from urllib.parse import urlsplit

import httpx

from feedreel.config import FeedSettings
from feedreel.models import (
    AnimatedImageMedia,
    Candidate,
    DirectFileMedia,
    FeedSelector,
    Media,
    SegmentedStreamMedia,
)

logger = logging.getLogger(__name__)

ANIMATED_IMAGE_EXTENSIONS = (".gif", ".gifv")
_REDGIFS_POSTER_PATTERN = re.compile(r"/([^/]+)-poster\.jpg$")


def _redgifs_file_url(thumbnail_url: str) -> str | None:
    match = _REDGIFS_POSTER_PATTERN.search(urlsplit(thumbnail_url).path)
    if not match:
        return None
    return f"https://media.redgifs.com/{match.group(1)}.mp4"


# Embed providers whose direct file URL can be derived from the oembed thumbnail.
KNOWN_EMBEDS: dict[str, Callable[[str], str | None]] = {
    "redgifs.com": _redgifs_file_url,
}


def build_listing_request(
    selector: FeedSelector,
    page_size: int,
    after: str | None,
) -> tuple[str, dict[str, str | int]]:
    """Return the listing path and query parameters for one page."""

    params: dict[str, str | int] = {"limit": page_size, "raw_json": 1}
    if selector.user_mode:
        path = f"/user/{selector.source}/submitted"
        params["sort"] = selector.sort.value
    elif selector.query:
        path = f"/r/{selector.source}/search"
        params.update({"q": selector.query, "restrict_sr": 1, "sort": selector.sort.value})
    else:
        path = f"/r/{selector.source}/{selector.sort.value}"

    if selector.time_window is not None:
        params["t"] = selector.time_window.value
    if after:
        params["after"] = after
    return path, params


def classify_media(entry: Mapping[str, Any]) -> Media | None:
    """Classify a raw entry's media, or return None when nothing is downloadable."""

    media = entry.get("media") or {}

    reddit_video = media.get("reddit_video") or {}
    if entry.get("is_video") and reddit_video.get("hls_url"):
        return SegmentedStreamMedia(manifest_url=str(reddit_video["hls_url"]))

    provider = media.get("type")
    resolver = KNOWN_EMBEDS.get(provider) if isinstance(provider, str) else None
    if resolver is not None:
        thumbnail_url = (media.get("oembed") or {}).get("thumbnail_url")
        file_url = resolver(str(thumbnail_url)) if thumbnail_url else None
        if file_url:
            return DirectFileMedia(file_url=file_url, provider=provider)

    parts = urlsplit(str(entry.get("url") or ""))
    if parts.path.lower().endswith(ANIMATED_IMAGE_EXTENSIONS):
        if parts.path.lower().endswith(".gifv"):
            parts = parts._replace(path=parts.path[: -len(".gifv")] + ".gif")
        return AnimatedImageMedia(image_url=parts.geturl())

    return None


def is_pinned(entry: Mapping[str, Any]) -> bool:
    return bool(entry.get("pinned") or entry.get("stickied"))


class FeedWalker:
    """Walks a paginated listing lazily, emitting classified candidates.

    The sequence index is owned by the walker instance, so a fresh walker
    starts again from 0. The walker does not know about downstream
    rejection; callers pass ``accepted_count`` to report their own tally.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        selector: FeedSelector,
        settings: FeedSettings,
        token: str,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.selector = selector
        self.settings = settings
        self.token = token
        self.next_index = 0
        self.pages_fetched = 0
        self._sleep = sleep

    async def candidates(
        self,
        accepted_count: Callable[[], int] | None = None,
    ) -> AsyncIterator[Candidate]:
        emitted = 0

        def reached_target() -> bool:
            tally = accepted_count() if accepted_count is not None else emitted
            return tally >= self.selector.target_count

        after: str | None = None
        interval = self.settings.page_interval_seconds()

        while not reached_target():
            if self.pages_fetched > 0:
                await self._sleep(interval)

            logger.info(
                "Fetching %s (sort=%s%s) page %d",
                self.selector.label,
                self.selector.sort.value,
                f", t={self.selector.time_window.value}" if self.selector.time_window else "",
                self.pages_fetched + 1,
            )
            try:
                entries, after = await self._fetch_page(after)
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Feed walk aborted after %d candidates: %s", self.next_index, exc)
                return

            for entry in entries:
                if reached_target():
                    return
                candidate = self._to_candidate(entry)
                if candidate is None:
                    continue
                emitted += 1
                yield candidate

            if not after:
                logger.info("No more pages available for %s.", self.selector.label)
                return

    async def _fetch_page(self, after: str | None) -> tuple[list[Mapping[str, Any]], str | None]:
        path, params = build_listing_request(self.selector, self.settings.page_size, after)
        response = await self.client.get(
            f"{self.settings.api_base_url.rstrip('/')}{path}",
            params=params,
            headers={
                "Authorization": f"Bearer {self.token}",
                "User-Agent": self.settings.user_agent,
            },
            timeout=self.settings.timeout_seconds,
        )
        self.pages_fetched += 1
        response.raise_for_status()

        listing = response.json()["data"]
        entries: list[Mapping[str, Any]] = []
        for child in listing.get("children", []):
            entry = child.get("data") if isinstance(child, Mapping) else None
            if not isinstance(entry, Mapping):
                raise ValueError(f"Malformed listing entry on page {self.pages_fetched}: {child!r}")
            entries.append(entry)
        next_after = listing.get("after")
        return entries, str(next_after) if next_after else None

    def _to_candidate(self, entry: Mapping[str, Any]) -> Candidate | None:
        if is_pinned(entry) or not entry.get("id"):
            return None

        media = classify_media(entry)
        if media is None:
            return None

        candidate = Candidate(
            source_id=str(entry.get("id")),
            index=self.next_index,
            title=str(entry.get("title") or ""),
            author=str(entry.get("author") or "[deleted]"),
            media=media,
            permalink=f"{self.settings.permalink_base_url.rstrip('/')}{entry.get('permalink', '')}",
            source=self.selector.source,
        )
        self.next_index += 1
        return candidate
