from __future__ import annotations

import logging

import httpx

from feedreel.config import FeedSettings

logger = logging.getLogger(__name__)


class FeedAuthError(RuntimeError):
    """Raised when the feed API refuses to issue a bearer token."""


async def get_access_token(client: httpx.AsyncClient, settings: FeedSettings) -> str:
    """Fetch a bearer token with the password grant, once per run."""

    if not settings.client_id or not settings.client_secret:
        raise FeedAuthError(
            "Feed credentials are missing. Set FEEDREEL_FEED__CLIENT_ID and FEEDREEL_FEED__CLIENT_SECRET."
        )

    try:
        response = await client.post(
            settings.token_url,
            data={
                "grant_type": "password",
                "username": settings.username,
                "password": settings.password,
            },
            auth=(settings.client_id, settings.client_secret),
            headers={"User-Agent": settings.user_agent},
            timeout=settings.timeout_seconds,
        )
        response.raise_for_status()
        payload = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise FeedAuthError(f"Token request failed: {exc}") from exc

    token = payload.get("access_token") if isinstance(payload, dict) else None
    if not token:
        error = payload.get("error") if isinstance(payload, dict) else None
        raise FeedAuthError(f"Token response did not contain an access token ({error or 'no error given'}).")

    logger.debug("Obtained feed access token for %s", settings.username or "<anonymous>")
    return str(token)
