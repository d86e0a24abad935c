"""Sonarr health check."""
import asyncio
import json
import os
from dataclasses import dataclass
from typing import List, Optional

import aiohttp

SONARR_URL = os.getenv("SONARR_URL", "http://localhost/sonarr/api/health")
HTTP_TIMEOUT = aiohttp.ClientTimeout(total=20)


class SonarrError(Exception):
    pass


@dataclass(frozen=True)
class HealthIssue:
    type: str
    message: str
    wiki_url: Optional[str] = None


async def get_sonarr_health(session: aiohttp.ClientSession, api_key: str,
                            base_url: str = SONARR_URL) -> List[HealthIssue]:
    # The API key stays out of error messages, they end up in the report.
    try:
        async with session.get(base_url, params={"apikey": api_key}, timeout=HTTP_TIMEOUT) as r:
            if r.status < 200 or r.status > 299:
                raise SonarrError(f"Fetching {base_url}: {r.status} {r.reason}")
            body = await r.text()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise SonarrError(f"Failed to fetch {base_url}: {str(e) or type(e).__name__}") from e

    try:
        items = json.loads(body)
        if not isinstance(items, list):
            raise ValueError(f"expected a list, got {type(items).__name__}")
        return [
            HealthIssue(
                type=str(it.get("type", "")),
                message=str(it.get("message", "")),
                wiki_url=it.get("wikiUrl"),
            )
            for it in items
        ]
    except (ValueError, AttributeError) as e:
        raise SonarrError(f"Decoding response from {base_url}: {e}") from e


async def fmt_sonarr_health(session: aiohttp.ClientSession, api_key: str,
                            base_url: str = SONARR_URL) -> List[str]:
    """Issue messages for the report. A failed check becomes a single message."""
    try:
        issues = await get_sonarr_health(session, api_key, base_url)
    except SonarrError as e:
        return [f"Error getting Sonarr health: {e}"]
    return [issue.message for issue in issues]
