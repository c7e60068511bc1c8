"""Resolution of the ``stable`` version alias."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp

from ciliumctl.shared.errors import TransientError

logger = logging.getLogger(__name__)

STABLE_ALIAS = "stable"
STABLE_URL = "https://raw.githubusercontent.com/cilium/cilium/main/stable.txt"


async def fetch_stable_version(url: str = STABLE_URL, timeout: float = 10.0) -> Optional[str]:
    """Fetch the current stable Cilium release, e.g. ``1.17.3``."""
    try:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url) as response:
                if response.status == 200:
                    return (await response.text()).strip().lstrip("v") or None
                logger.warning("stable version lookup returned HTTP %s", response.status)
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.warning("stable version lookup failed: %s", exc)
    return None


async def resolve_version(version: str, url: str = STABLE_URL) -> str:
    """Return ``version`` with the ``stable`` alias replaced by a release number."""

    if version.strip().lower() != STABLE_ALIAS:
        return version
    resolved = await fetch_stable_version(url)
    if not resolved:
        raise TransientError("Could not fetch the latest stable Cilium version.")
    logger.info("resolved version alias %r to %s", version, resolved)
    return resolved
