#!/usr/bin/env python3
"""
Artwork Curation Pipeline - Access Token

Keeps a cached OAuth access token for the authenticated feeds and refreshes
it with the refresh-token grant when it has expired. When no token can be
obtained, the configured fallback policy decides which update mode the run
continues with.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import aiohttp

from candidate_sources import APP_HEADERS, AUTH_MODES
from pipeline_robustness import AccessTokenError

logger = logging.getLogger("artwork_curator")

AUTH_URL = "https://oauth.secure.pixiv.net/auth/token"
# Refresh a little before the server-side expiry
EXPIRY_MARGIN_SEC = 60
FALLBACK_MODE = "daily"


class AuthFailurePolicy(Enum):
    """What to do when an authenticated mode cannot get a token."""
    CHANGE_TO_RANKING = "change_to_ranking"  # Switch the run to the daily ranking
    SERVE_ONE_RANKING = "serve_one_ranking"  # Keep the mode, serve one ranking artwork now
    ABORT = "abort"                          # Do nothing this run


@dataclass(frozen=True)
class EffectiveMode:
    """Update mode a run actually uses, after any auth fallback."""
    mode: str
    access_token: Optional[str] = None
    target_override: Optional[int] = None
    switched: bool = False


class AccessTokenManager:
    """
    Cached access token with refresh-token renewal.

    The cache file holds ``access_token``, ``refresh_token`` and
    ``expires_at`` (epoch seconds).
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        cache_path: Path,
        client_id: str = "",
        client_secret: str = "",
        refresh_token: str = "",
    ):
        self.session = session
        self.cache_path = cache_path
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token

    def _load_cache(self) -> dict[str, Any]:
        if not self.cache_path.exists():
            return {}
        try:
            with open(self.cache_path) as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable token cache {self.cache_path}: {e}")
            return {}

    def _save_cache(self, data: dict[str, Any]) -> None:
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.cache_path, "w") as f:
            json.dump(data, f)

    async def acquire_token(self) -> str:
        """
        Return a valid access token, refreshing it when needed.

        Raises:
            AccessTokenError: No refresh token, or the refresh was refused.
        """
        cache = self._load_cache()
        if cache.get("access_token") and cache.get("expires_at", 0) - EXPIRY_MARGIN_SEC > time.time():
            logger.debug("Using cached access token")
            return cache["access_token"]

        refresh_token = cache.get("refresh_token") or self.refresh_token
        if not refresh_token:
            raise AccessTokenError("No refresh token configured")
        if not self.client_id or not self.client_secret:
            raise AccessTokenError("OAuth client credentials not configured")

        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "get_secure_url": "true",
        }
        try:
            async with self.session.post(AUTH_URL, data=data, headers=APP_HEADERS) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise AccessTokenError(f"Token refresh failed: {response.status} - {error_text}")
                result = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise AccessTokenError(f"Token refresh request failed: {e}") from e

        token = result.get("access_token")
        if not token:
            raise AccessTokenError("Token refresh response carried no access token")

        self._save_cache({
            "access_token": token,
            "refresh_token": result.get("refresh_token", refresh_token),
            "expires_at": time.time() + int(result.get("expires_in", 3600)),
        })
        logger.info("Obtained new access token")
        return token


async def resolve_effective_mode(
    requested_mode: str,
    token_manager: Optional[AccessTokenManager],
    policy: AuthFailurePolicy = AuthFailurePolicy.CHANGE_TO_RANKING,
) -> Optional[EffectiveMode]:
    """
    Decide the update mode for this run.

    Ranking modes need no token. Authenticated modes acquire one and fall
    back according to ``policy`` when that fails.

    Returns:
        The effective mode, or None when the policy aborts the run.
    """
    if requested_mode not in AUTH_MODES:
        return EffectiveMode(mode=requested_mode)

    try:
        if token_manager is None:
            raise AccessTokenError("No token manager configured")
        token = await token_manager.acquire_token()
        return EffectiveMode(mode=requested_mode, access_token=token)
    except AccessTokenError as e:
        logger.warning(f"Access token unavailable for '{requested_mode}': {e}")

    if policy is AuthFailurePolicy.CHANGE_TO_RANKING:
        logger.warning(f"Auth failed, changing mode to {FALLBACK_MODE}")
        return EffectiveMode(mode=FALLBACK_MODE, switched=True)
    if policy is AuthFailurePolicy.SERVE_ONE_RANKING:
        logger.warning(f"Auth failed, downloading a single {FALLBACK_MODE} artwork")
        return EffectiveMode(mode=FALLBACK_MODE, target_override=1)
    logger.warning("Auth failed, retrying later with no changes")
    return None
