"""Abbreviation lookup against the nbnhhsh "guess" API.

Chat slang often uses pinyin initials ("yyds", "xswl"). The API maps such
tokens to candidate expansions:

    POST {"text": "yyds"} -> [{"name": "yyds", "trans": ["永远的神", ...]}]
"""

import re
from collections import OrderedDict
from typing import Any

import httpx

from ..utils.config import AbbreviationConfig, get_settings
from ..utils.logging import get_logger

logger = get_logger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]{2,}")


def normalize_token(token: str) -> str | None:
    """
    Reduce a token to the form the API understands.

    Lowercases and keeps alphanumeric runs of two or more characters, joined
    by commas. Returns None when nothing usable is left.
    """
    parts = _TOKEN_RE.findall(token.lower())
    if not parts:
        return None
    return ",".join(parts)


class AbbreviationLookup:
    """Cached client for the abbreviation API."""

    def __init__(
        self,
        config: AbbreviationConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or get_settings().abbreviation
        self._client = client
        self._owns_client = client is None
        self._cache: OrderedDict[str, list[str]] = OrderedDict()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._client

    async def lookup(self, normalized: str) -> list[str]:
        """
        Expansions for an already-normalized token.

        Raises:
            httpx.HTTPError: on transport failures or non-2xx responses
        """
        cached = self._cache.get(normalized)
        if cached is not None:
            self._cache.move_to_end(normalized)
            return cached

        response = await self._get_client().post(
            self.config.api_url,
            json={"text": normalized},
        )
        response.raise_for_status()
        records: list[dict[str, Any]] = response.json() or []

        meanings: list[str] = []
        for record in records:
            # "trans" holds known expansions; "inputting" holds unconfirmed guesses
            meanings.extend(record.get("trans") or record.get("inputting") or [])

        self._cache[normalized] = meanings
        while len(self._cache) > self.config.cache_size:
            self._cache.popitem(last=False)
        logger.debug("Abbreviation resolved", token=normalized, count=len(meanings))
        return meanings

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
