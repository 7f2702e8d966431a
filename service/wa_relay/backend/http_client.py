"""HTTP helper that looks up the WhatsApp Web version the bridge should announce."""
from __future__ import annotations

import logging
from typing import List, Optional

import httpx

from ..config import Settings

logger = logging.getLogger(__name__)


class WaVersionClient:
    """Thin wrapper around the published WhatsApp Web version file."""

    def __init__(self, settings: Settings, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._client = client or httpx.AsyncClient(timeout=10.0, follow_redirects=True)

    async def latest_version(self) -> Optional[List[int]]:
        """Return ``[major, minor, patch]`` or ``None`` to let the bridge use its default."""
        try:
            response = await self._client.get(self.settings.wa_version_url)
            response.raise_for_status()
            data = response.json()
            version = data.get("version") if isinstance(data, dict) else None
            if (
                not isinstance(version, list)
                or len(version) != 3
                or not all(isinstance(part, int) for part in version)
            ):
                logger.error("wa_version: unexpected payload %s", data)
                return None
            logger.info("wa_version: using WhatsApp Web v%s", ".".join(map(str, version)))
            return version
        except httpx.TimeoutException:
            logger.error("wa_version: request timeout")
            return None
        except httpx.NetworkError as e:
            logger.error("wa_version: network error - %s", e)
            return None
        except httpx.HTTPStatusError as e:
            logger.error("wa_version: HTTP %d - %s", e.response.status_code, e.response.text)
            return None
        except ValueError as e:
            logger.error("wa_version: invalid JSON - %s", e)
            return None

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)
