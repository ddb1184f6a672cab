from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from formfind.logging import get_logger
from formfind.service.errors import (
    BadRequestError,
    ConfigurationError,
    ServerError,
    UpstreamError,
)
from formfind.service.fs import BlobStore, InvalidDataURLError

logger = get_logger(__name__)

MAX_SIMILAR_PRODUCTS = 8


def map_visual_matches(data: Dict[str, Any], limit: int = MAX_SIMILAR_PRODUCTS) -> List[dict]:
    """Keep matches with a title, link and thumbnail; prefer the full image."""
    products: List[dict] = []
    for match in data.get("visual_matches") or []:
        if not (match.get("title") and match.get("link") and match.get("thumbnail")):
            continue
        price = match.get("price") or {}
        products.append(
            {
                "link": match["link"],
                "source": match.get("source"),
                "thumbnail": match.get("image") or match["thumbnail"],
                "title": match["title"],
                "price": price.get("value") if isinstance(price, dict) else None,
                "inStock": match.get("in_stock"),
                "image": match.get("image"),
            }
        )
        if len(products) >= limit:
            break
    return products


class VisualSearchService:
    """Google Lens lookups through SerpAPI."""

    def __init__(
        self,
        blobs: BlobStore,
        *,
        api_key: Optional[str],
        base_url: str = "https://serpapi.com/search",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.blobs = blobs
        self.api_key = api_key
        self.base_url = base_url
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def similar_products(
        self, *, image_url: Optional[str] = None, image_base64: Optional[str] = None
    ) -> List[dict]:
        if not image_url and image_base64:
            try:
                image_url = self.blobs.put_data_url(image_base64)
            except (InvalidDataURLError, OSError) as exc:
                logger.error("similar_products_upload_failed", error=str(exc))
                raise ServerError("An error occurred processing your request") from exc
        if not image_url:
            raise BadRequestError("Image URL or base64 data is required")
        if not self.is_configured:
            logger.error("similar_products_missing_api_key")
            raise ConfigurationError("API configuration missing")

        client = await self._get_client()
        try:
            response = await client.get(
                self.base_url,
                params={"engine": "google_lens", "url": image_url, "api_key": self.api_key},
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.error("similar_products_request_failed", error_type=type(exc).__name__, error=str(exc))
            raise ServerError("An error occurred processing your request") from exc
        if response.is_error:
            logger.error(
                "similar_products_api_error",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise UpstreamError(
                "Failed to fetch similar products", status_code=response.status_code
            )
        try:
            data = response.json()
        except ValueError as exc:
            logger.error("similar_products_invalid_json", error=str(exc))
            raise ServerError("An error occurred processing your request") from exc
        products = map_visual_matches(data)
        logger.info(
            "similar_products_found",
            matches=len(data.get("visual_matches") or []),
            returned=len(products),
        )
        return products

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
