"""Utilities for querying The Movie Database (TMDB) catalog."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import NotFoundError, UpstreamError
from ..models import CatalogGenre, CatalogMovie, CatalogMovieDetail, CatalogProvider

logger = logging.getLogger(__name__)

AVAILABILITY_KINDS = ("flatrate", "rent", "buy")


@dataclass(slots=True)
class DiscoverPage:
    """A single page of discover results."""

    page: int
    results: list[CatalogMovie] = field(default_factory=list)
    total_pages: int = 0


class TMDBClient:
    """Catalog gateway wrapping the TMDB v3 HTTP API."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.tmdb_api_key:
            raise ValueError("TMDB API key is required when initialising TMDBClient")
        self._settings = settings
        self._client = http_client
        self._max_retries = 3

    def _headers(self) -> dict[str, str]:
        return {
            "accept": "application/json",
            "Authorization": f"Bearer {self._settings.tmdb_api_key}",
            "User-Agent": f"{self._settings.app_name} (moviematch)",
        }

    async def discover(
        self,
        *,
        provider_ids: Iterable[int],
        genre_ids: Iterable[int],
        page: int = 1,
        region: str | None = None,
        language: str | None = None,
    ) -> DiscoverPage:
        """Return one page of movies available on the providers in the genres."""

        params: dict[str, Any] = {
            "with_watch_providers": ",".join(str(value) for value in provider_ids),
            "with_genres": ",".join(str(value) for value in genre_ids),
            "with_watch_monetization_types": "|".join(
                self._settings.tmdb_monetization_types
            ),
            "watch_region": region or self._settings.tmdb_region,
            "language": language or self._settings.tmdb_language,
            "sort_by": "popularity.desc",
            "include_adult": "false",
            "include_video": "false",
            "page": page,
        }
        payload = await self._request("/discover/movie", params=params)
        results: list[CatalogMovie] = []
        for entry in payload.get("results") or []:
            if not isinstance(entry, dict):
                continue
            try:
                results.append(CatalogMovie.model_validate(entry))
            except ValidationError:
                logger.debug("Skipping malformed TMDB discover entry: %s", entry)
        total_pages = payload.get("total_pages")
        return DiscoverPage(
            page=int(payload.get("page") or page),
            results=results,
            total_pages=int(total_pages) if isinstance(total_pages, int) else 0,
        )

    async def get_item_details(
        self, item_id: int, *, language: str | None = None
    ) -> CatalogMovieDetail:
        """Fetch full metadata for a movie."""

        payload = await self._request(
            f"/movie/{item_id}",
            params={"language": language or self._settings.tmdb_language},
        )
        payload = {**payload}
        payload.setdefault(
            "genre_ids",
            [genre["id"] for genre in payload.get("genres") or [] if "id" in genre],
        )
        return CatalogMovieDetail.model_validate(payload)

    async def get_item_providers(
        self, item_id: int
    ) -> dict[str, dict[str, list[CatalogProvider]]]:
        """Return provider availability grouped by region and monetization."""

        payload = await self._request(f"/movie/{item_id}/watch/providers")
        by_region: dict[str, dict[str, list[CatalogProvider]]] = {}
        for region, offers in (payload.get("results") or {}).items():
            if not isinstance(offers, Mapping):
                continue
            by_region[region] = {
                kind: self._parse_providers(offers.get(kind) or [])
                for kind in AVAILABILITY_KINDS
            }
        return by_region

    async def list_providers(
        self, *, region: str | None = None, language: str | None = None
    ) -> list[CatalogProvider]:
        payload = await self._request(
            "/watch/providers/movie",
            params={
                "language": language or self._settings.tmdb_language,
                "watch_region": region or self._settings.tmdb_region,
            },
        )
        providers = self._parse_providers(payload.get("results") or [])
        return sorted(
            providers,
            key=lambda provider: (
                provider.display_priority is None,
                provider.display_priority or 0,
                provider.provider_name.casefold(),
            ),
        )

    async def list_genres(self, *, language: str | None = None) -> list[CatalogGenre]:
        payload = await self._request(
            "/genre/movie/list",
            params={"language": language or self._settings.tmdb_language},
        )
        genres: list[CatalogGenre] = []
        for entry in payload.get("genres") or []:
            try:
                genres.append(CatalogGenre.model_validate(entry))
            except ValidationError:
                continue
        return genres

    async def _request(
        self, endpoint: str, *, params: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """Issue a GET request, retrying transient failures."""

        attempt = 0
        while True:
            try:
                response = await self._client.get(
                    endpoint, headers=self._headers(), params=params
                )
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Transient error talking to TMDB (%s). Retrying %s in %.1fs",
                        exc.__class__.__name__,
                        endpoint,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                logger.warning("TMDB request to %s failed: %s", endpoint, exc)
                raise UpstreamError(f"Movie catalog unreachable: {exc}") from exc

            if response.status_code == 429 or response.status_code >= 500:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = self._retry_after(response) or (
                        min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    )
                    logger.info(
                        "TMDB %s for %s. Retrying in %.1fs",
                        response.status_code,
                        endpoint,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
            break

        if response.status_code == 404:
            raise NotFoundError(f"TMDB resource {endpoint} not found")
        if response.status_code >= 400:
            logger.warning(
                "TMDB request to %s failed with %s: %s",
                endpoint,
                response.status_code,
                response.text,
            )
            raise UpstreamError(
                f"Movie catalog returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamError("Movie catalog returned a non-JSON response") from exc
        if not isinstance(data, dict):
            raise UpstreamError("Unexpected movie catalog response structure")
        return data

    @staticmethod
    def _retry_after(response: httpx.Response) -> float | None:
        header = response.headers.get("retry-after")
        if not header:
            return None
        try:
            return min(float(header), 10.0)
        except ValueError:
            return None

    @staticmethod
    def _parse_providers(entries: Iterable[Any]) -> list[CatalogProvider]:
        providers: list[CatalogProvider] = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            try:
                providers.append(CatalogProvider.model_validate(entry))
            except ValidationError:
                continue
        return providers
