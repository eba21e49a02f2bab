"""
TMDB Lookup Service
───────────────────
Wraps the TMDB v3 /movie/{id} endpoint.

Used only to fill the denormalised cache fields on a ranked item when the
client did not send a metadata snapshot. A failed lookup never blocks a
rating (see hydrate_snapshot()).
"""
import logging

import httpx
from pydantic import ValidationError

from app.core.config import settings
from app.schemas.rankings import MovieSnapshot

logger = logging.getLogger(__name__)

TMDB_BASE_URL = "https://api.themoviedb.org/3"
TMDB_TIMEOUT_SECONDS = 10.0


class TMDBConfigError(Exception):
    """Raised when TMDB client is used without an API key."""


class TMDBUpstreamError(Exception):
    """Raised for non-recoverable TMDB request/response errors."""


class TMDBService:
    """
    Thin async wrapper around TMDB v3 API.
    Uses httpx for HTTP, non-blocking in async FastAPI context.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key or settings.TMDB_API_KEY
        if not self.api_key:
            raise TMDBConfigError(
                "TMDB_API_KEY is not set. "
                "Add it to your .env file or pass it explicitly."
            )
        self._transport = transport

    async def get_movie(self, tmdb_id: int) -> dict | None:
        """
        Fetch a single movie.

        Returns None if TMDB has no such movie, otherwise:
        {
          "tmdb_id": 693134,
          "title": "Dune: Part Two",
          "overview": "...",
          "poster_path": "/1pdfLvkbY9ohJlCjQH2CZjjYVvJ.jpg",
          "release_date": "2024-02-27",
          "vote_average": 8.2,
          "vote_count": 5021
        }
        """
        params = {"api_key": self.api_key, "language": "en-US"}

        try:
            async with httpx.AsyncClient(
                timeout=TMDB_TIMEOUT_SECONDS,
                transport=self._transport,
            ) as client:
                response = await client.get(
                    f"{TMDB_BASE_URL}/movie/{tmdb_id}",
                    params=params,
                )
                if response.status_code == 404:
                    return None
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TMDBUpstreamError(
                f"TMDB movie lookup failed with status {exc.response.status_code}"
            ) from exc
        except httpx.RequestError as exc:
            raise TMDBUpstreamError("TMDB movie lookup request failed") from exc

        try:
            return self._map_movie(response.json())
        except (ValueError, KeyError, TypeError) as exc:
            raise TMDBUpstreamError("TMDB movie lookup returned a malformed payload") from exc

    def _map_movie(self, raw: dict) -> dict:
        """Normalize a TMDB /movie/{id} payload to the fields we cache."""
        return {
            "tmdb_id": int(raw["id"]),
            "title": raw.get("title"),
            "overview": raw.get("overview"),
            "poster_path": raw.get("poster_path"),
            "release_date": raw.get("release_date") or None,
            "vote_average": raw.get("vote_average"),
            "vote_count": raw.get("vote_count"),
        }


async def hydrate_snapshot(
    external_ref: int,
    snapshot: MovieSnapshot | None,
    *,
    service: TMDBService | None = None,
) -> MovieSnapshot | None:
    """
    Fill a missing metadata snapshot from TMDB.

    A snapshot that already carries a title is returned untouched. Lookup
    failures are logged and the original snapshot is returned, so the
    rating itself always proceeds.
    """
    if snapshot is not None and snapshot.title:
        return snapshot

    try:
        tmdb = service or TMDBService()
        movie = await tmdb.get_movie(external_ref)
    except TMDBConfigError:
        logger.debug("TMDB disabled; keeping client snapshot for movie %s", external_ref)
        return snapshot
    except TMDBUpstreamError as exc:
        logger.warning("TMDB lookup for movie %s failed: %s", external_ref, exc)
        return snapshot

    if movie is None:
        logger.warning("TMDB has no movie %s; keeping client snapshot", external_ref)
        return snapshot

    base = snapshot.model_dump(exclude_none=True) if snapshot is not None else {}
    fetched = {
        key: movie.get(key)
        for key in ("title", "overview", "poster_path", "release_date")
        if movie.get(key) is not None
    }
    try:
        return MovieSnapshot(**{**fetched, **base})
    except ValidationError as exc:
        logger.warning(
            "TMDB metadata for movie %s does not fit the cache fields: %s",
            external_ref, exc.errors(include_url=False),
        )
        return snapshot
