from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from rate_limiter import AsyncCooldown
from utils.outbound_http import RetryPolicy, request_with_retry


class TmdbError(RuntimeError):
    pass


@dataclass(frozen=True)
class TmdbMatch:
    id: int
    tmdb_type: str  # "movie" | "tv"


def tmdb_type_for(media_type: str) -> str:
    return "tv" if media_type == "episode" else "movie"


class AsyncTmdbClient:
    """Thin TMDB v3 client: search by title and fetch details."""

    def __init__(
        self,
        *,
        api_key: str,
        client: httpx.AsyncClient,
        base_url: str = "https://api.themoviedb.org/3",
        image_base_url: str = "https://image.tmdb.org/t/p/original",
        timeout_s: float = 5.0,
        retry: RetryPolicy | None = None,
        cooldown: AsyncCooldown | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("TMDB api key is required")
        self._api_key = str(api_key)
        self._client = client
        self.base_url = str(base_url or "").rstrip("/")
        self.image_base_url = str(image_base_url or "").rstrip("/")
        self.timeout_s = float(timeout_s)
        self._retry = retry
        self._cooldown = cooldown

    def image_url(self, path: Any) -> Optional[str]:
        if not isinstance(path, str) or not path:
            return None
        if not path.startswith("/"):
            path = "/" + path
        return self.image_base_url + path

    async def get_json(self, path: str, params: Dict[str, Any]) -> Optional[Any]:
        """GET a TMDB resource; None when TMDB answers 404."""
        url = self.base_url + "/" + path.lstrip("/")
        query = dict(params)
        query["api_key"] = self._api_key
        if self._cooldown is not None:
            await self._cooldown.wait()
        try:
            resp = await request_with_retry(
                client=self._client,
                method="GET",
                url=url,
                target_kind="tmdb",
                timeout_s=self.timeout_s,
                retry=self._retry,
                params=query,
            )
        except Exception as e:
            raise TmdbError(f"GET {path} failed: {e}") from e
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise TmdbError(f"GET {path} -> HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except Exception as e:
            raise TmdbError(f"GET {path} did not return JSON: {e}") from e

    async def search(
        self, media_type: str, title: str, year: Optional[int] = None
    ) -> Optional[TmdbMatch]:
        tmdb_type = tmdb_type_for(media_type)
        params: Dict[str, Any] = {"query": str(title), "include_adult": "false"}
        if year:
            params["first_air_date_year" if tmdb_type == "tv" else "year"] = int(year)
        body = await self.get_json(f"search/{tmdb_type}", params)
        results = body.get("results") if isinstance(body, dict) else None
        if not isinstance(results, list) or not results:
            return None
        first = results[0]
        if not isinstance(first, dict):
            return None
        try:
            return TmdbMatch(id=int(first.get("id")), tmdb_type=tmdb_type)
        except (TypeError, ValueError):
            return None

    async def details(self, match: TmdbMatch) -> Optional[Dict[str, Any]]:
        body = await self.get_json(
            f"{match.tmdb_type}/{int(match.id)}", {"append_to_response": "credits"}
        )
        return body if isinstance(body, dict) else None


def _str_or_none(val: Any) -> Optional[str]:
    return val if isinstance(val, str) and val else None


def parse_details(details: Dict[str, Any], *, tmdb_type: str) -> Dict[str, Any]:
    """Pick the fields we keep from a TMDB details payload, ignoring junk."""
    genres: List[str] = []
    raw_genres = details.get("genres")
    for g in raw_genres if isinstance(raw_genres, list) else []:
        name = g.get("name") if isinstance(g, dict) else None
        if isinstance(name, str) and name:
            genres.append(name)
    vote = details.get("vote_average")
    if isinstance(vote, bool) or not isinstance(vote, (int, float)):
        vote = None
    try:
        tmdb_id = int(details.get("id"))
    except (TypeError, ValueError):
        raise TmdbError("TMDB details missing id")
    return {
        "tmdbId": tmdb_id,
        "tmdbType": tmdb_type,
        "overview": _str_or_none(details.get("overview")),
        "genres": genres,
        "releaseDate": _str_or_none(details.get("release_date")),
        "firstAirDate": _str_or_none(details.get("first_air_date")),
        "posterPath": _str_or_none(details.get("poster_path")),
        "backdropPath": _str_or_none(details.get("backdrop_path")),
        "voteAverage": vote,
        "language": _str_or_none(details.get("original_language")),
    }
