"""Download the published train positions feature table."""
from __future__ import annotations

import logging
from typing import Any

import requests

from amtk_poller.errors import FetchError

LOGGER = logging.getLogger(__name__)

DEFAULT_TRAINS_URL = (
    "https://www.googleapis.com/mapsengine/v1/tables/"
    "01382379791355219452-08584582962951999356/features"
)
MAX_RESULTS = 250


class TrainPositionsSource:
    """Callable fetcher returning the raw feature objects of one poll."""

    def __init__(
        self,
        url: str = DEFAULT_TRAINS_URL,
        api_key: str | None = None,
        timeout: float = 15.0,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def params(self) -> dict[str, str | int]:
        params: dict[str, str | int] = {"version": "published", "maxResults": MAX_RESULTS}
        if self.api_key:
            params["key"] = self.api_key
        return params

    def __call__(self) -> list[dict[str, Any]]:
        LOGGER.debug("Requesting %s", self.url)
        try:
            response = self.session.get(self.url, params=self.params(), timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise FetchError(f"HTTP error while fetching {self.url}: {exc}") from exc
        except ValueError as exc:
            raise FetchError(f"Invalid JSON from {self.url}: {exc}") from exc

        if not isinstance(payload, dict):
            raise FetchError(f"Unexpected payload type from {self.url}: {type(payload).__name__}")
        features = payload.get("features")
        if not isinstance(features, list):
            raise FetchError(f"Response from {self.url} has no 'features' array")
        return features
