"""Shared fixtures: fake upstream APIs and a keyword-driven orchestrator."""

import httpx
import pytest

from assistant_backend.core.client import KeywordModel
from assistant_backend.core.executor import ToolExecutor
from assistant_backend.core.orchestrator import Orchestrator
from assistant_backend.tools import default_registry

PARIS_CURRENT = {
    "time": "2026-10-19T12:00",
    "temperature_2m": 18.3,
    "apparent_temperature": 17.1,
    "relative_humidity_2m": 62,
    "wind_speed_10m": 11.2,
    "wind_gusts_10m": 24.5,
    "weather_code": 0,
}

INCEPTION = {
    "Title": "Inception",
    "Year": "2010",
    "Rated": "PG-13",
    "Released": "16 Jul 2010",
    "Runtime": "148 min",
    "Genre": "Action, Adventure, Sci-Fi",
    "Director": "Christopher Nolan",
    "Actors": "Leonardo DiCaprio, Joseph Gordon-Levitt, Elliot Page",
    "Plot": "A thief who steals corporate secrets through dream-sharing technology.",
    "Poster": "https://m.media-amazon.com/images/inception.jpg",
    "imdbRating": "8.8",
    "Response": "True",
}


class FakeUpstream:
    """Stands in for Open-Meteo and OMDb; records every request it receives."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.current = dict(PARIS_CURRENT)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host

        if host == "geocoding-api.open-meteo.com":
            name = request.url.params["name"]
            if name == "Atlantis":
                return httpx.Response(200, json={"generationtime_ms": 0.2})
            return httpx.Response(200, json={"results": [{"name": name, "latitude": 48.85, "longitude": 2.35}]})

        if host == "api.open-meteo.com":
            return httpx.Response(200, json={"current": self.current})

        if host == "www.omdbapi.com":
            if request.url.params["t"].lower() == "inception":
                return httpx.Response(200, json=INCEPTION)
            return httpx.Response(200, json={"Response": "False", "Error": "Movie not found!"})

        return httpx.Response(404)

    def hosts(self) -> list[str]:
        return [request.url.host for request in self.requests]


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def http_client(upstream):
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream))


@pytest.fixture
def registry():
    return default_registry(omdb_api_key="test-key")


@pytest.fixture
def executor(registry, http_client):
    return ToolExecutor(registry, http_client, timeout=5)


@pytest.fixture
def orchestrator(executor):
    return Orchestrator(KeywordModel(), executor)
