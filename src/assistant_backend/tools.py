# tools.py

import logging
import os
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable

import httpx
from mcp.types import Tool
from pydantic import BaseModel

from assistant_backend.config import OMDB_API_KEY_ENV
from assistant_backend.errors import ConfigurationError, NotFound, ToolTimeout, UnknownTool, UpstreamError
from assistant_backend.models import MovieInput, MovieResult, WeatherInput, WeatherResult

log = logging.getLogger(__name__)

GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
OMDB_URL = "https://www.omdbapi.com/"

CURRENT_FIELDS = "temperature_2m,apparent_temperature,relative_humidity_2m,wind_speed_10m,wind_gusts_10m,weather_code"

WEATHER_CONDITIONS = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Foggy",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    56: "Light freezing drizzle",
    57: "Dense freezing drizzle",
    61: "Slight rain",
    63: "Moderate rain",
    65: "Heavy rain",
    66: "Light freezing rain",
    67: "Heavy freezing rain",
    71: "Slight snow fall",
    73: "Moderate snow fall",
    75: "Heavy snow fall",
    77: "Snow grains",
    80: "Slight rain showers",
    81: "Moderate rain showers",
    82: "Violent rain showers",
    85: "Slight snow showers",
    86: "Heavy snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm with slight hail",
    99: "Thunderstorm with heavy hail",
}


def get_weather_condition(code: int) -> str:
    # Unmapped codes are not an error; newer upstream codes read as "Unknown".
    return WEATHER_CONDITIONS.get(code, "Unknown")


async def _get_json(client: httpx.AsyncClient, url: str, params: dict[str, Any]) -> Any:
    try:
        response = await client.get(url, params=params)
        response.raise_for_status()
        return response.json()
    except httpx.TimeoutException as e:
        raise ToolTimeout(f"Request to {url} timed out") from e
    except httpx.HTTPError as e:
        raise UpstreamError(f"Request to {url} failed: {e}") from e
    except ValueError as e:
        raise UpstreamError(f"Invalid JSON from {url}: {e}") from e


def _is_coordinate(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


async def get_weather(client: httpx.AsyncClient, location: str) -> dict[str, Any]:
    """Resolve ``location`` with the geocoder, then fetch current conditions for it."""
    geocoding = await _get_json(client, GEOCODING_URL, {"name": location, "count": 1})
    results = geocoding.get("results") if isinstance(geocoding, dict) else None
    if not results:
        raise NotFound(location, f"Location '{location}' not found")

    try:
        place = results[0]
        latitude, longitude, name = place["latitude"], place["longitude"], place["name"]
    except (KeyError, TypeError) as e:
        raise UpstreamError(f"Malformed geocoding result for '{location}'") from e
    if not (_is_coordinate(latitude) and _is_coordinate(longitude)):
        raise UpstreamError(f"Geocoding returned no usable coordinates for '{location}'")

    data = await _get_json(
        client,
        FORECAST_URL,
        {"latitude": latitude, "longitude": longitude, "current": CURRENT_FIELDS},
    )
    try:
        current = data["current"]
        return {
            "location": name,
            "temperature": current["temperature_2m"],
            "feelsLike": current["apparent_temperature"],
            "humidity": current["relative_humidity_2m"],
            "windSpeed": current.get("wind_speed_10m"),
            "windGust": current.get("wind_gusts_10m"),
            "conditions": get_weather_condition(current.get("weather_code")),
        }
    except (KeyError, TypeError) as e:
        raise UpstreamError(f"Malformed weather response for '{name}'") from e


async def get_movie(client: httpx.AsyncClient, title: str, api_key: str | None = None) -> dict[str, Any]:
    """Fetch movie metadata by title from OMDb."""
    if not api_key:
        raise ConfigurationError(f"{OMDB_API_KEY_ENV} is not set")

    data = await _get_json(client, OMDB_URL, {"t": title, "apikey": api_key, "plot": "short"})
    if not isinstance(data, dict):
        raise UpstreamError(f"Unexpected movie response for '{title}'")
    if data.get("Response") == "False":
        raise NotFound(title, data.get("Error") or f"Movie '{title}' not found")

    return {
        "title": data.get("Title"),
        "year": data.get("Year"),
        "rated": data.get("Rated"),
        "released": data.get("Released"),
        "runtime": data.get("Runtime"),
        "genre": data.get("Genre"),
        "director": data.get("Director"),
        "actors": data.get("Actors"),
        "plot": data.get("Plot"),
        "poster": data.get("Poster"),
        "imdbRating": data.get("imdbRating"),
    }


# Tool schema for LLM

ToolHandler = Callable[[httpx.AsyncClient, BaseModel], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    output_model: type[BaseModel]
    handler: ToolHandler

    def openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_model.model_json_schema(),
            },
        }

    def mcp_tool(self) -> Tool:
        return Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.input_model.model_json_schema(),
            outputSchema=self.output_model.model_json_schema(by_alias=True),
        )


class ToolRegistry:
    """Named tools available to the model, with their input and output schemas."""

    def __init__(self, specs: list[ToolSpec] | None = None):
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Tool '{spec.name}' is already registered")
        self._specs[spec.name] = spec

    def get(self, name: str) -> ToolSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise UnknownTool(name) from None

    def names(self) -> list[str]:
        return list(self._specs)

    def openai_tools(self) -> list[dict[str, Any]]:
        return [spec.openai_tool() for spec in self._specs.values()]

    def mcp_tools(self) -> list[Tool]:
        return [spec.mcp_tool() for spec in self._specs.values()]


def default_registry(omdb_api_key: str | None = None) -> ToolRegistry:
    """Registry with the weather and movie tools.

    The OMDb key falls back to the environment. A missing key is only logged
    here; the movie tool refuses to run without it.
    """
    api_key = omdb_api_key if omdb_api_key is not None else os.environ.get(OMDB_API_KEY_ENV)
    if not api_key:
        log.warning(f"{OMDB_API_KEY_ENV} is not set - movie lookups will fail")

    async def weather(client: httpx.AsyncClient, args: WeatherInput) -> dict[str, Any]:
        return await get_weather(client, args.location)

    async def movie(client: httpx.AsyncClient, args: MovieInput, api_key: str | None) -> dict[str, Any]:
        return await get_movie(client, args.title, api_key=api_key)

    return ToolRegistry(
        [
            ToolSpec(
                name="weather",
                description="Get current weather for a location",
                input_model=WeatherInput,
                output_model=WeatherResult,
                handler=weather,
            ),
            ToolSpec(
                name="movie",
                description="Fetch movie details by title using OMDb",
                input_model=MovieInput,
                output_model=MovieResult,
                handler=partial(movie, api_key=api_key),
            ),
        ]
    )
