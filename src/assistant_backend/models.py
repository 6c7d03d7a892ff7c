"""
Typed conversation model: messages, parts, tool calls and tool results.

All models are immutable; the timeline reducer builds new instances instead of
mutating parts in place.
"""

import uuid
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Role = Literal["user", "assistant"]
ToolName = Literal["weather", "movie"]
ToolState = Literal["pending", "output", "error"]


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


# =============================================================================
# PARTS
# =============================================================================


class TextPart(_Frozen):
    """A text span. Grows in place while the assistant is streaming."""

    type: Literal["text"] = "text"
    text: str = ""


class ToolInvocationPart(_Frozen):
    """A tool call and, once terminal, its output or failure reason."""

    type: Literal["tool-invocation"] = "tool-invocation"
    tool_call_id: str = Field(..., alias="toolCallId")
    tool_name: str = Field(..., alias="toolName")
    input: dict[str, Any] = Field(default_factory=dict)
    state: ToolState = "pending"
    output: dict[str, Any] | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state != "pending"


class ImagePart(_Frozen):
    type: Literal["image"] = "image"
    url: str
    alt: str | None = None


Part = Annotated[TextPart | ToolInvocationPart | ImagePart, Field(discriminator="type")]


class Message(_Frozen):
    """
    One chat message. Assistant messages are append-only while streaming and
    frozen (``done``) once their stream completes.
    """

    id: str = Field(default_factory=lambda: new_id("msg"))
    role: Role
    parts: tuple[Part, ...] = ()
    done: bool = False
    error: str | None = None

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def tool_invocations(self) -> list[ToolInvocationPart]:
        return [part for part in self.parts if isinstance(part, ToolInvocationPart)]


def user_message(text: str, message_id: str | None = None) -> Message:
    return Message(id=message_id or new_id("msg"), role="user", parts=(TextPart(text=text),), done=True)


# =============================================================================
# TOOL CALLS
# =============================================================================


class ToolCall(_Frozen):
    id: str = Field(default_factory=lambda: new_id("call"))
    tool_name: ToolName = Field(..., alias="toolName")
    input: dict[str, Any]


class WeatherInput(BaseModel):
    location: str = Field(..., min_length=1, description="City name")

    @field_validator("location")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("location must not be blank")
        return value


class MovieInput(BaseModel):
    title: str = Field(..., min_length=1, description="Movie title to search for")

    @field_validator("title")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be blank")
        return value


class WeatherResult(BaseModel):
    """Current conditions. Units are whatever the upstream reports (°C, %, km/h by default)."""

    location: str
    temperature: float
    feels_like: float = Field(..., alias="feelsLike")
    humidity: float
    wind_speed: float | None = Field(default=None, alias="windSpeed")
    wind_gust: float | None = Field(default=None, alias="windGust")
    conditions: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class MovieResult(BaseModel):
    title: str
    year: str
    rated: str | None = None
    released: str | None = None
    runtime: str | None = None
    genre: str | None = None
    director: str | None = None
    actors: str | None = None
    plot: str | None = None
    poster: str | None = None
    imdb_rating: str | None = Field(default=None, alias="imdbRating")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("rated", "released", "runtime", "genre", "director", "actors", "plot", "poster", "imdb_rating", mode="before")
    @classmethod
    def _drop_placeholder(cls, value: Any) -> Any:
        # OMDb reports missing fields as "N/A"
        if value in ("N/A", ""):
            return None
        return value
