"""Command and response shapes exchanged over the control socket.

Commands form a pydantic discriminated union on ``action``. Field names on the
wire are camelCase (``taskId``, ``durationMs``); the Python attributes are
snake_case and populated through aliases.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from yona.daemon.errors import CommandValidationError
from yona.daemon.framing import decode_message

UNKNOWN_ID = "unknown"


class _CommandBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str


class _SessionCommand(_CommandBase):
    session: str = Field(min_length=1)


class PingCommand(_CommandBase):
    action: Literal["ping"]


class RunCommand(_SessionCommand):
    action: Literal["run"]
    name: str = Field(min_length=1)
    # JSON numbers only: strings and non-finite floats are rejected.
    duration_ms: Annotated[float, Field(strict=True, gt=0, allow_inf_nan=False)] | None = Field(
        default=None,
        alias="durationMs",
    )

    @field_validator("duration_ms")
    @classmethod
    def _keep_integral_duration(cls, value: float | None) -> float | None:
        if value is not None and float(value).is_integer():
            return int(value)
        return value


class StatusCommand(_SessionCommand):
    action: Literal["status"]
    task_id: str | None = Field(default=None, alias="taskId")


class StopCommand(_SessionCommand):
    action: Literal["stop"]
    task_id: str | None = Field(default=None, alias="taskId")


class SessionListCommand(_CommandBase):
    action: Literal["session_list"]


class ChatCommand(_SessionCommand):
    action: Literal["chat"]
    text: str = Field(min_length=1)
    model: str | None = None


class SubscribeCommand(_CommandBase):
    action: Literal["subscribe"]


Command = Annotated[
    PingCommand
    | RunCommand
    | StatusCommand
    | StopCommand
    | SessionListCommand
    | ChatCommand
    | SubscribeCommand,
    Field(discriminator="action"),
]

COMMAND_ADAPTER: TypeAdapter[Command] = TypeAdapter(Command)


class Response(BaseModel):
    """Reply to exactly one command, matched by correlation id."""

    id: str
    success: bool
    data: Any = None
    error: str | None = None

    @model_validator(mode="after")
    def _check_outcome(self) -> Response:
        if self.success and (self.data is None or self.error is not None):
            raise ValueError("successful response must carry data and no error")
        if not self.success and (self.error is None or self.data is not None):
            raise ValueError("failed response must carry an error and no data")
        return self

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def success_response(command_id: str, data: Any) -> Response:
    return Response(id=command_id, success=True, data=data)


def error_response(command_id: str | None, error: str) -> Response:
    return Response(id=command_id or UNKNOWN_ID, success=False, error=error)


def command_to_dict(command: Command) -> dict[str, Any]:
    """Wire representation of a command, omitting unset optional fields."""

    return command.model_dump(mode="json", by_alias=True, exclude_none=True)


def validate_command(payload: Any) -> Command:
    """Validate a decoded message against the known command shapes."""

    try:
        return COMMAND_ADAPTER.validate_python(payload)
    except ValidationError as error:
        raise CommandValidationError(
            f"Validation error: {format_validation_error(error)}",
            command_id=extract_command_id(payload),
        ) from error


def parse_command(raw: bytes) -> Command:
    """Decode one framed message and validate it.

    Raises ``MessageDecodeError`` for malformed bytes and
    ``CommandValidationError`` for shape mismatches.
    """

    return validate_command(decode_message(raw))


def extract_command_id(payload: Any) -> str | None:
    if isinstance(payload, dict) and payload.get("id") is not None:
        return str(payload["id"])
    return None


def format_validation_error(error: ValidationError) -> str:
    """Render pydantic errors as ``<field path>: <reason>`` joined with ``, ``."""

    parts: list[str] = []
    for item in error.errors(include_url=False):
        error_type = item["type"]
        loc = [str(part) for part in item["loc"]]
        if error_type == "union_tag_not_found":
            parts.append("action: Required")
            continue
        if error_type == "union_tag_invalid":
            expected = item.get("ctx", {}).get("expected_tags", "")
            parts.append(f"action: Invalid discriminator value. Expected {expected}")
            continue
        # Discriminated union errors are prefixed with the matched tag.
        field_path = ".".join(loc[1:]) if loc else ""
        parts.append(f"{field_path or '(root)'}: {item['msg']}")
    return ", ".join(parts)
