"""Helpers for JSON REST endpoints: request parsing, responses and error bodies."""

from __future__ import annotations

import contextlib
import dataclasses
import io
import json
import typing
from dataclasses import dataclass
from typing import Any, BinaryIO, Generic, TypeVar
from wsgiref.headers import Headers

Req = TypeVar("Req")
Resp = TypeVar("Resp")

_WHITESPACE = " \t\n\r"

# Annotations written as text (postponed evaluation) are resolved for the
# built-in scalar types; any other text annotation leaves the value as decoded.
_NAMED_HINTS: dict[str, Any] = {
    "int": int,
    "str": str,
    "float": float,
    "bool": bool,
    "Any": None,
    "typing.Any": None,
}


class ResponseWriter:
    """Collects a response's headers and status and writes its body to a stream.

    The first status set wins; writing the body without a status implies 200.
    """

    def __init__(self, stream: BinaryIO | None = None) -> None:
        self.headers = Headers([])
        self.status: int | None = None
        self.stream = stream if stream is not None else io.BytesIO()

    def write_header(self, status: int) -> None:
        """Set the response status unless one has already been set."""
        if self.status is None:
            self.status = status

    def write(self, data: bytes) -> int:
        """Write data to the body, returning the number of bytes written."""
        if self.status is None:
            self.status = 200
        self.stream.write(data)
        return len(data)

    @property
    def body(self) -> bytes:
        """The body written so far, for writers backed by an in-memory stream."""
        getvalue = getattr(self.stream, "getvalue", None)
        if getvalue is None:
            raise TypeError("the response stream does not retain its contents")
        return getvalue()


class RequestError(Exception):
    """Raised when a request cannot be parsed or a response cannot be written."""

    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


@dataclass
class ErrorResponse:
    """A JSON error body; subclasses may add fields."""

    message: str = ""


def _resolve(hint: Any) -> Any:
    if isinstance(hint, str):
        return _NAMED_HINTS.get(hint.strip())
    return hint


def _convert(value: Any, hint: Any) -> Any:
    hint = _resolve(hint)
    if hint is None or hint is Any:
        return value
    if isinstance(hint, type) and dataclasses.is_dataclass(hint):
        if not isinstance(value, dict):
            raise TypeError(f"cannot unmarshal {type(value).__name__} into {hint.__name__}")
        fields = {f.name: f.type for f in dataclasses.fields(hint) if f.init}
        unknown = sorted(set(value) - set(fields))
        if unknown:
            raise ValueError(f'unknown field "{unknown[0]}"')
        return hint(
            **{k: _convert(v, fields[k]) for k, v in value.items() if v is not None}
        )
    origin = typing.get_origin(hint)
    if origin is list:
        if not isinstance(value, list):
            raise TypeError(f"cannot unmarshal {type(value).__name__} into a list")
        (item,) = typing.get_args(hint) or (None,)
        return [_convert(v, item) for v in value]
    if origin is dict:
        if not isinstance(value, dict):
            raise TypeError(f"cannot unmarshal {type(value).__name__} into a mapping")
        args = typing.get_args(hint)
        item = args[1] if len(args) == 2 else None
        return {k: _convert(v, item) for k, v in value.items()}
    if hint is bool:
        if not isinstance(value, bool):
            raise TypeError(f"cannot unmarshal {type(value).__name__} into bool")
        return value
    if hint is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"cannot unmarshal {type(value).__name__} into int")
        return value
    if hint is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"cannot unmarshal {type(value).__name__} into float")
        return float(value)
    if hint is str:
        if not isinstance(value, str):
            raise TypeError(f"cannot unmarshal {type(value).__name__} into str")
        return value
    return value


def _read_text(body: bytes | bytearray | str | BinaryIO) -> str:
    if isinstance(body, str):
        return body
    if isinstance(body, (bytes, bytearray)):
        return bytes(body).decode("utf-8")
    try:
        data = body.read()
    finally:
        close = getattr(body, "close", None)
        if close is not None:
            close()
    return data if isinstance(data, str) else data.decode("utf-8")


def _default(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"object of type {type(obj).__name__} is not JSON serializable")


def _encode(obj: Any) -> bytes:
    return (json.dumps(obj, default=_default, allow_nan=False) + "\n").encode("utf-8")


@dataclass(frozen=True)
class Endpoint(Generic[Req, Resp]):
    """A JSON endpoint with a request and a response type.

    A request_type of None returns the decoded JSON value as is.
    """

    request_type: type | None = None
    response_type: type | None = None

    def parse_request(self, writer: ResponseWriter, body: bytes | str | BinaryIO) -> Req:
        """Decode a single JSON value from body; on failure write a 400 error and raise."""
        try:
            text = _read_text(body)
            start = len(text) - len(text.lstrip(_WHITESPACE))
            value, end = json.JSONDecoder().raw_decode(text, start)
            request = _convert(value, self.request_type)
        except (ValueError, TypeError) as exc:
            write_error_msg(writer, "failed to decode request body", 400)
            raise RequestError(f"failed to decode request body: {exc}", 400) from exc
        if text[end:].strip(_WHITESPACE):
            write_error_msg(writer, "body contains trailing data", 400)
            raise RequestError("body contains trailing data", 400)
        return request

    def write_response(self, writer: ResponseWriter, response: Resp) -> None:
        """Write response as JSON; on failure write a 500 error and raise."""
        writer.headers["Content-Type"] = "application/json"
        try:
            writer.write(_encode(response))
        except (TypeError, ValueError, OSError) as exc:
            write_error_msg(writer, "failed to encode response", 500)
            raise RequestError(f"failed to encode response: {exc}", 500) from exc


def write_error_msg(writer: ResponseWriter, msg: str, status: int) -> None:
    """Write an ErrorResponse carrying msg with the given status."""
    write_error(writer, ErrorResponse(message=msg), status)


def write_error(writer: ResponseWriter, err: ErrorResponse, status: int) -> None:
    """Write err as JSON with the given status; failures to write are ignored."""
    writer.headers["Content-Type"] = "application/json"
    writer.write_header(status)
    with contextlib.suppress(OSError, TypeError, ValueError):
        writer.write(_encode(err))