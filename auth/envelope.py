from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from adminapi.errors import ApiResponseError

ENVELOPE_KEY = "IndeAPIResponse"
SUCCESS_CODE = "00"


@dataclass
class ApiEnvelope:
    error_code: str
    message: str
    result: Any = None

    @property
    def ok(self) -> bool:
        return self.error_code == SUCCESS_CODE

    @classmethod
    def from_payload(cls, payload: Any) -> "ApiEnvelope":
        if not isinstance(payload, dict):
            raise ApiResponseError("Response body must be a JSON object.")

        wrapped = payload.get(ENVELOPE_KEY)
        if not isinstance(wrapped, dict):
            raise ApiResponseError(f"Response is missing the {ENVELOPE_KEY} envelope.")

        error_code = wrapped.get("ErrorCode")
        if error_code is None:
            raise ApiResponseError("Response envelope missing ErrorCode.")
        message = wrapped.get("Message") or ""
        if not isinstance(message, str):
            message = str(message)

        return cls(
            error_code=str(error_code),
            message=message,
            result=wrapped.get("Result"),
        )

    def unwrap(self, default_message: str = "Request failed.") -> Any:
        if not self.ok:
            raise ApiResponseError(
                self.message or default_message,
                error_code=self.error_code,
            )
        if self.result is None:
            raise ApiResponseError("Response envelope carried no result.", error_code=self.error_code)
        return self.result


def extract_error_message(payload: Any, default: str) -> str:
    """Pick the most specific human-readable message out of an error body.

    Checks the envelope ``Message`` first, then a top-level ``error`` or
    ``message`` string, and falls back to ``default``.
    """
    if not isinstance(payload, dict):
        return default

    wrapped = payload.get(ENVELOPE_KEY)
    if isinstance(wrapped, dict):
        message = wrapped.get("Message")
        if isinstance(message, str) and message:
            return message

    for key in ("error", "message", "detail"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value

    return default


def friendly_error_message(status_code: int) -> str:
    if status_code == 401:
        return "Authentication failed. Your access token may have expired."
    if status_code == 403:
        return "You don't have permission to perform this action."
    if status_code == 404:
        return "The requested resource was not found."
    if status_code == 429:
        return "Rate limit exceeded. Please try again shortly."
    if status_code >= 500:
        return "The admin API is experiencing issues. Please try again later."
    return f"Admin API request failed with status {status_code}."


def response_error_message(response: httpx.Response, default: str | None = None) -> str:
    fallback = default or friendly_error_message(response.status_code)
    try:
        payload = response.json()
    except ValueError:
        return fallback
    return extract_error_message(payload, fallback)


def parse_response(response: httpx.Response) -> ApiEnvelope:
    try:
        payload = response.json()
    except ValueError as error:
        raise ApiResponseError(
            "Response body is not valid JSON.",
            status_code=response.status_code,
        ) from error
    return ApiEnvelope.from_payload(payload)
