"""Test helpers to stub the OpenAI Responses client used by ``OpenAIClassifier``.

``reply`` receives the ``responses.create`` kwargs and returns either a JSON
payload (dict, serialized into ``output_text``), a raw string (used verbatim
as ``output_text``) or an exception instance to raise.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import openai

_URL = "https://api.openai.com/v1/responses"


class OpenAIStub:
    """Minimal stub matching the ``openai.OpenAI`` shape used by the classifier."""

    def __init__(self, reply: Callable[[dict[str, Any]], Any]) -> None:
        self._reply = reply
        self._calls: list[dict[str, Any]] = []

        class _Responses:
            def __init__(self, outer: OpenAIStub) -> None:
                self._outer = outer

            def create(self, **kwargs):
                self._outer._calls.append(kwargs)
                result = self._outer._reply(kwargs)
                if isinstance(result, BaseException):
                    raise result

                class _Resp:
                    output_text: str

                resp = _Resp()
                resp.output_text = result if isinstance(result, str) else json.dumps(result)
                return resp

        self.responses = _Responses(self)

    @property
    def calls(self) -> list[dict[str, Any]]:
        return self._calls


def status_error(status_code: int) -> openai.APIStatusError:
    """Build the SDK's exception for an HTTP error response."""

    request = httpx.Request("POST", _URL)
    response = httpx.Response(status_code, request=request)
    classes: dict[int, type[openai.APIStatusError]] = {
        400: openai.BadRequestError,
        401: openai.AuthenticationError,
        429: openai.RateLimitError,
    }
    cls = classes.get(status_code, openai.InternalServerError)
    return cls(f"HTTP {status_code}", response=response, body=None)


def timeout_error() -> openai.APITimeoutError:
    return openai.APITimeoutError(request=httpx.Request("POST", _URL))
