from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError as SchemaError

from common.clock import Clock, SystemClock
from parley.config import ClientConfig
from parley.errors import ChatError, ErrorKind
from parley.sessions.schema import Message, Role, make_message

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUS = 401


class ChatMessagePayload(BaseModel):
    role: Role
    content: str


class CompletionRequest(BaseModel):
    model: str
    messages: list[ChatMessagePayload]
    stream: bool = False
    max_tokens: int
    temperature: float
    frequency_penalty: float


class ChoiceMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str | None = None
    content: str | None = None


class Choice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int | None = None
    message: ChoiceMessage | None = None


class CompletionResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    choices: list[Choice] = []

    def first_content(self) -> str | None:
        if not self.choices or self.choices[0].message is None:
            return None
        return self.choices[0].message.content


@dataclass(frozen=True, slots=True)
class CompletionResult:
    message: Message | None = None
    error: ChatError | None = None

    @property
    def ok(self) -> bool:
        return self.message is not None

    @classmethod
    def failure(cls, kind: ErrorKind, text: str) -> "CompletionResult":
        return cls(error=ChatError(kind, text))


def build_payload_messages(system_prompt: str, prior_messages: Iterable[Message]) -> list[ChatMessagePayload]:
    """Replace every system message with a single leading one built from ``system_prompt``."""
    payload = [ChatMessagePayload(role="system", content=system_prompt)]
    payload.extend(
        ChatMessagePayload(role=m.role, content=m.content)
        for m in prior_messages
        if m.role != "system"
    )
    return payload


def describe_error_body(response: httpx.Response) -> str:
    try:
        body: Any = response.json()
    except (json.JSONDecodeError, ValueError):
        return "could not parse response"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if body.get("detail"):
            return str(body["detail"])
    return json.dumps(body, ensure_ascii=False)


class CompletionClient:
    """Turns a conversation into one POST to the completions endpoint.

    The client never retries. A completion costs tokens, so repeating one is
    left to the caller.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        clock: Clock | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.config = config or ClientConfig()
        self.clock = clock or SystemClock()
        self._transport = transport
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.config.timeout, transport=self._transport)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def build_request(
        self, system_prompt: str, model: str, prior_messages: Iterable[Message]
    ) -> CompletionRequest:
        return CompletionRequest(
            model=model,
            messages=build_payload_messages(system_prompt, prior_messages),
            stream=False,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            frequency_penalty=self.config.frequency_penalty,
        )

    def complete(
        self,
        system_prompt: str,
        model: str,
        prior_messages: Iterable[Message],
        api_key: str,
    ) -> CompletionResult:
        if not api_key:
            return CompletionResult.failure(
                ErrorKind.MISSING_CREDENTIAL,
                "API key is not set. Enter your API key to start chatting.",
            )

        request = self.build_request(system_prompt, model, prior_messages)
        logger.debug(f"Requesting completion: model={model}, messages={len(request.messages)}")

        try:
            response = self.client.post(
                self.config.completions_url,
                json=request.model_dump(),
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {api_key}",
                },
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Completion request timed out: {e}")
            return CompletionResult.failure(
                ErrorKind.REQUEST_FAILED,
                f"API request timed out after {self.config.timeout:g}s",
            )
        except httpx.RequestError as e:
            logger.warning(f"Completion request failed: {e}")
            return CompletionResult.failure(ErrorKind.REQUEST_FAILED, f"API request failed: {e}")

        if response.status_code == AUTH_FAILURE_STATUS:
            logger.warning("Completion endpoint rejected the API key")
            return CompletionResult.failure(
                ErrorKind.INVALID_CREDENTIAL,
                "API key is invalid. Enter a valid API key in settings.",
            )
        if not response.is_success:
            detail = describe_error_body(response)
            logger.warning(f"Completion request returned {response.status_code}: {detail}")
            return CompletionResult.failure(
                ErrorKind.REQUEST_FAILED,
                f"API request error: {response.status_code} - {detail}",
            )

        try:
            parsed = CompletionResponse.model_validate(response.json())
        except (json.JSONDecodeError, ValueError, SchemaError) as e:
            logger.warning(f"Unreadable completion response: {e}")
            return CompletionResult.failure(
                ErrorKind.REQUEST_FAILED, "API request error: could not parse response"
            )

        content = parsed.first_content()
        if content is None:
            return CompletionResult.failure(
                ErrorKind.REQUEST_FAILED, "API response contained no completion choices"
            )

        return CompletionResult(message=make_message("assistant", content.strip(), self.clock))
