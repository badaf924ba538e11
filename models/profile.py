"""Declarative description of a chat-completion endpoint."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


API_KEY_PLACEHOLDER = "{API_KEY}"


@dataclass
class RequestConfig:
    """Concrete HTTP request derived from a profile."""

    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]


class EndpointProfile(BaseModel):
    """How to call one chat-completion style API.

    The request body is assembled from the field names declared here so the
    same client can target differently-shaped endpoints without code changes.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        protected_namespaces=(),
    )

    name: str = Field(min_length=1)
    endpoint: str = Field(min_length=1)
    auth_header_template: str = f"Bearer {API_KEY_PLACEHOLDER}"
    additional_headers: Dict[str, str] = Field(
        default_factory=lambda: {"Content-Type": "application/json"}
    )
    model_param_name: str = "model"
    messages_param_name: str = "messages"
    temperature: float = Field(default=0.3, ge=0)
    max_tokens: int = Field(default=8000, gt=0)
    response_format: Optional[str] = "json_object"
    stream: bool = False

    @field_validator("endpoint", mode="after")
    @classmethod
    def _check_endpoint(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("endpoint must be an http(s) URL")
        return value

    @field_validator("auth_header_template", mode="after")
    @classmethod
    def _check_placeholder(cls, value: str) -> str:
        if API_KEY_PLACEHOLDER not in value:
            raise ValueError(f"auth_header_template must contain {API_KEY_PLACEHOLDER}")
        return value

    @field_validator("model_param_name", "messages_param_name", mode="after")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("parameter names must not be blank")
        return value.strip()

    def build_request(
        self, api_key: str, model: str, messages: List[Dict[str, str]]
    ) -> RequestConfig:
        """Return the URL, headers and JSON body for a completion call."""

        headers = {"Authorization": self.auth_header_template.replace(API_KEY_PLACEHOLDER, api_key)}
        headers.update(self.additional_headers)

        body: Dict[str, Any] = {
            self.model_param_name: model,
            self.messages_param_name: messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if self.response_format == "json_object":
            body["response_format"] = {"type": "json_object"}
        if self.stream:
            body["stream"] = True

        return RequestConfig(url=self.endpoint, headers=headers, body=body)

    def preview_request(self) -> str:
        """Render the request with placeholders for display."""

        config = self.build_request(
            "YOUR_API_KEY",
            "SELECTED_MODEL",
            [
                {"role": "system", "content": "SYSTEM_PROMPT"},
                {"role": "user", "content": "USER_PROMPT"},
            ],
        )
        headers = json.dumps(config.headers, indent=4)
        body = json.dumps(config.body, indent=4)
        return (
            "requests.post(\n"
            f"    {config.url!r},\n"
            f"    headers={headers},\n"
            f"    json={body},\n"
            ")"
        )


BUILTIN_PROFILES: Dict[str, EndpointProfile] = {
    "together": EndpointProfile(
        name="Together.ai (Default)",
        endpoint="https://api.together.xyz/v1/chat/completions",
    ),
    "openai": EndpointProfile(
        name="OpenAI Compatible",
        endpoint="https://api.openai.com/v1/chat/completions",
    ),
}

DEFAULT_PROFILE_ID = "together"
