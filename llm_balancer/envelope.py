from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, StrictBool, StrictStr, ValidationError

AUTO_MODEL = "auto"


def is_auto_model(model: str | None) -> bool:
    """An absent, empty or ``"auto"`` model leaves the backend choice to rotation."""
    return not model or model == AUTO_MODEL


class MalformedRequestBodyError(ValueError):
    pass


class _ChatRequestHead(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: StrictStr | None = None
    stream: StrictBool | None = None


@dataclass(frozen=True, slots=True)
class ChatRequestEnvelope:
    """Incoming chat-completion body with the routing fields lifted out.

    ``raw_body`` is kept unparsed; only ``model`` is ever rewritten when the
    request is forwarded.
    """

    model: str
    stream: bool
    raw_body: bytes

    def render(self, model: str) -> bytes:
        payload: dict[str, Any] = json.loads(self.raw_body)
        payload["model"] = model
        return json.dumps(payload, ensure_ascii=False).encode("utf-8")


def parse_chat_request(body: bytes) -> ChatRequestEnvelope:
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedRequestBodyError(f"Invalid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise MalformedRequestBodyError("Invalid JSON: expected a JSON object.")

    try:
        head = _ChatRequestHead.model_validate(payload)
    except ValidationError as exc:
        raise MalformedRequestBodyError(f"Invalid JSON: {exc}") from exc

    return ChatRequestEnvelope(
        model=head.model or "",
        stream=bool(head.stream),
        raw_body=bytes(body),
    )
