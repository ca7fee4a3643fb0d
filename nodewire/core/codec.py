"""Line codec — converts between JSON lines and typed envelopes.

The body discriminator (``type``) is read first and selects the payload
model that validates the remaining body fields. Unknown discriminators
decode to ``Unrecognized`` instead of failing, so newer peers cannot crash
an older node.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from nodewire.core.errors import DecodeError
from nodewire.models.envelopes import Body, Envelope
from nodewire.models.payloads import BUILTIN_PAYLOADS, Payload, Unrecognized

logger = logging.getLogger(__name__)

# Body keys owned by the envelope rather than by any payload.
_HEADER_KEYS = frozenset({"type", "msg_id", "in_reply_to"})


class Codec:
    """Decodes and encodes envelopes, one JSON object per line.

    Each codec starts with the built-in payloads (``init``, ``init_ok``,
    ``error``); application payloads are added with ``register``.
    """

    def __init__(self) -> None:
        self._registry: dict[str, type[Payload]] = dict(BUILTIN_PAYLOADS)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, *payload_classes: type[Payload]) -> None:
        """Register payload models by their declared discriminator.

        Registering a discriminator twice replaces the earlier model.
        """
        for payload_cls in payload_classes:
            payload_type = payload_cls.payload_type()
            self._registry[payload_type] = payload_cls
            logger.debug("Registered payload %s -> %s", payload_type, payload_cls.__name__)

    @property
    def payload_types(self) -> list[str]:
        return sorted(self._registry)

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    def decode(self, line: str | bytes) -> Envelope | None:
        """Decode one line into an ``Envelope``.

        Returns ``None`` for blank lines. Raises ``DecodeError`` for
        bytes that are not UTF-8, malformed JSON, a malformed envelope frame,
        a missing or non-string ``type``, or payload fields that fail
        validation.
        """
        if isinstance(line, bytes):
            try:
                line = line.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise DecodeError(f"Invalid UTF-8: {exc}") from exc
        line = line.strip()
        if not line:
            return None

        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            raise DecodeError(f"Invalid JSON: {exc}") from exc

        if not isinstance(data, dict):
            raise DecodeError(f"Message must be a JSON object, got {type(data).__name__}")

        sender = data.get("src")
        recipient = data.get("dest")
        body = data.get("body")
        if not isinstance(sender, str) or not isinstance(recipient, str):
            raise DecodeError("Message must carry string 'src' and 'dest' fields")
        if not isinstance(body, dict):
            raise DecodeError("Message 'body' must be a JSON object", sender=sender, recipient=recipient)

        if "type" not in body:
            raise DecodeError("Missing body type", sender=sender, recipient=recipient)
        payload_type = body["type"]
        if not isinstance(payload_type, str):
            raise DecodeError(
                f"Body type must be a string, got {type(payload_type).__name__}",
                sender=sender,
                recipient=recipient,
            )

        message_id = _optional_id(body, "msg_id", sender, recipient)
        in_reply_to = _optional_id(body, "in_reply_to", sender, recipient)
        fields = {k: v for k, v in body.items() if k not in _HEADER_KEYS}

        payload_cls = self._registry.get(payload_type)
        if payload_cls is None:
            payload: Payload = Unrecognized(type=payload_type, raw_fields=fields)
        else:
            try:
                payload = payload_cls.model_validate(fields)
            except ValidationError as exc:
                raise DecodeError(
                    f"Invalid {payload_type!r} payload: {exc.error_count()} field error(s)",
                    sender=sender,
                    recipient=recipient,
                    message_id=message_id,
                    in_reply_to=in_reply_to,
                ) from exc

        return Envelope(
            sender=sender,
            recipient=recipient,
            body=Body(message_id=message_id, in_reply_to=in_reply_to, payload=payload),
        )

    # ------------------------------------------------------------------
    # Encode
    # ------------------------------------------------------------------

    def encode(self, envelope: Envelope) -> str:
        """Encode an envelope as a single compact JSON line (no newline).

        ``msg_id`` and ``in_reply_to`` are written only when set.
        """
        body = envelope.body
        wire_body: dict[str, Any] = {"type": body.payload.type}
        if body.message_id is not None:
            wire_body["msg_id"] = body.message_id
        if body.in_reply_to is not None:
            wire_body["in_reply_to"] = body.in_reply_to
        wire_body.update(body.payload.wire_fields())
        return json.dumps(
            {"src": envelope.sender, "dest": envelope.recipient, "body": wire_body},
            separators=(",", ":"),
        )


def _optional_id(body: dict[str, Any], key: str, sender: str, recipient: str) -> int | None:
    value = body.get(key)
    if value is None:
        return None
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise DecodeError(
            f"Body {key!r} must be a non-negative integer, got {value!r}",
            sender=sender,
            recipient=recipient,
        )
    return value
