"""Full MIME parser used for on-demand body retrieval.

A single walk over the leaf parts of the message picks the first inline
text/plain and text/html bodies and records attachment metadata.
Attachment payloads are not kept; the body blob stores only their names,
types and sizes.
"""

from __future__ import annotations

import email
import email.errors
import email.message
import email.policy
from dataclasses import asdict, dataclass, field
from typing import Any

from .errors import ParseError

_BODY_TYPES = {"text/plain": "text", "text/html": "html"}


@dataclass
class ParsedAttachment:
    filename: str
    content_type: str
    size: int


@dataclass
class ParsedBody:
    """Structured body of a fully fetched message."""

    body_text: str | None = None
    body_html: str | None = None
    headers: list[tuple[str, str]] = field(default_factory=list)
    attachments: list[ParsedAttachment] = field(default_factory=list)

    def to_blob(self, **extra: Any) -> dict[str, Any]:
        """JSON-ready form persisted by the body cache; *extra* keys win."""
        return {
            "text": self.body_text,
            "html": self.body_html,
            "headers": [[name, value] for name, value in self.headers],
            "attachments": [asdict(att) for att in self.attachments],
            **extra,
        }


def _is_attachment(part: email.message.EmailMessage) -> bool:
    # Named inline parts (e.g. embedded images) are counted as attachments too
    return part.get_content_disposition() == "attachment" or bool(part.get_filename())


class MimeParser:
    """Stateless parser: raw RFC 822 bytes -> ParsedBody."""

    def parse(self, raw_bytes: bytes) -> ParsedBody:
        try:
            msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
            if not msg.keys():
                raise ParseError("Message has no header fields")
            parsed = ParsedBody(headers=[(name, str(value)) for name, value in msg.items()])
            for part in msg.walk():
                if not part.is_multipart():
                    self._absorb(parsed, part)
            return parsed
        except (email.errors.MessageError, LookupError, ValueError, TypeError) as exc:
            raise ParseError(f"Malformed MIME structure: {exc}") from exc

    @staticmethod
    def _absorb(parsed: ParsedBody, part: email.message.EmailMessage) -> None:
        if _is_attachment(part):
            parsed.attachments.append(
                ParsedAttachment(
                    filename=part.get_filename() or "unnamed",
                    content_type=part.get_content_type(),
                    size=len(part.get_payload(decode=True) or b""),
                )
            )
            return

        slot = _BODY_TYPES.get(part.get_content_type())
        if slot is None or getattr(parsed, f"body_{slot}") is not None:
            return
        content = part.get_content()
        if isinstance(content, str):
            setattr(parsed, f"body_{slot}", content)
