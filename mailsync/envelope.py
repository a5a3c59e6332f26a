"""Envelope extraction from fetched header bytes.

Uses ``email.parser.BytesHeaderParser`` which parses *only* the headers
without walking the MIME body, so it works the same on a header-only
fetch and on a full message.
"""

from __future__ import annotations

import email.errors
import email.parser
import email.policy
import email.utils
import re
from datetime import datetime

from .errors import ParseError
from .models import Address, Envelope

_MSG_ID_RE = re.compile(r"<[^<>\s]+>")


def parse_envelope(raw_bytes: bytes, *, seqno: int | None = None) -> Envelope:
    """Build an :class:`Envelope` from raw RFC 822 header (or message) bytes.

    Raises :class:`ParseError` when the bytes contain no header fields.
    """
    parser = email.parser.BytesHeaderParser(policy=email.policy.default)
    try:
        headers = parser.parsebytes(raw_bytes)
        if not headers.keys():
            raise ParseError("Message has no header fields", seqno=seqno)

        return Envelope(
            subject=_text(headers.get("Subject")),
            from_=_parse_address_list(headers.get("From")),
            reply_to=_parse_address_list(headers.get("Reply-To")),
            to=_parse_address_list(headers.get("To")),
            cc=_parse_address_list(headers.get("Cc")),
            bcc=_parse_address_list(headers.get("Bcc")),
            date=_parse_date(headers.get("Date")),
            message_id=_first_msg_id(headers.get("Message-ID")),
            in_reply_to=_first_msg_id(headers.get("In-Reply-To")),
            references=_MSG_ID_RE.findall(_text(headers.get("References"))),
        )
    except (email.errors.MessageError, ValueError, TypeError, IndexError) as exc:
        raise ParseError(f"Malformed header block: {exc}", seqno=seqno) from exc


def _text(value: object) -> str:
    return str(value).strip() if value is not None else ""


def _parse_address_list(header_value: object) -> list[Address]:
    """Parse an RFC 2822 address list, dropping entries without an address."""
    if not header_value:
        return []
    return [
        Address(name=name, address=addr)
        for name, addr in email.utils.getaddresses([str(header_value)])
        if addr
    ]


def _parse_date(header_value: object) -> datetime | None:
    if not header_value:
        return None
    try:
        return email.utils.parsedate_to_datetime(str(header_value))
    except (TypeError, ValueError):
        return None


def _first_msg_id(header_value: object) -> str | None:
    """Return the first ``<id>`` token, or the bare value if it has no brackets."""
    text = _text(header_value)
    if not text:
        return None
    match = _MSG_ID_RE.search(text)
    return match.group(0) if match else text.split()[0]
