"""Conversion between Pomera notes and IMAP messages.

The Pomera stores each note as a message in a mail folder. Messages written
by the device (or by Apple Notes) are decoded here, and local notes are
turned into messages the device can read back.
"""

import base64
import codecs
import email
import quopri
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from email.header import decode_header, make_header
from email.message import Message
from email.utils import format_datetime, parseaddr, parsedate_to_datetime

from bs4 import BeautifulSoup

import subject_codec
from errors import MalformedMessageError, UnsupportedEncodingError

NOTE_TYPE_IDENTIFIER = 'com.apple.mail-note'


def normalize_newlines(text: str) -> str:
    """Convert any mix of CR, LF and CRLF line endings to CRLF."""
    text = text.replace('\r\n', '\n').replace('\r', '\n')
    return text.replace('\n', '\r\n')


def decode_subject(raw_subject: str) -> str:
    """Decode an RFC 2047 Subject header into text."""
    if not raw_subject:
        return ''
    return str(make_header(decode_header(raw_subject)))


def parse_date(raw_date: str) -> datetime:
    """Parse a Date header into an aware datetime (naive dates are UTC)."""
    date = parsedate_to_datetime(raw_date)
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    return date


@dataclass
class Note:
    """A single note, as seen on either side of the sync."""

    address: str
    subject: str
    date: datetime
    body: str

    def __post_init__(self):
        self.subject = subject_codec.normalize(subject_codec.truncate(self.subject))

    def renamed(self, subject: str) -> 'Note':
        return replace(self, subject=subject)

    @classmethod
    def from_message(cls, raw_message: bytes) -> 'Note':
        """Decode a raw message fetched from the server.

        Args:
            raw_message: Complete RFC 822 message bytes

        Returns:
            Note with CRLF line endings in its body

        Raises:
            UnsupportedEncodingError: Body transfer encoding is neither base64
                nor quoted-printable
            MalformedMessageError: Body or Date header cannot be decoded
        """
        message = email.message_from_bytes(raw_message)
        subject = subject_codec.normalize(decode_subject(message.get('Subject', '')))

        try:
            date = parse_date(message.get('Date', ''))
        except (TypeError, ValueError) as e:
            raise MalformedMessageError(subject, f"Could not parse Date header of '{subject}': {e}") from e

        address = parseaddr(message.get('From', ''))[1]
        return cls(address, subject, date, _decode_body(subject, message))

    def to_bytes(self) -> bytes:
        """Build the raw message uploaded to the server.

        The message is assembled by hand because the Pomera only reads
        subjects tagged exactly '=?UTF-8?B?' and bodies that start with a
        UTF-8 byte order mark, and the email package produces neither.
        """
        subject = base64.b64encode(self.subject.encode('utf-8')).decode('ascii')
        body = base64.b64encode(codecs.BOM_UTF8 + self.body.encode('utf-8')).decode('ascii')
        date = format_datetime(self.date.astimezone(timezone.utc), usegmt=True)

        lines = [
            'Content-Type: text/plain; charset="utf-8-sig"',
            'MIME-Version: 1.0',
            'Content-Transfer-Encoding: base64',
            f'X-Uniform-Type-Identifier: {NOTE_TYPE_IDENTIFIER}',
            f'X-Universally-Unique-Identifier: {uuid.uuid4()}',
            f'From: {self.address}',
            f'Subject: =?UTF-8?B?{subject}?=',
            f'Date: {date}',
            '',
            body,
            '',
        ]
        return '\r\n'.join(lines).encode('utf-8')


def _decode_body(subject: str, message: Message) -> str:
    payload = message.get_payload()
    if not payload:
        return ''
    if not isinstance(payload, str):
        raise MalformedMessageError(subject, f"'{subject}' is a multipart message")

    encoding = message.get('Content-Transfer-Encoding', '').strip().lower()
    if encoding == 'base64':
        try:
            body_bytes = base64.b64decode(payload)
        except ValueError as e:
            raise MalformedMessageError(subject, f"Could not decode base64 body of '{subject}': {e}") from e
    elif encoding == 'quoted-printable':
        body_bytes = quopri.decodestring(payload.encode('ascii', errors='replace'))
    else:
        raise UnsupportedEncodingError(subject, encoding)

    if body_bytes.startswith(codecs.BOM_UTF8):
        body_bytes = body_bytes[len(codecs.BOM_UTF8):]
    text = body_bytes.decode('utf-8', errors='replace')

    if message.get_content_subtype() == 'html':
        text = html_to_text(text)

    return normalize_newlines(text)


def html_to_text(html: str) -> str:
    """Flatten an Apple Notes style HTML body into plain text.

    Every <br> and every closing </div> ends a line.
    """
    html = html.replace('<br>', '\n').replace('</div>', '</div>\n')
    soup = BeautifulSoup(html, 'html.parser')
    return soup.get_text()
