"""Tests for note <-> message conversion."""

import base64
import codecs
import email

import pytest

from conftest import ADDRESS, utc
from errors import MalformedMessageError, UnsupportedEncodingError
from note_message import Note, html_to_text, normalize_newlines


def raw_message(body: bytes, encoding: str = 'base64', content_type: str = 'text/plain',
                subject: str = 'Test') -> bytes:
    headers = (
        f'From: {ADDRESS}\r\n'
        f'Subject: {subject}\r\n'
        'Date: Mon, 01 Jan 2024 10:00:00 +0900\r\n'
        f'Content-Type: {content_type}; charset="utf-8"\r\n'
        f'Content-Transfer-Encoding: {encoding}\r\n'
        '\r\n'
    )
    return headers.encode('ascii') + body


def parsed(note: Note):
    return email.message_from_bytes(note.to_bytes())


class TestEncode:
    def test_round_trip_preserves_note(self):
        note = Note(ADDRESS, 'Shopping list', utc(2024, 1, 1, 10, 0, 0), 'milk\r\neggs\r\n')

        assert Note.from_message(note.to_bytes()) == note

    def test_message_layout_matches_what_the_device_reads(self):
        note = Note(ADDRESS, 'メモ', utc(2024, 1, 1, 10, 0, 0), 'body\r\n')
        raw = note.to_bytes()
        message = parsed(note)

        assert b'Subject: =?UTF-8?B?' + base64.b64encode('メモ'.encode('utf-8')) + b'?=\r\n' in raw
        assert message['Content-Type'] == 'text/plain; charset="utf-8-sig"'
        assert message['Content-Transfer-Encoding'] == 'base64'
        assert message['MIME-Version'] == '1.0'
        assert message['X-Uniform-Type-Identifier'] == 'com.apple.mail-note'
        assert message['Date'] == 'Mon, 01 Jan 2024 10:00:00 GMT'
        assert message['From'] == ADDRESS

    def test_body_carries_byte_order_mark(self):
        note = Note(ADDRESS, 'Bom', utc(2024, 1, 1), 'text')
        payload = parsed(note).get_payload()

        assert base64.b64decode(payload) == codecs.BOM_UTF8 + b'text'

    def test_every_upload_gets_a_new_identifier(self):
        note = Note(ADDRESS, 'Same', utc(2024, 1, 1), 'text')

        first = parsed(note)['X-Universally-Unique-Identifier']
        second = parsed(note)['X-Universally-Unique-Identifier']
        assert first != second

    def test_line_endings_are_crlf(self):
        raw = Note(ADDRESS, 'Lines', utc(2024, 1, 1), 'x').to_bytes()
        assert b'\n' not in raw.replace(b'\r\n', b'')


class TestDecode:
    def test_base64_body_with_bom(self):
        body = base64.b64encode(codecs.BOM_UTF8 + 'こんにちは\nworld'.encode('utf-8'))
        note = Note.from_message(raw_message(body + b'\r\n'))

        assert note.body == 'こんにちは\r\nworld'
        assert note.address == ADDRESS
        assert note.date == utc(2024, 1, 1, 1, 0, 0)

    def test_quoted_printable_html_body(self):
        body = b'<div>=E3=81=82</div><div>Tom &amp; Jerry<br></div>'
        note = Note.from_message(raw_message(body, encoding='quoted-printable', content_type='text/html'))

        assert note.body == 'あ\r\nTom & Jerry\r\n\r\n'

    def test_empty_body(self):
        assert Note.from_message(raw_message(b'')).body == ''

    def test_unsupported_transfer_encoding(self):
        with pytest.raises(UnsupportedEncodingError) as excinfo:
            Note.from_message(raw_message(b'hello\r\n', encoding='7bit'))
        assert excinfo.value.subject == 'Test'

    def test_missing_date_is_malformed(self):
        raw = b'Subject: NoDate\r\nContent-Transfer-Encoding: base64\r\n\r\n'
        with pytest.raises(MalformedMessageError):
            Note.from_message(raw)

    def test_encoded_subject_is_decoded_and_normalized(self):
        subject = '=?UTF-8?B?' + base64.b64encode('買い物/週末'.encode('utf-8')).decode('ascii') + '?='
        note = Note.from_message(raw_message(b'', subject=subject))

        assert note.subject == '買い物_週末'


class TestHelpers:
    def test_normalize_newlines(self):
        assert normalize_newlines('a\nb\rc\r\nd') == 'a\r\nb\r\nc\r\nd'

    def test_html_to_text_breaks_lines_on_divs(self):
        assert html_to_text('<div>one</div><div>two</div>') == 'one\ntwo\n'

    def test_note_subject_is_truncated(self):
        note = Note(ADDRESS, 'x' * 40, utc(2024, 1, 1), '')
        assert note.subject == 'x' * 36
