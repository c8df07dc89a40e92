"""The IMAP mailbox the Pomera uses as its note storage."""

import email
import imaplib
import json
import logging
import re
import select
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import requests

from errors import TransportError
from note_message import decode_subject, parse_date

logger = logging.getLogger(__name__)

DEFAULT_SERVER = 'imap.gmail.com'
DEFAULT_PORT = 993
DEFAULT_MAILBOX = 'Notes/pomera_sync'

TOKEN_URL = 'https://oauth2.googleapis.com/token'

HEADER_FIELDS = 'BODY.PEEK[HEADER.FIELDS (SUBJECT DATE FROM)]'

_UID_RE = re.compile(rb'UID (\d+)')
_COUNT_RE = re.compile(rb'^\* (\d+) (EXISTS|EXPUNGE)', re.IGNORECASE)


@dataclass
class RemoteRecord:
    """Summary of a note message on the server."""

    uid: str
    subject: str
    date: datetime


def generate_oauth2_string(user: str, token: str) -> str:
    """
    Generate OAuth2 authentication string for Gmail IMAP.

    Args:
        user: Gmail email address
        token: OAuth2 access token

    Returns:
        OAuth2 authentication string (not base64 encoded)
    """
    return f'user={user}\x01auth=Bearer {token}\x01\x01'


def load_token_file(token_file: str) -> dict:
    """Load an OAuth2 token file written by get_gmail_token.py.

    Only 'token' is required. 'refresh_token', 'client_id' and
    'client_secret' are needed to refresh it once it expires.
    """
    with open(token_file, 'r') as f:
        token_data = json.load(f)
    if 'token' not in token_data:
        raise ValueError(f"Token file {token_file} does not contain 'token' field")
    return token_data


def refresh_oauth_token(token_file: str, token_data: dict) -> Optional[str]:
    """
    Refresh an expired OAuth2 token using the refresh token.

    Args:
        token_file: Path to token file to update
        token_data: Current token data containing refresh_token

    Returns:
        New access token if successful, None otherwise
    """
    if 'refresh_token' not in token_data:
        logger.error("No refresh_token available in token file")
        return None

    if 'client_id' not in token_data or 'client_secret' not in token_data:
        logger.error("Token file missing client_id or client_secret for refresh")
        return None

    logger.info("Attempting to refresh OAuth token...")

    data = {
        'client_id': token_data['client_id'],
        'client_secret': token_data['client_secret'],
        'refresh_token': token_data['refresh_token'],
        'grant_type': 'refresh_token'
    }

    try:
        response = requests.post(TOKEN_URL, data=data, timeout=30)
        response.raise_for_status()
        new_token_data = response.json()
    except requests.exceptions.HTTPError as e:
        if e.response is not None and e.response.status_code == 400:
            logger.error("=" * 60)
            logger.error("AUTHENTICATION ERROR: Refresh token is invalid or expired")
            logger.error("=" * 60)
            logger.error("Generate a new OAuth token by running:")
            logger.error("  python3 get_gmail_token.py --credentials client_secret.json")
            logger.error("=" * 60)
        else:
            logger.error(f"Failed to refresh token: {e}")
        return None
    except requests.exceptions.RequestException as e:
        logger.error(f"Network error during token refresh: {e}")
        return None
    except ValueError as e:
        logger.error(f"Invalid response from token endpoint: {e}")
        return None

    token_data['token'] = new_token_data['access_token']
    if 'expires_in' in new_token_data:
        token_data['expiry'] = (datetime.now(timezone.utc) + timedelta(seconds=new_token_data['expires_in'])).isoformat()

    try:
        with open(token_file, 'w') as f:
            json.dump(token_data, f, indent=2)
    except OSError as e:
        logger.warning(f"Could not save refreshed token to {token_file}: {e}")

    logger.info("Successfully refreshed OAuth token")
    return token_data['token']


class ImapRemoteReplica:
    """Note messages in a single IMAP mailbox.

    Every failure talking to the server is raised as TransportError.
    """

    def __init__(self, server: str, user: str, password: Optional[str] = None,
                 port: int = DEFAULT_PORT, mailbox: str = DEFAULT_MAILBOX,
                 token_file: Optional[str] = None, token_data: Optional[dict] = None,
                 use_idle: bool = True, poll_interval: int = 60):
        """
        Initialize the remote note store.

        Args:
            server: IMAP server address
            user: Account address, also used as the login name
            password: Password (an app password for Gmail)
            port: IMAP over SSL port
            mailbox: Mailbox holding the notes
            token_file: OAuth2 token file, used instead of password when given
            token_data: Contents of token_file
            use_idle: Use IDLE when the server supports it
            poll_interval: Seconds between NOOP polls when IDLE is not used
        """
        self.server = server
        self.port = port
        self.user = user
        self.password = password
        self.mailbox = mailbox
        self.token_file = token_file
        self.token_data = token_data
        self.use_idle = use_idle
        self.poll_interval = poll_interval

        self.conn: Optional[imaplib.IMAP4_SSL] = None
        self.idle_supported: bool = False
        self.uidplus_supported: bool = False
        self.message_count: int = 0

    def _run(self, what: str, operation, *args):
        """Run an imaplib command and return its data, raising TransportError on failure."""
        try:
            typ, data = operation(*args)
        except (imaplib.IMAP4.error, OSError) as e:
            raise TransportError(f"{what} failed: {e}") from e
        if typ != 'OK':
            raise TransportError(f"{what} failed: {typ} {data}")
        return data

    def connect(self):
        """Connect, authenticate and open the note mailbox read-write."""
        logger.info(f"Connecting to {self.server}:{self.port}")
        try:
            self.conn = imaplib.IMAP4_SSL(self.server, self.port)
        except OSError as e:
            raise TransportError(f"Could not connect to {self.server}: {e}") from e

        logger.info(f"Logging in as {self.user}")
        if self.token_data is not None:
            self._authenticate_oauth()
        else:
            self._run("Login", self.conn.login, self.user, self.password)

        self.check_capabilities()

        logger.info(f"Opening note mailbox {self.mailbox}")
        data = self._run(f"Selecting {self.mailbox}", self.conn.select, self._quoted_mailbox())
        self.message_count = int(data[0]) if data and data[0] else 0

    def _authenticate_oauth(self):
        auth_string = generate_oauth2_string(self.user, self.token_data['token'])
        try:
            self.conn.authenticate('XOAUTH2', lambda x: auth_string.encode())
            return
        except imaplib.IMAP4.error as auth_error:
            error_str = str(auth_error)
            if 'AUTHENTICATIONFAILED' not in error_str and 'Invalid credentials' not in error_str:
                raise TransportError(f"Authentication failed: {auth_error}") from auth_error
            logger.warning("Authentication failed - token may be expired, attempting refresh...")

        new_token = refresh_oauth_token(self.token_file, self.token_data)
        if not new_token:
            raise TransportError("Cannot continue without valid authentication")

        auth_string = generate_oauth2_string(self.user, new_token)
        try:
            self.conn.authenticate('XOAUTH2', lambda x: auth_string.encode())
        except imaplib.IMAP4.error as e:
            raise TransportError(f"Authentication failed with refreshed token: {e}") from e
        logger.info(f"Successfully authenticated with refreshed token as {self.user}")

    def check_capabilities(self):
        """Check whether the server supports IDLE and UIDPLUS."""
        data = self._run("Capability", self.conn.capability)
        capabilities = data[0].decode('utf-8', errors='replace').upper().split()
        self.idle_supported = 'IDLE' in capabilities
        self.uidplus_supported = 'UIDPLUS' in capabilities
        if self.idle_supported and self.use_idle:
            logger.info("Server supports IDLE - using real-time notifications")
        else:
            logger.info(f"Not using IDLE - will poll every {self.poll_interval} seconds")

    def disconnect(self):
        """Close the IMAP connection."""
        if not self.conn:
            return
        try:
            self.conn.logout()
            logger.debug("Disconnected from server")
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"Error while logging out: {e}")
        self.conn = None

    def _quoted_mailbox(self) -> str:
        return '"' + self.mailbox.replace('\\', '\\\\').replace('"', '\\"') + '"'

    def records(self) -> List[RemoteRecord]:
        """Summaries of every message in the note mailbox.

        Messages whose Date header cannot be parsed are logged and left out.
        """
        data = self._run("Searching notes", self.conn.uid, 'SEARCH', None, 'ALL')
        uids = data[0].split() if data and data[0] else []
        if not uids:
            return []

        uid_set = b','.join(uids).decode('ascii')
        data = self._run("Fetching note headers", self.conn.uid, 'FETCH', uid_set, f'(UID {HEADER_FIELDS})')

        records = []
        for uid, header_bytes in _iter_fetch_literals(data):
            if uid is None:
                logger.warning("Skipping a FETCH response without UID")
                continue
            headers = email.message_from_bytes(header_bytes)
            subject = decode_subject(headers.get('Subject', ''))
            try:
                date = parse_date(headers.get('Date', ''))
            except (TypeError, ValueError) as e:
                logger.error(f"Error reading note '{subject}' (UID {uid}): unparsable Date header: {e}")
                continue
            records.append(RemoteRecord(uid=uid, subject=subject, date=date))

        logger.debug(f"Server has {len(records)} notes in {self.mailbox}")
        return records

    def fetch(self, uid: str) -> bytes:
        """Fetch a complete raw message without marking it as seen."""
        data = self._run(f"Fetching UID {uid}", self.conn.uid, 'FETCH', uid, '(BODY.PEEK[])')
        for _, raw in _iter_fetch_literals(data, default_uid=uid):
            return raw
        raise TransportError(f"Message UID {uid} disappeared from the server")

    def append(self, raw_message: bytes):
        self._run("Appending note", self.conn.append, self._quoted_mailbox(), '',
                  imaplib.Time2Internaldate(time.time()), raw_message)

    def delete(self, uid: str):
        """Flag a message as deleted and expunge it."""
        self._run(f"Flagging UID {uid}", self.conn.uid, 'STORE', uid, '+FLAGS', '(\\Deleted)')
        if self.uidplus_supported:
            self._run(f"Expunging UID {uid}", self.conn.uid, 'EXPUNGE', uid)
        else:
            self._run("Expunging", self.conn.expunge)

    def acknowledge_changes(self):
        """Take the current number of notes as the baseline for change detection.

        Drops the EXISTS and EXPUNGE responses caused by our own appends and
        deletes, which imaplib otherwise keeps for the life of the connection.
        """
        for name in ('EXISTS', 'EXPUNGE', 'RECENT'):
            self.conn.response(name)
        data = self._run("Counting notes", self.conn.uid, 'SEARCH', None, 'ALL')
        self.message_count = len(data[0].split()) if data and data[0] else 0
        logger.debug(f"Server has {self.message_count} notes after the pass")

    def wait_for_change(self, cancel: threading.Event, timeout: float) -> bool:
        """
        Block until the number of notes on the server changes.

        Args:
            cancel: Event that ends the wait early when set
            timeout: Maximum number of seconds to wait

        Returns:
            True if the server reported a change, False on cancel or timeout
        """
        if self.idle_supported and self.use_idle:
            return self._idle(cancel, timeout)
        return self._poll(cancel, timeout)

    def _idle(self, cancel: threading.Event, timeout: float) -> bool:
        try:
            tag = self.conn._new_tag()
            self.conn.send(tag + b' IDLE\r\n')

            response = self.conn.readline()
            if not response.startswith(b'+'):
                raise TransportError(f"Unexpected IDLE response: {response!r}")
            logger.debug("Entered IDLE mode")

            changed = False
            deadline = time.monotonic() + timeout
            while not changed and not cancel.is_set():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.debug("IDLE timeout reached")
                    break
                readable, _, _ = select.select([self.conn.socket()], [], [], min(1.0, remaining))
                if readable:
                    changed = self._handle_untagged(self.conn.readline())

            self.conn.send(b'DONE\r\n')
            while True:
                line = self.conn.readline()
                if line.startswith(tag):
                    break
                changed = self._handle_untagged(line) or changed
        except (imaplib.IMAP4.error, OSError) as e:
            raise TransportError(f"IDLE failed: {e}") from e

        if changed:
            logger.info("Server reported a change to the note mailbox")
        return changed

    def _handle_untagged(self, line: bytes) -> bool:
        """Process one line received while idling, returning True if the message count changed."""
        if not line:
            raise TransportError("Connection closed by server")
        logger.debug(f"Received IDLE notification: {line!r}")
        if line.upper().startswith(b'* BYE'):
            raise TransportError(f"Server closed the connection: {line!r}")

        match = _COUNT_RE.match(line)
        if not match:
            return False
        if match.group(2).upper() == b'EXISTS':
            self.message_count = int(match.group(1))
        return True

    def _poll(self, cancel: threading.Event, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if cancel.wait(min(self.poll_interval, remaining)):
                return False

            self._run("NOOP", self.conn.noop)
            _, expunged = self.conn.response('EXPUNGE')
            _, exists = self.conn.response('EXISTS')
            count = int(exists[-1]) if exists and exists[-1] is not None else self.message_count
            if count != self.message_count or (expunged and expunged[-1] is not None):
                self.message_count = count
                logger.info("Server reported a change to the note mailbox")
                return True


def _iter_fetch_literals(data, default_uid: Optional[str] = None):
    """Yield (uid, literal bytes) pairs from an imaplib FETCH response.

    Depending on the server the UID is reported before or after the literal.
    """
    pending = None
    for item in data:
        if isinstance(item, tuple):
            if pending is not None:
                yield pending
            match = _UID_RE.search(item[0])
            uid = match.group(1).decode('ascii') if match else default_uid
            pending = (uid, item[1])
        elif isinstance(item, bytes) and pending is not None:
            if pending[0] is None:
                match = _UID_RE.search(item)
                if match:
                    pending = (match.group(1).decode('ascii'), pending[1])
            yield pending
            pending = None
    if pending is not None:
        yield pending
