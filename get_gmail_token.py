#!/usr/bin/env python3
"""Create and check the OAuth2 token file read by ``pomera_sync --oauth``.

The token file holds the access token plus what imap_replica needs to
refresh it on its own: refresh_token, client_id and client_secret.

    get-gmail-token --credentials client_secret.json --token-file token.json
    get-gmail-token --token-file token.json --check you@gmail.com

The credentials file is a "Desktop app" OAuth client downloaded from
https://console.cloud.google.com/apis/credentials. Authorizing needs the
``oauth`` extra (google-auth-oauthlib).
"""

import argparse
import json
import logging
import os
import sys
from datetime import timezone

from errors import TransportError
from imap_replica import DEFAULT_MAILBOX, DEFAULT_PORT, DEFAULT_SERVER, ImapRemoteReplica, load_token_file
from pomera_sync import configure_logging

logger = logging.getLogger(__name__)

# IMAP access to Gmail requires the full Gmail scope
SCOPES = ['https://mail.google.com/']

REFRESH_FIELDS = ('refresh_token', 'client_id', 'client_secret')


def authorize(credentials_file: str) -> dict:
    """Run the browser consent flow and return the token file contents."""
    from google_auth_oauthlib.flow import InstalledAppFlow

    flow = InstalledAppFlow.from_client_secrets_file(credentials_file, SCOPES)
    # Google only hands out a refresh token on an explicit offline consent
    creds = flow.run_local_server(port=0, access_type='offline', prompt='consent')
    return token_data_from_credentials(creds)


def token_data_from_credentials(creds) -> dict:
    token_data = {'token': creds.token}
    for field in REFRESH_FIELDS:
        value = getattr(creds, field, None)
        if not value:
            raise ValueError(f"Authorization did not return {field}, the token could not be refreshed")
        token_data[field] = value
    if creds.expiry:
        # google-auth keeps expiry as naive UTC
        token_data['expiry'] = creds.expiry.replace(tzinfo=timezone.utc).isoformat()
    return token_data


def save_token_file(token_file: str, token_data: dict):
    with open(token_file, 'w') as f:
        json.dump(token_data, f, indent=2)
    os.chmod(token_file, 0o600)
    logger.info(f"Token saved to {token_file}")


def check_token(address: str, token_file: str, server: str = DEFAULT_SERVER,
                port: int = DEFAULT_PORT, mailbox: str = DEFAULT_MAILBOX) -> bool:
    """Log in with the token file and open the note mailbox.

    An expired token is refreshed and written back as part of logging in.
    """
    token_data = load_token_file(token_file)
    missing = [field for field in REFRESH_FIELDS if field not in token_data]
    if missing:
        logger.warning(f"{token_file} lacks {', '.join(missing)}; it will stop working when it expires")

    remote = ImapRemoteReplica(server, address, port=port, mailbox=mailbox,
                               token_file=token_file, token_data=token_data)
    try:
        remote.connect()
    except TransportError as e:
        logger.error(f"Token check failed: {e}")
        return False
    finally:
        remote.disconnect()

    logger.info(f"Token works: {mailbox} holds {remote.message_count} notes")
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='get_gmail_token',
        description='Obtain or check the OAuth2 token file for Pomera note sync',
    )
    parser.add_argument('--credentials',
                       help='OAuth2 client credentials JSON file; runs the browser authorization')
    parser.add_argument('--token-file', default='token.json',
                       help='Token file to write or check (default: token.json)')
    parser.add_argument('--check', metavar='ADDRESS',
                       help='Log in as ADDRESS with the token file and open the note mailbox')
    parser.add_argument('--server', default=DEFAULT_SERVER,
                       help=f'IMAP server for --check (default: {DEFAULT_SERVER})')
    parser.add_argument('--mailbox', default=DEFAULT_MAILBOX,
                       help=f'Note mailbox for --check (default: {DEFAULT_MAILBOX})')
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.credentials and not args.check:
        parser.error('nothing to do: give --credentials, --check or both')

    configure_logging('stdout', debug=False)

    if args.credentials:
        if not os.path.exists(args.credentials):
            logger.error(f"Credentials file not found: {args.credentials}")
            return 1
        try:
            token_data = authorize(args.credentials)
        except ImportError:
            logger.error("Authorizing needs google-auth-oauthlib: pip install pomera-sync[oauth]")
            return 1
        except ValueError as e:
            logger.error(str(e))
            return 1
        save_token_file(args.token_file, token_data)
        logger.info(f"Run the sync with: pomera-sync --oauth ADDRESS {args.token_file} [LOCAL_FOLDER]")

    if args.check:
        try:
            if not check_token(args.check, args.token_file, args.server, mailbox=args.mailbox):
                return 1
        except (OSError, ValueError) as e:
            logger.error(f"Error reading token file: {e}")
            return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
