"""Subject normalization and truncation for the Pomera note folder.

The Pomera only shows note subjects up to 36 bytes measured in Shift_JIS.
Characters that Shift_JIS cannot represent are counted as if they had been
replaced by a full-width placeholder, so they take two bytes as well.
"""

DEFAULT_MAX_SUBJECT_BYTES = 36

# Width of the "yyMMddHHmmss" suffix appended to conflict copies
CONFLICT_SUFFIX_LENGTH = 12
CONFLICT_MAX_SUBJECT_BYTES = DEFAULT_MAX_SUBJECT_BYTES - CONFLICT_SUFFIX_LENGTH

# Characters that are not allowed in a file name on any platform we sync to
INVALID_FILENAME_CHARS = frozenset('"<>|:*?\\/' + ''.join(chr(i) for i in range(32)))


def normalize(subject: str) -> str:
    """Replace every character that cannot appear in a file name with '_'."""
    return ''.join('_' if c in INVALID_FILENAME_CHARS else c for c in subject)


def char_byte_length(char: str) -> int:
    """Number of bytes a single character takes in Shift_JIS.

    ASCII and half-width katakana are single byte, everything else is either
    a double-byte character or replaced by a double-byte placeholder.
    """
    code = ord(char)
    if code < 0x80:
        return 1
    if 0xFF61 <= code <= 0xFF9F:
        return 1
    return 2


def byte_length(subject: str) -> int:
    return sum(char_byte_length(c) for c in subject)


def _truncated_length(subject: str, max_bytes: int) -> int:
    """Number of characters of subject that fit in max_bytes."""
    total = 0
    for i, char in enumerate(subject):
        width = char_byte_length(char)
        if total + width > max_bytes:
            return i
        total += width
    return len(subject)


def is_truncation_needed(subject: str, max_bytes: int = DEFAULT_MAX_SUBJECT_BYTES) -> bool:
    return _truncated_length(subject, max_bytes) < len(subject)


def truncate(subject: str, max_bytes: int = DEFAULT_MAX_SUBJECT_BYTES) -> str:
    """Cut subject to the longest prefix that fits in max_bytes.

    Args:
        subject: Subject to truncate
        max_bytes: Shift_JIS byte budget

    Returns:
        The subject itself when it already fits, otherwise its longest
        fitting prefix (never splitting a character)
    """
    return subject[:_truncated_length(subject, max_bytes)]
