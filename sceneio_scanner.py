"""
sceneio Scanner Primitives
Locale-independent readers over a bounded byte range.

Every function takes the buffer, the current position and the end of the readable
range, and returns the new position alongside its result. Reading never goes past
``end``; a position at or beyond ``end`` behaves like a NUL terminator.
"""

from typing import Tuple

NUL = 0
SPACE = ord(' ')
TAB = ord('\t')
CR = ord('\r')
LF = ord('\n')
FORM_FEED = ord('\f')

LINE_END_BYTES = (CR, LF, NUL, FORM_FEED)
DIGITS = b'0123456789'


def peek(buf: bytes, pos: int, end: int) -> int:
    """Byte at pos, or NUL when pos is outside the readable range"""
    if pos >= end:
        return NUL
    return buf[pos]


def is_space(c: int) -> bool:
    return c == SPACE or c == TAB


def is_line_end(c: int) -> bool:
    return c in LINE_END_BYTES


def is_space_or_line_end(c: int) -> bool:
    return is_space(c) or is_line_end(c)


def is_digit(c: int) -> bool:
    return 48 <= c <= 57


def skip_spaces(buf: bytes, pos: int, end: int) -> Tuple[bool, int]:
    """Skip spaces and tabs. Returns False if only a line end or EOF remains."""
    while pos < end and is_space(buf[pos]):
        pos += 1
    return (not is_line_end(peek(buf, pos, end))), pos


def skip_line(buf: bytes, pos: int, end: int) -> Tuple[bool, int]:
    """Move past the current line, including all of its trailing line-end bytes"""
    while pos < end and not is_line_end(buf[pos]):
        pos += 1
    # files may mix \r\n, \n\r and bare \r
    while pos < end and buf[pos] in (CR, LF):
        pos += 1
    return pos < end, pos


def skip_spaces_and_line_end(buf: bytes, pos: int, end: int) -> Tuple[bool, int]:
    while pos < end and buf[pos] in (SPACE, TAB, CR, LF, FORM_FEED):
        pos += 1
    return pos < end and buf[pos] != NUL, pos


def token_match(buf: bytes, pos: int, end: int, keyword: bytes) -> Tuple[bool, int]:
    """Case-sensitive keyword match that must be followed by whitespace or EOF.

    On success the keyword is consumed together with one trailing space or tab.
    Line ends are left in place so the caller can count them.
    """
    n = len(keyword)
    if buf[pos:pos + n] != keyword:
        return False, pos
    follow = peek(buf, pos + n, end)
    if not is_space_or_line_end(follow):
        return False, pos
    pos += n
    if is_space(follow):
        pos += 1
    return True, pos


def prefix_match_nocase(buf: bytes, pos: int, end: int, word: bytes) -> bool:
    """Case-insensitive prefix compare used for enum values such as light types"""
    return buf[pos:min(pos + len(word), end)].lower() == word.lower()


def read_unsigned_int(buf: bytes, pos: int, end: int) -> Tuple[int, int]:
    """Read a base-10 unsigned integer. No digits yields 0 and an unchanged position."""
    value = 0
    while pos < end and is_digit(buf[pos]):
        value = value * 10 + (buf[pos] - 48)
        pos += 1
    return value, pos


def read_signed_int(buf: bytes, pos: int, end: int) -> Tuple[int, int]:
    negative = False
    c = peek(buf, pos, end)
    if c == ord('-'):
        negative = True
        pos += 1
    elif c == ord('+'):
        pos += 1
    value, pos = read_unsigned_int(buf, pos, end)
    return (-value if negative else value), pos


def read_float(buf: bytes, pos: int, end: int) -> Tuple[float, int]:
    """Read a real number in plain or exponent notation.

    Also accepts the ``nan`` / ``inf`` spellings. If nothing numeric is found the
    result is 0.0 and the position is unchanged.
    """
    start = pos
    if peek(buf, pos, end) in (ord('-'), ord('+')):
        pos += 1

    word = buf[pos:min(pos + 8, end)].lower()
    if word.startswith(b'nan'):
        return float('nan'), pos + 3
    if word.startswith(b'infinity'):
        sign = -1.0 if buf[start] == ord('-') else 1.0
        return sign * float('inf'), pos + 8
    if word.startswith(b'inf'):
        sign = -1.0 if buf[start] == ord('-') else 1.0
        return sign * float('inf'), pos + 3

    digits_start = pos
    while pos < end and is_digit(buf[pos]):
        pos += 1
    has_digits = pos > digits_start
    if peek(buf, pos, end) == ord('.'):
        pos += 1
        frac_start = pos
        while pos < end and is_digit(buf[pos]):
            pos += 1
        has_digits = has_digits or pos > frac_start
    if not has_digits:
        return 0.0, start

    if peek(buf, pos, end) in (ord('e'), ord('E')):
        exp_pos = pos + 1
        if peek(buf, exp_pos, end) in (ord('-'), ord('+')):
            exp_pos += 1
        if is_digit(peek(buf, exp_pos, end)):
            pos = exp_pos
            while pos < end and is_digit(buf[pos]):
                pos += 1

    return float(buf[start:pos]), pos
