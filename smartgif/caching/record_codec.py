"""
Delimited text record codec shared by the on-disk stores.

Every store file is plain UTF-8 text: one versioned header comment followed by
one record per line, fields separated by ``|``. Backslash, ``|``, CR and LF
inside a field are backslash-escaped so a record always occupies exactly one
line and can be inspected (and partially recovered) with a text editor.
"""

from typing import List, Optional, Tuple

FIELD_SEPARATOR = '|'
HEADER_PREFIX = '# smartgif'

_ESCAPES = {'\\': '\\\\', '|': '\\|', '\n': '\\n', '\r': '\\r'}
_UNESCAPES = {'\\': '\\', '|': '|', 'n': '\n', 'r': '\r'}


class RecordFormatError(ValueError):
    """A line does not decode into a well-formed record."""


def escape_field(value: str) -> str:
    return ''.join(_ESCAPES.get(ch, ch) for ch in value)


def encode_record(fields: List[str]) -> str:
    """Encode fields into one newline-terminated line."""
    return FIELD_SEPARATOR.join(escape_field(str(field)) for field in fields) + '\n'


def split_record(line: str) -> List[str]:
    """Split one line (without its newline) into unescaped fields."""
    fields: List[str] = []
    current: List[str] = []
    chars = iter(line)
    for ch in chars:
        if ch == '\\':
            nxt = next(chars, None)
            if nxt is None or nxt not in _UNESCAPES:
                raise RecordFormatError(f"invalid escape sequence in record: {line[:80]!r}")
            current.append(_UNESCAPES[nxt])
        elif ch == FIELD_SEPARATOR:
            fields.append(''.join(current))
            current = []
        elif ch in '\r\n':
            raise RecordFormatError("unescaped line break inside record")
        else:
            current.append(ch)
    fields.append(''.join(current))
    return fields


def decode_record(line: str, field_count: int) -> List[str]:
    fields = split_record(line)
    if len(fields) != field_count:
        raise RecordFormatError(f"expected {field_count} fields, found {len(fields)}")
    return fields


def format_header(kind: str, version: int, extra: str = '') -> str:
    header = f"{HEADER_PREFIX} {kind} v{version}"
    if extra:
        header += f" {extra}"
    return header + '\n'


def parse_header(line: str, kind: str) -> Optional[Tuple[int, str]]:
    """Return (version, extra) for a matching header line, None otherwise."""
    expected = f"{HEADER_PREFIX} {kind} v"
    if not line.startswith(expected):
        return None
    rest = line[len(expected):].rstrip('\r\n')
    version_text, _, extra = rest.partition(' ')
    if not version_text.isdigit():
        return None
    return int(version_text), extra


def split_lines(data: bytes) -> Tuple[List[bytes], bytes]:
    """Split raw file bytes into complete lines and a trailing torn fragment.

    A record is only complete once its terminating newline is on disk, so any
    bytes after the final newline belong to an interrupted append.
    """
    parts = data.split(b'\n')
    return parts[:-1], parts[-1]
