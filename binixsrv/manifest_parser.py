"""Low-level reader for the flat ``Key: value`` Nix manifest format."""

from __future__ import annotations

from .errors import ManifestError

_WHITESPACE = " \n\r\t"
_EOL = "\r\n"


def _line_end(text: str, start: int) -> int:
    ends = [pos for pos in (text.find(c, start) for c in _EOL) if pos != -1]
    return min(ends) if ends else len(text)


def _skip_whitespace(text: str, pos: int) -> int:
    while pos < len(text) and text[pos] in _WHITESPACE:
        pos += 1
    return pos


def parse_pairs(text: str) -> list[tuple[str, str]]:
    """Splits a manifest into its ``(key, raw value)`` pairs, in order.

    Whitespace (newlines included) before a key and after its colon is
    skipped; the value runs to the end of its line.
    """
    pairs = []
    pos = _skip_whitespace(text, 0)
    while pos < len(text):
        eol = _line_end(text, pos)
        colon = text.find(":", pos, eol)
        if colon == -1:
            raise ManifestError.expected_colon()
        key = text[pos:colon]
        pos = _skip_whitespace(text, colon + 1)
        eol = _line_end(text, pos)
        pairs.append((key, text[pos:eol].lstrip()))
        pos = _skip_whitespace(text, eol)
    return pairs


def _check_rest(rest: str) -> None:
    # Anything after the value would be read as the start of the next key.
    if rest.strip(_WHITESPACE):
        raise ManifestError.expected_colon()


def parse_unsigned(value: str) -> int:
    """Parses an unsigned decimal integer value."""
    if not value:
        raise ManifestError.unexpected_eof()
    digits = 0
    while digits < len(value) and "0" <= value[digits] <= "9":
        digits += 1
    if digits == 0:
        raise ManifestError.expected_integer()
    _check_rest(value[digits:])
    return int(value[:digits])


def parse_bool(value: str) -> bool:
    """Parses a boolean value written as ``1`` or ``0``."""
    if value.startswith("1"):
        result = True
    elif value.startswith("0"):
        result = False
    else:
        raise ManifestError.expected_boolean()
    _check_rest(value[1:])
    return result