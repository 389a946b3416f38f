"""Escape decoding — turn typed ``\\x03``-style text into control bytes.

Callers (humans, shells, agents) cannot easily put a literal ETX or
carriage return on a command line, so ``write`` accepts these escapes and
decodes them before anything reaches the terminal:

    \\n  \\r  \\t  \\\\  \\xHH  \\uHHHH

Anything else after a backslash, including an incomplete hex form, is
passed through literally.
"""

from __future__ import annotations

import enum

_SIMPLE = {"n": "\n", "r": "\r", "t": "\t", "\\": "\\"}
_HEX_WIDTH = {"x": 2, "u": 4}
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")

_CONTROL_NAMES = {
    "\x03": "^C",
    "\x04": "^D",
    "\x1a": "^Z",
    "\x1b": "^[",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}


class _State(enum.Enum):
    LITERAL = "literal"
    ESCAPE = "escape"  # Saw a backslash
    HEX = "hex"  # Collecting \x or \u digits


def decode_escapes(text: str) -> str:
    """Decode the supported escape forms with a single left-to-right scan.

    ``\\xHH`` and ``\\uHHHH`` produce the character with that code point.
    An escaped backslash is consumed as a unit, so ``\\\\n`` is a
    backslash followed by ``n``, never a newline.
    """
    out: list[str] = []
    state = _State.LITERAL
    pending = ""  # Raw text of the escape being scanned
    width = 0
    digits = ""

    for ch in text:
        if state is _State.LITERAL:
            if ch == "\\":
                state = _State.ESCAPE
                pending = ch
            else:
                out.append(ch)
        elif state is _State.ESCAPE:
            if ch in _SIMPLE:
                out.append(_SIMPLE[ch])
                state = _State.LITERAL
            elif ch in _HEX_WIDTH:
                state = _State.HEX
                pending += ch
                width = _HEX_WIDTH[ch]
                digits = ""
            else:
                out.append(pending + ch)
                state = _State.LITERAL
        else:
            if ch in _HEX_DIGITS:
                digits += ch
                if len(digits) == width:
                    out.append(chr(int(digits, 16)))
                    state = _State.LITERAL
            else:
                # Incomplete hex escape: emit it verbatim, rescan ch.
                out.append(pending + digits)
                if ch == "\\":
                    state = _State.ESCAPE
                    pending = ch
                else:
                    out.append(ch)
                    state = _State.LITERAL

    if state is _State.ESCAPE:
        out.append(pending)
    elif state is _State.HEX:
        out.append(pending + digits)
    return "".join(out)


def describe_control(text: str, max_length: int = 50) -> str:
    """Short, printable preview of data that may contain control bytes."""
    preview = text[:max_length] + "..." if len(text) > max_length else text
    return "".join(_CONTROL_NAMES.get(ch, ch) for ch in preview)
