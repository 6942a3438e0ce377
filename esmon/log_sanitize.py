"""
Serial/log sanitization helpers.

Goals:
- Keep broadcast text grep-friendly even if the device emits binary/control bytes.
- Strip ANSI color codes (ESP-IDF often emits these).
- Avoid losing meaningful leading whitespace (don't use `.strip()`).
"""

from __future__ import annotations

from typing import Final

from .device_control import strip_ansi


_DEFAULT_MAX_CHARS: Final[int] = 20_000


def sanitize_serial_text(text: str, *, max_chars: int = _DEFAULT_MAX_CHARS) -> str:
    """
    Make one decoded serial line safe for buffering and broadcast.

    - Drops trailing CR/LF only (preserves leading/trailing spaces).
    - Removes NUL characters.
    - Strips ANSI escape sequences.
    - Escapes remaining control characters (except tab).
    - Truncates very long lines.
    """
    text = text.rstrip("\r\n").replace("\x00", "")
    text = strip_ansi(text)

    out: list[str] = []
    for ch in text:
        if ch == "\t" or ch.isprintable():
            out.append(ch)
            continue
        out.append(f"\\x{ord(ch):02x}")

    sanitized = "".join(out)
    if max_chars > 0 and len(sanitized) > max_chars:
        sanitized = sanitized[:max_chars] + "...[truncated]"
    return sanitized


def sanitize_serial_bytes(data: bytes, *, max_chars: int = _DEFAULT_MAX_CHARS) -> str:
    """Decode a serial "line" of bytes as UTF-8 with replacement, then sanitize."""
    return sanitize_serial_text(data.decode("utf-8", errors="replace"), max_chars=max_chars)


def preview_text(text: str, limit: int = 80) -> str:
    """One-line preview: control chars dropped, whitespace collapsed, capped at `limit`."""
    kept = []
    for ch in strip_ansi(text):
        if ch in "\r\t\n":
            kept.append(" ")
        elif ord(ch) < 0x20 or ord(ch) == 0x7F:
            continue
        else:
            kept.append(ch)
    flat = " ".join("".join(kept).split())
    if len(flat) > limit:
        return flat[:limit] + "…"
    return flat
