"""Barcode scanner input helpers.

Scanners behave like very fast keyboards. On French AZERTY layouts the digit
row arrives unshifted (``à&é"'(-è_ç``), so raw scans are cleaned before the
catalog lookup. Nothing here touches the cart.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional

SCANNER_MAX_GAP_MS = 50
SCAN_TERMINATORS = frozenset({"Enter", "Tab"})

MIN_PLAIN_DIGITS = 8

_DIGITS = frozenset("0123456789")
_NON_DIGITS = re.compile(r"[^0-9]")
_AZERTY_DIGITS = {
    "à": "0", "À": "0", "&": "1", "é": "2", '"': "3", "'": "4",
    "(": "5", "-": "6", "è": "7", "_": "8", "ç": "9",
}


def clean_barcode(raw: str) -> str:
    """Return the digits of a scan, undoing AZERTY digit-row mapping.

    A scan already holding at least eight plain digits is trusted as is, so
    separators such as ``-`` in ``978-2-07`` are dropped rather than mapped.
    """
    if not raw:
        return ""
    digits = _NON_DIGITS.sub("", raw)
    if len(digits) >= MIN_PLAIN_DIGITS:
        return digits
    mapped = "".join(_AZERTY_DIGITS.get(char, char if char in _DIGITS else "") for char in raw)
    return mapped if len(mapped) > len(digits) else digits


def is_likely_scanner(last_key_ms: float, now_ms: float, key: str) -> bool:
    return (now_ms - last_key_ms) < SCANNER_MAX_GAP_MS and len(key) == 1


def is_scan_terminator(key: str) -> bool:
    return key in SCAN_TERMINATORS


@dataclass
class ScanBuffer:
    """Accumulate keystrokes and emit a cleaned code at the end of a scan.

    A code is emitted only when every gap after the first key was
    scanner-fast; slower input is treated as typing and discarded.
    """

    _keys: List[str] = field(default_factory=list)
    _last_ms: Optional[float] = None
    _scanner_like: bool = True

    def feed(self, key: str, now_ms: float) -> Optional[str]:
        if is_scan_terminator(key):
            code = clean_barcode("".join(self._keys)) if self._keys and self._scanner_like else ""
            self.reset()
            return code or None
        if len(key) != 1:
            return None
        if self._last_ms is not None and not is_likely_scanner(self._last_ms, now_ms, key):
            self._scanner_like = False
        self._keys.append(key)
        self._last_ms = now_ms
        return None

    def reset(self) -> None:
        self._keys.clear()
        self._last_ms = None
        self._scanner_like = True


__all__ = [
    "clean_barcode",
    "is_likely_scanner",
    "is_scan_terminator",
    "ScanBuffer",
]
