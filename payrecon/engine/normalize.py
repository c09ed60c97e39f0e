"""Text normalization helpers shared by the scorer, generator and detector."""

import re
import unicodedata
from typing import List, Optional

from rapidfuzz import fuzz

# Letters that do not decompose under NFKD
_EXTRA_FOLDS = str.maketrans({"Ł": "L", "ł": "l", "Ø": "O", "ø": "o", "ß": "ss", "Đ": "D", "đ": "d"})

INVOICE_NUMBER_RE = re.compile(r"(CO-?\s*PROF\s*\d+\s*/\s*\d{4})", re.IGNORECASE)

REFUND_MARKERS = (
    "ZVROT",
    "ZWROT",
    "REFUND",
    "RETURN",
    "REVERSAL",
    "REVERSJA",
    "ANULOWANIE",
    "CANCEL",
)


def normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def strip_diacritics(text: str) -> str:
    """Remove accents, including letters like Polish Ł that NFKD keeps."""
    decomposed = unicodedata.normalize("NFKD", (text or "").translate(_EXTRA_FOLDS))
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_name(text: Optional[str]) -> str:
    """Upper-case, diacritic-free, punctuation-free form of a person or company name."""
    if not text:
        return ""
    s = strip_diacritics(text).upper()
    s = re.sub(r"[^A-Z0-9]+", " ", s)
    return normalize_whitespace(s)


def name_similarity(a: str, b: str) -> float:
    """Similarity of two normalized names in [0, 1], word order insensitive."""
    if not a or not b:
        return 0.0
    return fuzz.token_sort_ratio(a, b) / 100.0


def name_in_text(name: str, text: str) -> float:
    """
    Similarity of a normalized name against free text in [0, 1].

    Exact containment scores 1.0; otherwise the best partial token alignment.
    """
    if not name or not text:
        return 0.0
    if f" {name} " in f" {text} ":
        return 1.0
    return fuzz.partial_token_sort_ratio(name, text) / 100.0


def normalize_fullnumber(value: Optional[str]) -> Optional[str]:
    """Canonical form of an invoice number, e.g. ``CO PROF 13 / 2025`` -> ``CO-PROF 13/2025``."""
    if not value:
        return None
    s = normalize_whitespace(str(value)).upper()
    s = re.sub(r"\s*/\s*", "/", s)
    s = re.sub(r"^CO-?\s*PROF\s*", "CO-PROF ", s)
    return s


def extract_invoice_numbers(text: str) -> List[str]:
    """Find invoice numbers quoted in a payment description."""
    found: List[str] = []
    for match in INVOICE_NUMBER_RE.finditer(text or ""):
        number = normalize_fullnumber(match.group(1))
        if number and number not in found:
            found.append(number)
    return found


def fullnumber_pattern(fullnumber: str) -> re.Pattern:
    """Regex matching an invoice number in free text with any separators between its parts."""
    tokens = re.findall(r"[A-Z0-9]+", strip_diacritics(fullnumber).upper())
    body = r"[\W_]*".join(re.escape(t) for t in tokens)
    return re.compile(rf"(?<![A-Z0-9]){body}(?![A-Z0-9])")


def references_fullnumber(text: str, fullnumber: str) -> bool:
    """Check if free text explicitly quotes the given invoice number."""
    if not text or not fullnumber:
        return False
    haystack = strip_diacritics(text).upper()
    return bool(fullnumber_pattern(fullnumber).search(haystack))


def looks_like_refund(description: str) -> bool:
    upper = strip_diacritics(description or "").upper()
    return any(marker in upper for marker in REFUND_MARKERS)
