"""
Ledgerflow — Counterparty Text Helpers
Text cleaning for descriptions and counterparty names, the token-containment
similarity used by deduplication, and currency display symbols.
"""
import re

from ledgerflow.config import CURRENCY_SYMBOLS


def clean_text(text) -> str:
    """Trim, collapse whitespace, strip non-word characters, cap at 255 chars."""
    if text is None:
        return ""
    t = str(text).strip()
    t = re.sub(r"\s+", " ", t)
    t = re.sub(r"[^\w\s.-]", "", t)
    return t[:255]


def word_similarity(a: str, b: str) -> float:
    """Share of words in a that are contained in, or contain, some word of b (0.0 - 1.0).

    Deduplication scores depend on this exact behavior.
    """
    if not a or not b:
        return 0.0
    words_a = a.lower().split()
    words_b = b.lower().split()
    if not words_a or not words_b:
        return 0.0
    common = sum(1 for wa in words_a if any(wb in wa or wa in wb for wb in words_b))
    return common / max(len(words_a), len(words_b))


def currency_symbol(currency: str) -> str:
    """Get the display symbol for a currency code."""
    return CURRENCY_SYMBOLS.get(currency, currency or "$")


def format_money(amount, currency: str = "CAD") -> str:
    return f"{currency_symbol(currency)}{float(amount or 0):,.2f}"
