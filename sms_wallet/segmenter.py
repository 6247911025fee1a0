"""
Split outbound bodies into transport-sized SMS parts.

Sizing follows GSM 03.38: GSM-7 bodies fit 160 septets in a single part and
153 per part once a concatenation header is needed. A body containing any
character outside the GSM-7 alphabet is sent as UCS-2 (70 / 67 code units).
"""

from typing import Callable, List


GSM7_SINGLE_PART = 160
GSM7_MULTI_PART = 153
UCS2_SINGLE_PART = 70
UCS2_MULTI_PART = 67

GSM7_BASIC = frozenset(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)

# Sent as ESC + char, so each costs two septets
GSM7_EXTENSION = frozenset("^{}\\[~]|€\f")


def is_gsm7(body: str) -> bool:
    return all(ch in GSM7_BASIC or ch in GSM7_EXTENSION for ch in body)


def _gsm7_cost(ch: str) -> int:
    return 2 if ch in GSM7_EXTENSION else 1


def _ucs2_cost(ch: str) -> int:
    # Characters outside the BMP need a UTF-16 surrogate pair
    return 2 if ord(ch) > 0xFFFF else 1


def segment(body: str) -> List[str]:
    """
    Split a message body into ordered SMS parts.

    A body that fits one part is returned unchanged as a single-element
    list (an empty body included). Characters are never split, so an
    escape pair or surrogate pair always lands in one part.

    Args:
        body: Message text

    Returns:
        List of part bodies whose concatenation equals body
    """
    if is_gsm7(body):
        single, multi, cost = GSM7_SINGLE_PART, GSM7_MULTI_PART, _gsm7_cost
    else:
        single, multi, cost = UCS2_SINGLE_PART, UCS2_MULTI_PART, _ucs2_cost

    if sum(cost(ch) for ch in body) <= single:
        return [body]

    parts: List[str] = []
    current: List[str] = []
    used = 0
    for ch in body:
        units = cost(ch)
        if used + units > multi:
            parts.append("".join(current))
            current = []
            used = 0
        current.append(ch)
        used += units
    if current:
        parts.append("".join(current))
    return parts


Segmenter = Callable[[str], List[str]]
