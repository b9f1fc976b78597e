"""Numeric code generation for PINs and one-time passcodes.

Each digit is one random byte reduced modulo 10. Bytes 250-255 wrap onto
digits 0-5, so those digits come up with probability 26/256 instead of
25/256. That bias is accepted for short human-entered codes; changing the
mapping changes the distribution callers and tests rely on.
"""

import secrets
from typing import Callable

from card_activation.services.errors import GenerationError

EntropySource = Callable[[int], bytes]


def generate_digits(length: int, entropy: EntropySource = secrets.token_bytes) -> str:
    if length <= 0:
        raise GenerationError("Code length must be positive")
    try:
        raw = entropy(length)
    except (OSError, NotImplementedError) as exc:
        raise GenerationError("Entropy source unavailable") from exc
    if len(raw) < length:
        raise GenerationError("Entropy source returned too few bytes")
    return "".join(chr(ord("0") + byte % 10) for byte in raw[:length])
