import bcrypt

from card_activation.config import settings
from card_activation.services.errors import HashingError

# bcrypt only reads the first 72 bytes; newer releases reject anything longer.
MAX_SECRET_BYTES = 72


def fits_bcrypt(plain: str) -> bool:
    return len(plain.encode("utf-8")) <= MAX_SECRET_BYTES


class SecretHasher:
    def __init__(self, rounds: int) -> None:
        self._rounds = rounds

    def hash(self, plain: str) -> str:
        if not plain:
            raise HashingError("Cannot hash an empty secret")
        if not fits_bcrypt(plain):
            raise HashingError(f"Secret is longer than {MAX_SECRET_BYTES} bytes")
        try:
            hashed = bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(self._rounds))
        except ValueError as exc:
            raise HashingError("Secret rejected by bcrypt") from exc
        return hashed.decode("ascii")

    def verify(self, hashed: str, plain: str) -> bool:
        if not plain or not fits_bcrypt(plain):
            return False
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("ascii"))
        except ValueError as exc:
            raise HashingError("Stored hash or candidate rejected by bcrypt") from exc


secret_hasher = SecretHasher(settings.bcrypt_rounds)
