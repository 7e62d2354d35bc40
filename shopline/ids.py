import secrets
import time

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    if n <= 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_ALPHABET[r])
    return "".join(reversed(out))


def new_id(prefix: str = "m") -> str:
    # Millisecond timestamp + 8 random chars; sortable per device and collision
    # resistant across devices without coordination.
    ts = _base36(int(time.time() * 1000))
    rand = "".join(secrets.choice(_ALPHABET) for _ in range(8))
    return f"{prefix}{ts}{rand}"
