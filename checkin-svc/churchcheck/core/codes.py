from __future__ import annotations
import secrets

# no 0/O, 1/I: codes are read aloud and off printed labels
PICKUP_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PIN_LENGTH = 6
PIN_SPACE = 10 ** PIN_LENGTH

def generate_pickup_code(length: int = 4) -> str:
    return "".join(secrets.choice(PICKUP_ALPHABET) for _ in range(length))

def random_pin() -> str:
    return str(secrets.randbelow(PIN_SPACE)).zfill(PIN_LENGTH)
