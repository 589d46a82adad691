import secrets

# Без I, O, 0, 1: их легко перепутать при вводе
ALPHABET    = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6

def generate_join_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))

def normalize_code(raw: str) -> str:
    """Join codes are case-insensitive on input and rendered uppercase."""
    return (raw or "").strip().upper()

def is_valid_code(code: str) -> bool:
    return len(code) == CODE_LENGTH and all(c in ALPHABET for c in code)
