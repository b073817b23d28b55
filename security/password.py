import re
from typing import List, Tuple

import bcrypt
from flask import current_app

_LETTER = re.compile(r"[A-Za-z]")
_DIGIT = re.compile(r"\d")


def hash_password(plain_password: str) -> str:
    if not isinstance(plain_password, str) or not plain_password:
        raise ValueError("Password must be a non-empty string")
    hashed = bcrypt.hashpw(plain_password.encode("utf-8"), bcrypt.gensalt(rounds=12))
    return hashed.decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    if not plain_password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def validate_password(pw) -> Tuple[bool, List[str]]:
    if not isinstance(pw, str):
        return False, ["Password must be a string"]

    errors: List[str] = []
    min_len = int(current_app.config.get("PASSWORD_MIN_LEN", 8))
    max_len = int(current_app.config.get("PASSWORD_MAX_LEN", 128))

    if len(pw) < min_len:
        errors.append(f"Password must be at least {min_len} characters")
    if len(pw) > max_len:
        errors.append(f"Password must be at most {max_len} characters")
    if not _LETTER.search(pw):
        errors.append("Password must include at least 1 letter")
    if not _DIGIT.search(pw):
        errors.append("Password must include at least 1 number")

    return not errors, errors
