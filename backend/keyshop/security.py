import secrets
import string
from typing import Union

import bcrypt
from flask_jwt_extended import create_access_token

OTP_LENGTH = 6
TEMPORARY_PASSWORD_LENGTH = 10


def hash_password(password: str) -> str:
    hashed = bcrypt.hashpw(str(password).encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def compare_password(password: str, stored_hash: Union[str, bytes, None]) -> bool:
    if not password or not stored_hash:
        return False
    if isinstance(stored_hash, str):
        stored_hash = stored_hash.encode("utf-8")
    try:
        return bcrypt.checkpw(str(password).encode("utf-8"), stored_hash)
    except ValueError:
        return False


def generate_auth_token(user_id) -> str:
    return create_access_token(identity=str(user_id))


def generate_otp_code(length: int = OTP_LENGTH) -> str:
    # Always exactly `length` digits, never a leading zero.
    lower_bound = 10 ** (length - 1)
    return str(lower_bound + secrets.randbelow(9 * lower_bound))


def generate_temporary_password(length: int = TEMPORARY_PASSWORD_LENGTH) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))
