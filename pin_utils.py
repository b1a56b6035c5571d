import logging
import re
import secrets

logger = logging.getLogger(__name__)

# Characters used for PINs (digits + uppercase letters)
PIN_CHARACTERS = '0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ'
PIN_LENGTH = 8

INVITE_CODE_LENGTH = 8
MAX_CODE_LENGTH = 16
MAX_ATTEMPTS_PER_LENGTH = 10


class CodeSpaceExhausted(Exception):
    """Raised when no free code could be found at any allowed length."""


def generate_invite_code(length=INVITE_CODE_LENGTH):
    # Hex encoded random bytes, upper-cased
    return secrets.token_hex(length // 2).upper()


def generate_pin(length=PIN_LENGTH):
    return ''.join(secrets.choice(PIN_CHARACTERS) for _ in range(length))


def normalize_code(code):
    """Trim, upper-case and strip everything that is not 0-9A-Z."""
    if not code or not isinstance(code, str):
        return ''
    return re.sub(r'[^0-9A-Z]', '', code.strip().upper())


def is_valid_code_format(code):
    if not code or not isinstance(code, str):
        return False
    if len(code) < PIN_LENGTH or len(code) > MAX_CODE_LENGTH:
        return False
    return re.fullmatch(r'[0-9A-Z]+', code) is not None


def generate_unique_code(collection, field='inviteCode', generator=generate_invite_code,
                         length=INVITE_CODE_LENGTH, max_attempts=MAX_ATTEMPTS_PER_LENGTH,
                         max_length=MAX_CODE_LENGTH):
    """Return a code not currently used by any document in ``collection``.

    Retries are capped per length. When every attempt at a length collides the
    code widens by two characters, so the loop always terminates. Uniqueness is
    only guaranteed at the moment of the check; callers rely on the unique index
    to catch concurrent inserts.
    """
    while length <= max_length:
        for _ in range(max_attempts):
            code = generator(length)
            if collection.find_one({field: code}, {"_id": 1}) is None:
                return code
        logger.warning("No free %s of length %d after %d attempts, widening", field, length, max_attempts)
        length += 2
    raise CodeSpaceExhausted(f"Unable to allocate a unique {field}")


def find_classroom_by_code(collection, raw_code):
    """Look up an active classroom by invite code or PIN.

    Returns a (classroom, error) tuple; exactly one of them is None.
    """
    code = normalize_code(raw_code)
    if not is_valid_code_format(code):
        return None, (f"Invalid PIN format. PIN must be {PIN_LENGTH} to {MAX_CODE_LENGTH} "
                      "characters using digits and uppercase letters.")

    classroom = collection.find_one({
        "$or": [{"inviteCode": code}, {"pin": code}],
        "isActive": True
    })
    if not classroom:
        return None, "Invalid PIN. No active classroom found with this PIN."
    return classroom, None
