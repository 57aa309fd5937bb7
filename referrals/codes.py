import random
import re
from datetime import date
from typing import Callable, Optional

from loguru import logger


DEFAULT_MAX_ATTEMPTS = 5

_NON_LETTERS = re.compile(r"[^a-zA-Z]")
_NON_DIGITS = re.compile(r"\D")


def generate_referral_code(
    email: str,
    phone: str,
    was_referred: bool = False,
    today: Optional[date] = None,
) -> str:
    """Build a shareable referral code.

    Layout: two letters from the email, the last three phone digits, a
    referred flag and the date as MMDDYY, e.g. ``JO6780012724``.
    """
    letters = _NON_LETTERS.sub("", email or "").upper()
    email_part = letters[:2].ljust(2, "X")

    digits = _NON_DIGITS.sub("", phone or "")
    phone_part = digits[-3:].rjust(3, "0")

    flag = "1" if was_referred else "0"
    today = today or date.today()
    return f"{email_part}{phone_part}{flag}{today.strftime('%m%d%y')}"


def generate_unique_referral_code(
    email: str,
    phone: str,
    was_referred: bool,
    exists: Callable[[str], bool],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    today: Optional[date] = None,
    rng: Optional[random.Random] = None,
) -> str:
    """Return a referral code that ``exists`` does not know about yet.

    The first attempt uses the plain code; later attempts append a random
    two-digit suffix. When every attempt collides the plain code is returned
    anyway, so duplicates are possible.
    """
    rng = rng or random.Random()
    base = generate_referral_code(email, phone, was_referred, today)

    for attempt in range(max_attempts):
        code = base if attempt == 0 else f"{base}{rng.randint(10, 99)}"
        if not exists(code):
            return code

    logger.warning("Referral code collided on every attempt", code=base, attempts=max_attempts)
    return base
