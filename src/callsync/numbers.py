import hashlib
import logging
import re
from typing import Optional

import phonenumbers

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"

# Anything a user could actually dial
_NON_DIALABLE = re.compile(r"[^\d+*#]")


def log_hash(value: Optional[str]) -> str:
    """Short stable hash so numbers and names can be correlated in logs without being logged."""
    if not value:
        return "<empty>"
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]


def strip_domain(address: Optional[str]) -> str:
    """Return the user part of ``number@domain``; anonymous callers become ""."""
    if address is None:
        return ""
    number = address.split("@", 1)[0].strip()
    if number.lower() == ANONYMOUS:
        return ""
    return number


class NumberNormalizer:
    """Formats phone numbers so local and server records can be compared.

    ``region`` is the ISO country used for numbers without a country code;
    with no region only numbers already in international form are reformatted.
    ``external_line_code`` is the prefix some PBX users dial to get an outside
    line (e.g. "9"), stripped before formatting.
    """

    def __init__(
        self,
        region: Optional[str] = None,
        external_line_code: str = "",
        international_prefix: str = "00",
    ):
        self.region = region.upper() if region else None
        self.external_line_code = external_line_code
        self.international_prefix = international_prefix

    def fix_international(self, number: str) -> str:
        """Server feeds may report an international number with the access code instead of '+'."""
        if self.international_prefix and number.startswith(self.international_prefix):
            return "+" + number[len(self.international_prefix):]
        return number

    def strip_elc(self, number: str) -> str:
        elc = self.external_line_code
        if elc and number.startswith(elc) and len(number) > len(elc) + 2:
            return number[len(elc):]
        return number

    def to_e164(self, number: str) -> str:
        cleaned = _NON_DIALABLE.sub("", number)
        if not cleaned or "*" in cleaned or "#" in cleaned:
            return cleaned
        try:
            parsed = phonenumbers.parse(cleaned, self.region)
        except phonenumbers.NumberParseException:
            return cleaned
        if not phonenumbers.is_possible_number(parsed):
            return cleaned
        return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)

    def normalize(self, address: Optional[str]) -> str:
        """Full pipeline: domain, anonymous, line code, then E.164."""
        number = strip_domain(address)
        if not number:
            return ""
        return self.to_e164(self.strip_elc(number))


def numbers_match(local_number: str, candidate_number: str) -> bool:
    """True if one number is a suffix of the other.

    Server records for international numbers arrive without the leading '+',
    so one is added to the candidate when the local number has it. Suffix
    matching tolerates either side being dialled without the area code.
    Anonymous ("") only matches anonymous.
    """
    if not local_number or not candidate_number:
        return local_number == candidate_number
    prefixed = candidate_number
    if local_number.startswith("+") and not candidate_number.startswith("+"):
        prefixed = "+" + candidate_number
    return prefixed.endswith(local_number) or local_number.endswith(candidate_number)
