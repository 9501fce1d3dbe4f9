"""Respondent key derivation for duplicate detection.

This module provides a one-way, salted SHA-256 key derived from the
identifying fields of a respondent. Two submissions for the same person
produce the same key even when the name was typed with different accents,
casing or spacing, so duplicate detection never compares plaintext.
"""

import hashlib
import re
import unicodedata
from typing import Optional

from canvass.config import get_settings

_WHITESPACE = re.compile(r"\s+")
_NON_DIGITS = re.compile(r"\D")


class RespondentKey:
    """
    Deterministic hashing of respondent identity.

    The key is SHA-256 over "salt:name|phone digits|email" after
    normalization. It is stored with every response and is the lookup
    column of the completed-response unique index.

    Security notes:
    - Salt must be kept secret and never committed to git
    - Changing salt makes existing completed responses undetectable
      as duplicates

    Usage example:
        from canvass.services.respondent_key import RespondentKey

        key = RespondentKey.derive(clean.respondent_name, clean.respondent_phone, clean.respondent_email)
        logger.info(f"Checking duplicates for {RespondentKey.truncate_for_logging(key)}")
    """

    @staticmethod
    def normalize_name(name: str) -> str:
        """
        Fold a person name for comparison.

        Accents are stripped, case is folded and whitespace collapsed.

        Args:
            name: Respondent name as sanitized

        Returns:
            Normalized name

        Example:
            >>> RespondentKey.normalize_name("  José   García ")
            'jose garcia'
        """
        decomposed = unicodedata.normalize("NFKD", name)
        stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
        return _WHITESPACE.sub(" ", stripped.casefold()).strip()

    @staticmethod
    def derive(
        name: str,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        salt: Optional[str] = None
    ) -> str:
        """
        Derive the respondent key.

        Args:
            name: Respondent name
            phone: Optional phone in any format (only digits are used)
            email: Optional email
            salt: Override for the configured salt

        Returns:
            64-character hex string (SHA-256 hash)

        Example:
            >>> RespondentKey.derive("José García") == RespondentKey.derive("jose  garcia")
            True
        """
        if salt is None:
            salt = get_settings().respondent_key_salt

        parts = [
            RespondentKey.normalize_name(name),
            _NON_DIGITS.sub("", phone or ""),
            (email or "").strip().lower(),
        ]
        salted = f"{salt}:{'|'.join(parts)}"

        return hashlib.sha256(salted.encode('utf-8')).hexdigest()

    @staticmethod
    def truncate_for_logging(respondent_key: str) -> str:
        """
        Truncate key for safe logging (first 12 chars).

        Example:
            >>> RespondentKey.truncate_for_logging("a1b2c3d4e5f6" + "0" * 52)
            'a1b2c3d4e5f6...'
        """
        return f"{respondent_key[:12]}..."
