# wordcodec.py - Spoken form of connection codes (PGP word list, RFC 1751 style pairs)
"""
Connection codes are short uppercase hex strings. To read one out loud, each
byte is replaced by one of two words from the PGP word list: the "odd" word
if the byte value is odd, the "even" word otherwise. Decoding checks that the
word a user typed belongs to the parity class of the byte it names, which
catches most single-word transcription slips.
"""
import json
import logging
import re
import threading
from typing import Final

import config_manager
import configs
from shared import CodecError, UnknownWordError, InvalidParityError

logger = logging.getLogger(__name__)

ODD: Final[int] = 1
EVEN: Final[int] = 0

_TOKEN_SPLIT = re.compile(r"[\s-]+")

_wordlist_lock = threading.RLock()
_pgp_wordlist: dict[str, list[str]] | None = None
_pgp_index: dict[str, tuple[int, int]] | None = None


def load_pgp_wordlist() -> dict[str, list[str]]:
    """
    Load the byte -> [odd word, even word] table.

    The table is read once and cached for the lifetime of the process.

    :return: Mapping of two-digit uppercase hex byte to its word pair.
    :raises CodecError: If the wordlist file cannot be read.
    """
    global _pgp_wordlist
    with _wordlist_lock:
        if _pgp_wordlist is None:
            path = config_manager.resolve_path(configs.PGP_WORDLIST_FILE)
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise CodecError("Failed to load PGP wordlist") from e
            _pgp_wordlist = data.get("pgp_wordlist", data) if isinstance(data, dict) else data
            logger.debug("Loaded PGP wordlist with %d entries", len(_pgp_wordlist))
        return _pgp_wordlist


def _build_index(wordlist: dict[str, list[str]]) -> dict[str, tuple[int, int]]:
    """Map every word to (byte value, parity class). The first occurrence of a word wins."""
    index: dict[str, tuple[int, int]] = {}
    for hex_byte, word_pair in wordlist.items():
        if not word_pair or len(word_pair) != 2:
            raise ValueError(f"Invalid wordlist entry for {hex_byte}")
        byte = int(hex_byte, 16)
        index.setdefault(word_pair[0].lower(), (byte, ODD))
        index.setdefault(word_pair[1].lower(), (byte, EVEN))
    return index


def _load_word_index() -> dict[str, tuple[int, int]]:
    """The word -> (byte, parity) index of the PGP table, built once and cached."""
    global _pgp_index
    with _wordlist_lock:
        if _pgp_index is None:
            _pgp_index = _build_index(load_pgp_wordlist())
        return _pgp_index


def decode_connection_code(user_input: str) -> str:
    """
    Turn whatever the user typed into a connection code.

    A single token is taken to be the code itself and returned uppercased.
    Several tokens (split on whitespace or hyphens) are decoded as PGP words,
    one word per byte.

    :param user_input: Connection code or space/dash separated PGP words.
    :return: The uppercase hex connection code.
    :raises UnknownWordError: If a word is not in the wordlist.
    :raises InvalidParityError: If a word belongs to the wrong parity class for its byte.
    """
    trimmed = user_input.lower().strip()
    words = [w for w in _TOKEN_SPLIT.split(trimmed) if w]

    if len(words) <= 1:
        return trimmed.upper()

    try:
        index = _load_word_index()
        decoded = bytearray()
        for position, word in enumerate(words):
            match = index.get(word)
            if match is None:
                raise UnknownWordError(position, word)

            byte, expected_parity = match
            if byte % 2 != expected_parity:
                raise InvalidParityError(position, word, expected_parity == ODD)

            decoded.append(byte)
        return decoded.hex().upper()
    except CodecError:
        raise
    except (ValueError, TypeError, AttributeError) as e:
        # A malformed wordlist must not stop someone from typing the raw code
        logger.warning("PGP word decoding failed (%s), using raw input", e)
        return trimmed.upper()


def encode_connection_code(code: str, separator: str = " ") -> str:
    """
    Spell a hex connection code as PGP words.

    :param code: Hex string with an even number of digits.
    :param separator: Joiner placed between words.
    :return: Lowercase words, one per byte.
    :raises CodecError: If the code is not valid hex.
    """
    try:
        raw = bytes.fromhex(code)
    except ValueError as e:
        raise CodecError(f"Connection code is not valid hex: {code!r}") from e

    wordlist = load_pgp_wordlist()
    words = []
    for byte in raw:
        odd_word, even_word = wordlist[f"{byte:02X}"]
        words.append((odd_word if byte % 2 else even_word).lower())
    return separator.join(words)
