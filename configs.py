"""
Here are some general settings for the transfer client.
Each setting has a comment explaining what it does and its default value below it.

These are settings that are not intended to be changed during runtime.
They can be changed during runtime, but it may not work as expected.

Values that the relay dictates (maximum payload size, retention, rate limits)
are not configured here, they are fetched from the relay when a session starts.
"""
from typing import Final

false = no = off = No = Off = False
true = yes = on = Yes = On = True

### CLIENT CONFIG
## RELAY SETTINGS
RELAY_URL: Final[str] = "https://localhost:3000"
# Base URL of the relay server. The notification channel uses the same host
# with the ws:// or wss:// scheme.
# Must be surrounded by quotes. (" or ')
# Default: "https://localhost:3000"

HTTP_TIMEOUT: Final[float] = 30.0
# Seconds to wait for the relay to answer a single HTTP request.
# Default: 30.0

## SIGNALING SETTINGS
PEER_KEY_TIMEOUT: Final[float] = 60.0
# Seconds to wait for the other device's public key after joining a session.
# Default: 60.0

RECONNECT_BACKOFF: Final[float] = 2.0
# Seconds to wait before reconnecting a dropped notification channel.
# Default: 2.0

## WORDLISTS
PGP_WORDLIST_FILE: Final[str] = "pgp_wordlist.json"
# The byte -> [odd word, even word] table used to speak connection codes.
# May be a relative (to this directory) or absolute path.
# Default: "pgp_wordlist.json"

PHRASE_WORDLIST_FILE: Final[str] = "eff_wordlist.json"
# Local copy of the verification phrase wordlist, only read when the relay
# does not serve /eff_wordlist.json itself. Optional.
# Same format as the relay serves: {"eff_wordlist": ["word", ...]}
# Default: "eff_wordlist.json"

## TRANSFER SETTINGS
DEFAULT_MAX_FILE_SIZE: Final[int] = 5 * 1024 * 1024 * 1024
# Maximum file size used when the relay does not report its own.
# Default: 5 GiB


## PROTOCOL CONSTANTS
# Don't change these, both devices must use the same values

KEY_DERIVATION_INFO: Final[bytes] = b"ReverseQR-Encryption-Key"
SESSION_KEY_SIZE: Final[int] = 32  # AES-256
NONCE_SIZE: Final[int] = 12  # 96-bit GCM nonce
TAG_SIZE: Final[int] = 16
VERIFICATION_PHRASE_WORDS: Final[int] = 3
UNDECRYPTABLE_PLACEHOLDER: Final[str] = "[Unable to decrypt]"
