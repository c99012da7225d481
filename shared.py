# shared.py - Shared cryptographic utilities and protocol definitions
# pylint: disable=trailing-whitespace, line-too-long
import hashlib
import json
import logging
import os
import secrets
import threading
import time
from enum import StrEnum, unique
from typing import Final, NamedTuple, TypedDict, NotRequired, Any

import config_manager
import configs

try:
    from cryptography.hazmat.primitives.asymmetric import ec
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.kdf.hkdf import HKDF

    from cryptography.exceptions import InvalidTag
except ImportError as exc_:
    print("Required cryptographic libraries not found.")
    raise ImportError("Please install the required libraries with pip install -e .") from exc_

logger = logging.getLogger(__name__)

# Protocol constants
CURVE: Final[ec.EllipticCurve] = ec.SECP256R1()
# HKDF salt shared by both devices: 32 zero bytes
KDF_SALT: Final[bytes] = bytes(32)


class TransferError(Exception):
    """Base class for every error raised by the pairing and transfer protocol."""


class CodecError(TransferError):
    """The connection code could not be decoded."""


class UnknownWordError(CodecError):
    def __init__(self, position: int, word: str):
        self.position = position
        self.word = word
        super().__init__(f'Unknown PGP word at position {position}: "{word}". Word was forgotten or mistyped.')


class InvalidParityError(CodecError):
    def __init__(self, position: int, word: str, odd: bool):
        self.position = position
        self.word = word
        self.odd = odd
        super().__init__(f'Invalid word at position {position}: "{word}" is for {"odd" if odd else "even"} bytes.')


class KeyExchangeError(TransferError):
    """The key exchange failed, the session attempt has to be restarted."""


class PeerKeyTimeoutError(KeyExchangeError):
    pass


class SignalingError(TransferError):
    """The notification channel failed or was used incorrectly."""


class TransportError(TransferError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(TransportError):
    """The relay answered 429. Back off and try again later."""
    def __init__(self, message: str = "Too many requests, please wait a moment before trying again."):
        super().__init__(message, 429)


class SessionConflictError(TransportError):
    def __init__(self, message: str = "Another connector is already connected. Please ask the main to send a new code."):
        super().__init__(message, 409)


class DecryptionError(TransferError):
    """A single message or file name could not be decrypted."""


@unique
class NotificationType(StrEnum):
    UNKNOWN = ""
    SUBSCRIBE = "subscribe"
    PEER_KEY_AVAILABLE = "peer-key-available"
    KEYS_AVAILABLE = "keys-available"
    MESSAGE_AVAILABLE = "message-available"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN


@unique
class MessageKind(StrEnum):
    TEXT = "text"
    FILES = "files"


class KeyPair(NamedTuple):
    private_key: ec.EllipticCurvePrivateKey
    public_key: ec.EllipticCurvePublicKey


class EncryptedEnvelope(TypedDict):
    """Hex encoded AES-GCM output for one text message, as sent to the relay."""
    ciphertext: str
    iv: str
    authTag: str


class EncryptedFile(TypedDict):
    """
    One encrypted file ready for upload.

    The body and the display name are encrypted under independent nonces.
    ``encryptedName`` carries the GCM tag appended to the ciphertext, ``blob``
    likewise, and ``filename`` is a random opaque name for the relay.
    """
    filename: str
    blob: bytes
    iv: str
    encryptedName: str
    nameIv: str
    size: int


class ReceivedFile(TypedDict):
    filename: str
    name: str
    size: int
    iv: NotRequired[str]


class ReceivedMessageRecord(TypedDict):
    type: str
    text: str
    files: list[ReceivedFile]
    timestamp: Any
    decrypted: bool


class SentFile(TypedDict):
    name: str
    size: int


class SentMessageRecord(TypedDict):
    type: str
    text: str
    files: list[SentFile]
    timestamp: int


def bytes_to_human_readable(size: int) -> str:
    """
    Convert a byte count to a human-readable format with appropriate units.

    Args:
        size (int): The number of bytes to convert.

    Returns:
        str: A formatted string with the size and appropriate unit (B, KiB, MiB, or GiB).

    """
    if size < 1024:
        return f"{size} B"
    if size < 1024 ** 2:
        return f"{size / 1024:.1f} KiB"
    if size < 1024 ** 3:
        return f"{size / 1024 ** 2:.1f} MiB"

    return f"{size / 1024 ** 3:.2f} GiB"


def random_blob_name() -> str:
    """Opaque upload name so the relay never sees the real file name."""
    return f"encrypted_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def _unhex(value: str, field: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except (ValueError, TypeError) as e:
        raise DecryptionError(f"Malformed hex in field '{field}'") from e


def _parse_size(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def parse_phrase_wordlist(data: Any) -> list[str]:
    """
    Validate a verification phrase wordlist document.

    The document is ``{"eff_wordlist": [word, ...]}``, the format the relay
    serves at ``/eff_wordlist.json``. Word order matters, both devices index
    into the same list.

    :raises ValueError: If the document is not in that format or the list is empty.
    """
    words = data.get("eff_wordlist") if isinstance(data, dict) else None
    if not isinstance(words, list) or not words:
        raise ValueError("Wordlist must be a JSON object with a non-empty 'eff_wordlist' array")
    if not all(isinstance(word, str) and word for word in words):
        raise ValueError("Wordlist entries must be non-empty strings")
    return words


_phrase_lock = threading.Lock()
_phrase_wordlist: list[str] | None = None


def load_phrase_wordlist() -> list[str]:
    """
    Load the local copy of the verification phrase wordlist, once per process.

    Only used when the relay does not serve its own copy.

    :raises FileNotFoundError: If no local copy was installed.
    :raises ValueError: If the file is not a valid wordlist document.
    """
    global _phrase_wordlist
    with _phrase_lock:
        if _phrase_wordlist is None:
            wordlist_path = config_manager.resolve_path(configs.PHRASE_WORDLIST_FILE)
            try:
                with open(wordlist_path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except FileNotFoundError:
                raise FileNotFoundError(
                        f"{configs.PHRASE_WORDLIST_FILE} not found. Download the relay's /eff_wordlist.json and "
                        "place it in the same directory as shared.py") from None
            except json.JSONDecodeError as e:
                raise ValueError(f"{configs.PHRASE_WORDLIST_FILE} is not valid JSON") from e
            _phrase_wordlist = parse_phrase_wordlist(data)
        return _phrase_wordlist


# Key exchange

def generate_keypair() -> KeyPair:
    """Generate an ephemeral P-256 key pair from the OS CSPRNG."""
    private_key = ec.generate_private_key(CURVE)
    return KeyPair(private_key, private_key.public_key())


def export_public_key(public_key: ec.EllipticCurvePublicKey) -> str:
    """Uncompressed SEC1 point (0x04 || X || Y), hex encoded."""
    return public_key.public_bytes(
            encoding=serialization.Encoding.X962,
            format=serialization.PublicFormat.UncompressedPoint
    ).hex()


def import_public_key(public_key_hex: str) -> ec.EllipticCurvePublicKey:
    """
    Parse a peer's hex encoded public point.

    :raises KeyExchangeError: If the value is not hex or not a point on P-256.
        The identity element has no uncompressed encoding, so it is rejected here too.
    """
    try:
        point = bytes.fromhex(public_key_hex)
    except (ValueError, TypeError) as e:
        raise KeyExchangeError("Invalid peer key: not a hex string") from e

    if len(point) != 65 or point[0] != 0x04:
        raise KeyExchangeError("Invalid peer key: expected an uncompressed P-256 point")

    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, point)
    except ValueError as e:
        raise KeyExchangeError("Invalid peer key: point is not on the curve") from e


def compute_shared_secret(private_key: ec.EllipticCurvePrivateKey,
                          peer_public_key: ec.EllipticCurvePublicKey) -> bytes:
    """ECDH scalar multiplication, returns the 32 byte X coordinate."""
    try:
        return private_key.exchange(ec.ECDH(), peer_public_key)
    except ValueError as e:
        raise KeyExchangeError("Invalid peer key: DH computation failed") from e


def derive_session_key(shared_secret: bytes) -> bytes:
    """HKDF-SHA256 over the DH output with a zero salt and the protocol info string."""
    if not shared_secret:
        raise KeyExchangeError("Key derivation failed: empty shared secret")
    hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=configs.SESSION_KEY_SIZE,
            salt=KDF_SALT,
            info=configs.KEY_DERIVATION_INFO
    )
    return hkdf.derive(shared_secret)


def verification_phrase(shared_secret: bytes, wordlist: list[str]) -> str:
    """
    Three word fingerprint both users can compare out of band.

    SHA-256 of the shared secret, first 6 bytes, three big-endian 16-bit
    chunks, each reduced modulo the wordlist length. This is a fixed protocol
    constant, not a security boundary: 48 truncated bits are only meant to
    catch a substituted public key by eye.

    Both devices must index the same ``wordlist``, see ``parse_phrase_wordlist``.
    """
    digest = hashlib.sha256(shared_secret).digest()

    words = []
    for i in range(configs.VERIFICATION_PHRASE_WORDS):
        chunk = int.from_bytes(digest[i * 2:i * 2 + 2], byteorder="big")
        words.append(wordlist[chunk % len(wordlist)])
    return " ".join(words)


def complete_key_exchange(private_key: ec.EllipticCurvePrivateKey, peer_public_key_hex: str,
                          wordlist: list[str]) -> tuple[bytes, str]:
    """
    Run import -> DH -> HKDF and compute the verification phrase.

    The shared secret only lives inside this function.

    :return: (session key, verification phrase)
    :raises KeyExchangeError: On any failure. Nothing is returned in that case,
        so callers can never end up holding a half-derived key.
    """
    try:
        peer_public_key = import_public_key(peer_public_key_hex)
        shared_secret = compute_shared_secret(private_key, peer_public_key)
        session_key = derive_session_key(shared_secret)
        phrase = verification_phrase(shared_secret, wordlist)
    except KeyExchangeError:
        raise
    except Exception as e:
        raise KeyExchangeError(f"Key exchange failed: {e}") from e

    # This may or may not actually remove it from memory but it's better than nothing
    shared_secret = b"\x00" * len(shared_secret)
    del shared_secret
    return session_key, phrase


class SessionCipher:
    """
    AES-256-GCM under the session key.

    Every call draws a fresh random 96-bit nonce from the OS CSPRNG.
    """
    def __init__(self, key: bytes):
        if len(key) != configs.SESSION_KEY_SIZE:
            raise ValueError(f"Session key must be {configs.SESSION_KEY_SIZE} bytes")
        self._key: bytes = key
        self._aes: AESGCM = AESGCM(key)
    def encrypt(self, data: bytes) -> tuple[bytes, bytes]:
        """
        :return: (nonce, ciphertext with the 16 byte tag appended)
        """
        nonce = os.urandom(configs.NONCE_SIZE)
        return nonce, self._aes.encrypt(nonce, data, None)

    def decrypt(self, nonce: bytes, data: bytes) -> bytes:
        """
        :param data: Ciphertext with the tag appended.
        :raises DecryptionError: If authentication fails.
        """
        if len(nonce) != configs.NONCE_SIZE:
            raise DecryptionError(f"Nonce must be {configs.NONCE_SIZE} bytes, got {len(nonce)}")
        if len(data) < configs.TAG_SIZE:
            raise DecryptionError("Ciphertext is shorter than the authentication tag")
        try:
            return self._aes.decrypt(nonce, data, None)
        except InvalidTag as e:
            raise DecryptionError("Authentication tag mismatch") from e

    def encrypt_text(self, text: str) -> EncryptedEnvelope:
        nonce, sealed = self.encrypt(text.encode("utf-8"))
        return EncryptedEnvelope(
                ciphertext=sealed[:-configs.TAG_SIZE].hex(),
                iv=nonce.hex(),
                authTag=sealed[-configs.TAG_SIZE:].hex(),
        )

    def decrypt_text(self, ciphertext: str, iv: str, auth_tag: str = "") -> str:
        """
        Decrypt hex fields back to text.

        An empty ``auth_tag`` means the tag is still appended to the ciphertext.
        """
        sealed = _unhex(ciphertext, "ciphertext") + _unhex(auth_tag or "", "authTag")
        plaintext = self.decrypt(_unhex(iv, "iv"), sealed)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted text is not valid UTF-8") from e

    def encrypt_file(self, name: str, data: bytes) -> EncryptedFile:
        """
        Encrypt a file body and its display name under two independent nonces.

        Either both halves are produced or an exception propagates, there is
        no partially encrypted result.
        """
        body_nonce, body = self.encrypt(data)
        name_nonce, sealed_name = self.encrypt(name.encode("utf-8"))
        return EncryptedFile(
                filename=random_blob_name(),
                blob=body,
                iv=body_nonce.hex(),
                encryptedName=sealed_name.hex(),
                nameIv=name_nonce.hex(),
                size=len(data),
        )

    def decrypt_file(self, blob: bytes, iv: str) -> bytes:
        return self.decrypt(_unhex(iv, "iv"), blob)

    def wipe(self) -> None:
        # This is not particularly secure, but it's better than nothing
        self._key = b"\x00" * len(self._key)
        del self._aes


class ReceivedMessageFilter:
    """
    Remembers which relay messages were already shown.

    Identifiers are the relay's arrival timestamps. A message without one is
    dropped, a message whose identifier was seen before is dropped silently.
    """
    def __init__(self) -> None:
        self.seen_ids: set[Any] = set()

    def filter_new(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        new_messages = []
        for message in messages:
            message_id = message.get("timestamp")
            if not message_id or message_id in self.seen_ids:
                continue
            self.seen_ids.add(message_id)
            new_messages.append(message)
        return new_messages

    def __contains__(self, message_id: Any) -> bool:
        return message_id in self.seen_ids

    def __len__(self) -> int:
        return len(self.seen_ids)


def decrypt_received_message(cipher: SessionCipher, message: dict[str, Any]) -> ReceivedMessageRecord:
    """
    Decrypt one message returned by the relay.

    Never raises for bad ciphertext: the affected text or file name is
    replaced by the placeholder and ``decrypted`` is set to False.
    """
    decrypted = True
    text = ""
    files: list[ReceivedFile] = []
    kind = message.get("type")

    if kind == MessageKind.TEXT:
        try:
            if not (message.get("ciphertext") and message.get("iv")):
                raise DecryptionError("Message has no ciphertext")
            text = cipher.decrypt_text(message["ciphertext"], message["iv"], message.get("authTag", ""))
        except DecryptionError as e:
            logger.warning("Could not decrypt message %s: %s", message.get("timestamp"), e)
            text = configs.UNDECRYPTABLE_PLACEHOLDER
            decrypted = False
    elif kind == MessageKind.FILES:
        for entry in message.get("files") or []:
            name = entry.get("filename", "")
            try:
                if not (entry.get("encryptedName") and entry.get("nameIv")):
                    raise DecryptionError("File entry has no encrypted name")
                name = cipher.decrypt_text(entry["encryptedName"], entry["nameIv"], entry.get("nameAuthTag", ""))
            except DecryptionError as e:
                logger.warning("Could not decrypt file name in message %s: %s", message.get("timestamp"), e)
                name = configs.UNDECRYPTABLE_PLACEHOLDER
                decrypted = False
            received = ReceivedFile(filename=entry.get("filename", ""), name=name, size=_parse_size(entry.get("size")))
            if entry.get("iv"):
                received["iv"] = entry["iv"]
            files.append(received)
    else:
        logger.warning("Ignoring message with unknown type %r", kind)
        text = configs.UNDECRYPTABLE_PLACEHOLDER
        decrypted = False

    return ReceivedMessageRecord(type=str(kind), text=text, files=files,
                                 timestamp=message.get("timestamp"), decrypted=decrypted)

