"""
Secure Transfer Client with End-to-End Encryption
Pairs with another device through a connection code, agrees on a key with
ECDH P-256 + HKDF and exchanges AES-256-GCM encrypted text and files through
an untrusted relay.
"""
# pylint: disable=trailing-whitespace, broad-exception-caught
import argparse
import logging
import os
import sys
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import CancelledError, Future
from dataclasses import dataclass, field
from enum import Enum, unique
from typing import Any, TypedDict

import configs
from config_handler import ConfigHandler
from relay import HttpRelay, NotificationChannel
from shared import (EncryptedFile, KeyExchangeError, KeyPair, MessageKind, NotificationType, PeerKeyTimeoutError,
                    RateLimitedError, ReceivedMessageFilter, ReceivedMessageRecord, SentMessageRecord, SessionCipher,
                    SignalingError, TransferError, TransportError, bytes_to_human_readable, complete_key_exchange,
                    decrypt_received_message, export_public_key, generate_keypair, load_phrase_wordlist)
from wordcodec import decode_connection_code

logger = logging.getLogger(__name__)


@unique
class SessionState(Enum):
    IDLE = "idle"
    JOINED = "joined"
    KEY_EXCHANGE_IN_FLIGHT = "key_exchange_in_flight"
    ESTABLISHED = "established"
    CLOSED = "closed"
    FAILED = "failed"


# States in which the session is alive and the notification channel should stay connected
ACTIVE_STATES = frozenset({SessionState.JOINED, SessionState.KEY_EXCHANGE_IN_FLIGHT, SessionState.ESTABLISHED})
TERMINAL_STATES = frozenset({SessionState.CLOSED, SessionState.FAILED})


class SelectedFile(TypedDict):
    name: str
    size: int
    path: str


class PeerKeyWaiter:
    """
    Single slot for the one outstanding "waiting for the peer's key" future.

    Whoever clears the slot first wins: ``resolve`` from the notification
    thread, or the timeout/cancel path of the waiting thread. A key that
    arrives after the slot was cleared is dropped.
    """

    def __init__(self) -> None:
        self._lock: threading.Lock = threading.Lock()
        self._future: Future[str] | None = None

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._future is not None

    def register(self) -> Future[str]:
        with self._lock:
            if self._future is not None:
                raise SignalingError("A peer key wait is already outstanding")
            self._future = Future()
            return self._future

    def resolve(self, peer_public_key_hex: str) -> bool:
        """:return: False if nobody was waiting and the key was ignored."""
        with self._lock:
            future, self._future = self._future, None
        if future is None:
            return False
        future.set_result(peer_public_key_hex)
        return True

    def cancel(self) -> None:
        with self._lock:
            future, self._future = self._future, None
        if future is not None:
            future.cancel()

    def wait(self, future: Future[str], timeout: float) -> str:
        try:
            return future.result(timeout=timeout)
        except TimeoutError:
            with self._lock:
                if self._future is future:
                    self._future = None
                    raise PeerKeyTimeoutError("Timeout waiting for peer public key") from None
            # resolve() cleared the slot between the timeout and the lock, so the result is set
            return future.result(timeout=0)
        except CancelledError as e:
            raise SignalingError("Wait for peer public key was cancelled") from e


@dataclass
class SessionContext:
    """
    Everything one pairing attempt owns.

    ``cipher`` is only set once both public keys were exchanged and the
    session key was derived. It is cleared again on failure or disconnect.
    """
    role: str = "responder"
    code: str = ""
    token: str = ""
    state: SessionState = SessionState.IDLE
    error: str = ""

    key_pair: KeyPair | None = None
    cipher: SessionCipher | None = None
    verification_phrase: str = ""

    max_file_size: int = configs.DEFAULT_MAX_FILE_SIZE
    selected_files: list[SelectedFile] = field(default_factory=list)
    sent_messages: list[SentMessageRecord] = field(default_factory=list)
    received_messages: list[ReceivedMessageRecord] = field(default_factory=list)
    received_filter: ReceivedMessageFilter = field(default_factory=ReceivedMessageFilter)

    peer_key_waiter: PeerKeyWaiter = field(default_factory=PeerKeyWaiter)
    channel: NotificationChannel | None = None
    send_lock: threading.Lock = field(default_factory=threading.Lock)
    receive_lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def established(self) -> bool:
        return self.state is SessionState.ESTABLISHED and self.cipher is not None


class SecureTransferClient:
    def __init__(self, relay: HttpRelay | None = None, config: ConfigHandler | None = None,
                 channel_factory: Callable[..., NotificationChannel] | None = None,
                 peer_key_timeout: float = configs.PEER_KEY_TIMEOUT,
                 reconnect_backoff: float = configs.RECONNECT_BACKOFF) -> None:
        """
        The SecureTransferClient drives one device's side of a session.

        It is stateless with respect to sessions: every operation takes the
        ``SessionContext`` returned by ``connect``.

        Args:
            relay: HTTP relay client. Built from the config if omitted.
            config: Runtime config. Loaded from config.json if omitted.
            channel_factory: Builds the notification channel, same signature as NotificationChannel.
            peer_key_timeout: Seconds to wait for the peer's public key.
            reconnect_backoff: Seconds between notification channel reconnects.
        """
        self.config: ConfigHandler = config if config is not None else ConfigHandler()
        self.relay: HttpRelay = relay if relay is not None else HttpRelay(self.config["relay_url"],
                                                                          verify=self.config["verify_tls"])
        self.channel_factory = channel_factory or NotificationChannel
        self.peer_key_timeout: float = peer_key_timeout
        self.reconnect_backoff: float = reconnect_backoff
        self._phrase_words: list[str] | None = None

    # Pairing

    def phrase_wordlist(self) -> list[str]:
        """
        Wordlist for the verification phrase, fetched from the relay once.

        The other device loads the same list from the same relay, so both
        derive the same words. A local copy is only used if the relay has none.

        Raises:
            KeyExchangeError: Neither the relay nor a local copy provides the list.
        """
        if self._phrase_words is None:
            try:
                self._phrase_words = self.relay.fetch_phrase_wordlist()
            except TransportError as e:
                logger.warning("Relay did not serve the verification wordlist (%s), trying %s", e,
                               configs.PHRASE_WORDLIST_FILE)
                try:
                    self._phrase_words = load_phrase_wordlist()
                except (OSError, ValueError) as local_error:
                    raise KeyExchangeError(f"Verification wordlist unavailable: {local_error}") from local_error
        return self._phrase_words

    def connect(self, code_input: str, role: str = "responder") -> SessionContext:
        """
        Join the session named by ``code_input`` and finish the key exchange.

        Args:
            code_input: The connection code, or its PGP words.
            role: "responder" when joining a code shown by the other device.

        Returns:
            SessionContext: An established session.

        Raises:
            CodecError: The code could not be decoded. Nothing was sent.
            TransportError: The relay refused the join (RateLimitedError, SessionConflictError, ...).
            KeyExchangeError: The peer key was invalid or never arrived (PeerKeyTimeoutError).
        """
        ctx = SessionContext(role=role)
        try:
            code = decode_connection_code(code_input)
            if not code:
                raise ValueError("Please enter a connection code")

            ctx.max_file_size = self.relay.fetch_config()["max_file_size"]
            self.phrase_wordlist()
            self.display_system_message("Establishing secure connection...")

            ctx.key_pair = generate_keypair()
            joined = self.relay.join_session(code, role, export_public_key(ctx.key_pair.public_key))
            ctx.code, ctx.token = joined["code"], joined["token"]
            ctx.state = SessionState.JOINED

            peer_public_key_hex = joined["peer_public_key_hex"]
            if peer_public_key_hex is None:
                self.display_system_message("Waiting for the other device to join...")
                peer_public_key_hex = self.await_peer_key(ctx)

            self.establish_session(ctx, peer_public_key_hex)
            self._open_channel(ctx)
        except (TransferError, ValueError) as e:
            self._fail(ctx, str(e))
            raise

        self.display_system_message("Connected, secure channel established")
        return ctx

    def await_peer_key(self, ctx: SessionContext, timeout: float | None = None) -> str:
        """
        Block until the notification channel delivers the peer's public key.

        Raises:
            SignalingError: Not in the Joined state, or a wait is already outstanding.
            PeerKeyTimeoutError: Nothing arrived within ``timeout`` seconds.
        """
        if ctx.state is not SessionState.JOINED:
            raise SignalingError(f"Cannot wait for a peer key in state {ctx.state.value}")

        # Register before subscribing so an immediate keys-available event is not lost
        future = ctx.peer_key_waiter.register()
        self._open_channel(ctx)
        logger.debug("Waiting for peer public key on session %s", ctx.code)
        return ctx.peer_key_waiter.wait(future, self.peer_key_timeout if timeout is None else timeout)

    def establish_session(self, ctx: SessionContext, peer_public_key_hex: str) -> None:
        """Derive the session key. On success the session is Established and the private key is dropped."""
        if ctx.state is not SessionState.JOINED:
            raise KeyExchangeError(f"Key exchange failed: session is {ctx.state.value}")
        if ctx.key_pair is None:
            raise KeyExchangeError("Key exchange failed: no local key pair")

        ctx.state = SessionState.KEY_EXCHANGE_IN_FLIGHT
        session_key, phrase = complete_key_exchange(ctx.key_pair.private_key, peer_public_key_hex,
                                                     self.phrase_wordlist())

        ctx.cipher = SessionCipher(session_key)
        ctx.verification_phrase = phrase
        ctx.key_pair = None
        ctx.state = SessionState.ESTABLISHED
        logger.info("Session %s established", ctx.code)

        if self.config["show_verification_phrase"]:
            self.display_verification_phrase(phrase)

    def handle_notification(self, ctx: SessionContext, data: dict[str, Any]) -> None:
        """Dispatch one message from the notification channel."""
        match NotificationType(data.get("type", "")):
            case NotificationType.PEER_KEY_AVAILABLE | NotificationType.KEYS_AVAILABLE:
                peer_public_key_hex = data.get("peerPublicKeyHex")
                if not peer_public_key_hex:
                    logger.warning("Peer key notification without a key")
                    return
                if not ctx.peer_key_waiter.resolve(peer_public_key_hex):
                    logger.debug("Ignoring peer key, nobody is waiting for it")
            case NotificationType.MESSAGE_AVAILABLE:
                if not ctx.established or not self.config["auto_fetch_messages"]:
                    return
                try:
                    records = self.fetch_received_messages(ctx)
                except TransportError as e:
                    self.display_error_message(f"Could not fetch messages: {e}")
                    return
                if records:
                    self.display_received_messages(records)
            case _:
                logger.debug("Ignoring notification %r", data.get("type"))

    def _open_channel(self, ctx: SessionContext) -> None:
        if ctx.channel is not None:
            return
        subscription = {
            "type":  NotificationType.SUBSCRIBE.value,
            "code":  ctx.code,
            "role":  ctx.role,
            "token": ctx.token,
        }
        ctx.channel = self.channel_factory(
                self.relay.notification_url,
                subscription,
                on_message=lambda data: self.handle_notification(ctx, data),
                should_reconnect=lambda: ctx.active,
                backoff=self.reconnect_backoff,
        )
        ctx.channel.start()

    def _fail(self, ctx: SessionContext, reason: str) -> None:
        logger.error("Session attempt failed: %s", reason)
        if ctx.state is not SessionState.CLOSED:
            ctx.state = SessionState.FAILED
        ctx.error = reason
        self._release(ctx)

    @staticmethod
    def _release(ctx: SessionContext) -> None:
        ctx.peer_key_waiter.cancel()
        if ctx.channel is not None:
            ctx.channel.close()
            ctx.channel = None
        if ctx.cipher is not None:
            ctx.cipher.wipe()
            ctx.cipher = None
        ctx.key_pair = None
        ctx.selected_files = []

    def disconnect(self, ctx: SessionContext) -> None:
        """Tear the session down. The notification channel stops reconnecting."""
        if ctx.state is not SessionState.FAILED:
            ctx.state = SessionState.CLOSED
        self._release(ctx)
        logger.info("Session %s closed", ctx.code)

    # Sending

    def select_files(self, ctx: SessionContext, paths: Sequence[str]) -> list[SelectedFile]:
        """
        Queue files for the next send. Only metadata is kept until then.

        Missing or unreadable paths and files over the relay's size limit are
        reported and skipped, files already selected (same name and size) are
        ignored.
        """
        added: list[SelectedFile] = []
        for path in paths:
            name = os.path.basename(path)
            try:
                size = os.path.getsize(path)
            except OSError as e:
                self.display_error_message(f'Cannot read "{name}": {e.strerror or e}')
                continue
            if size > ctx.max_file_size:
                self.display_error_message(f'File "{name}" is too large. Maximum size is '
                                           f'{bytes_to_human_readable(ctx.max_file_size)}. '
                                           f'File is {bytes_to_human_readable(size)}.')
                continue
            if any(f["name"] == name and f["size"] == size for f in ctx.selected_files):
                continue
            selected = SelectedFile(name=name, size=size, path=path)
            ctx.selected_files.append(selected)
            added.append(selected)
        return added

    @staticmethod
    def remove_file(ctx: SessionContext, index: int) -> None:
        del ctx.selected_files[index]

    def send_message(self, ctx: SessionContext, text: str = "", files: Sequence[str] | None = None) -> None:
        """
        Encrypt and submit a text message and/or the selected files.

        Text and files go out as two separate relay submissions. Sends on one
        session are serialised.

        Raises:
            TransferError: The secure channel is not established.
            ValueError: Nothing to send.
            RateLimitedError: The relay asked us to slow down, nothing was lost locally.
            TransportError: Any other relay failure.
        """
        if not ctx.established:
            raise TransferError("Secure connection not established. Key exchange may have failed. Please reconnect.")
        if files:
            self.select_files(ctx, files)
        if not text.strip() and not ctx.selected_files:
            raise ValueError("Please enter a message or select files")

        with ctx.send_lock:
            if text:
                envelope = ctx.cipher.encrypt_text(text)
                self.relay.send_text(ctx.code, envelope)
                ctx.sent_messages.append(SentMessageRecord(type=MessageKind.TEXT.value, text=text, files=[],
                                                           timestamp=int(time.time() * 1000)))
                logger.debug("Sent encrypted text on session %s", ctx.code)

            if ctx.selected_files:
                encrypted_files = [self._encrypt_selected(ctx, selected) for selected in ctx.selected_files]
                self.relay.send_files(ctx.code, encrypted_files)
                ctx.sent_messages.append(SentMessageRecord(
                        type=MessageKind.FILES.value, text="",
                        files=[{"name": f["name"], "size": f["size"]} for f in ctx.selected_files],
                        timestamp=int(time.time() * 1000)))
                logger.debug("Sent %d encrypted files on session %s", len(encrypted_files), ctx.code)
                # Release the encrypted buffers and the selection
                encrypted_files.clear()
                ctx.selected_files = []

        self.display_system_message("Message sent securely!")

    @staticmethod
    def _encrypt_selected(ctx: SessionContext, selected: SelectedFile) -> EncryptedFile:
        try:
            with open(selected["path"], "rb") as f:
                data = f.read()
        except OSError as e:
            raise TransferError(f'Could not read "{selected["name"]}": {e}') from e
        encrypted = ctx.cipher.encrypt_file(selected["name"], data)
        del data
        return encrypted

    # Receiving

    def fetch_received_messages(self, ctx: SessionContext) -> list[ReceivedMessageRecord]:
        """
        Pull the session's messages from the relay and return the ones not seen before.

        Each message is decrypted on its own, a message that fails to decrypt
        comes back with the placeholder text instead of stopping the batch.
        """
        if not ctx.established:
            return []
        with ctx.receive_lock:
            messages = self.relay.retrieve_messages(ctx.code)
            new_messages = ctx.received_filter.filter_new(messages)
            records = [decrypt_received_message(ctx.cipher, message) for message in new_messages]
            ctx.received_messages.extend(records)
        return records

    # Display

    @staticmethod
    def display_system_message(message: str) -> None:
        print(f"[SYSTEM]: {message}")

    @staticmethod
    def display_error_message(message: str) -> None:
        print(f"Error: {message}")

    @staticmethod
    def display_verification_phrase(phrase: str) -> None:
        print("\nSecurity fingerprint:")
        print("-" * 40)
        print(phrase)
        print("-" * 40)
        print("Both devices should show the SAME three words.")
        print("If they differ, someone may be intercepting the connection.\n")

    @staticmethod
    def display_received_messages(records: list[ReceivedMessageRecord]) -> None:
        for record in records:
            if record["type"] == MessageKind.FILES:
                print("\nFiles from main:")
                for received in record["files"]:
                    print(f"  {received['name']} ({bytes_to_human_readable(received['size'])})")
            else:
                print(f"\nText from main: {record['text']}")


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Connect to a device by its connection code and transfer securely")
    parser.add_argument('code', nargs='+', help='Connection code or its PGP words')
    parser.add_argument('--relay', dest='relay_url', default=None, help='Relay base URL (overrides config.json)')
    parser.add_argument('-t', '--text', dest='text', default='', help='Text message to send after pairing')
    parser.add_argument('-f', '--file', dest='files', action='append', default=[], help='File to send (repeatable)')
    parser.add_argument('--poll', dest='poll_interval', type=float, default=5.0,
                        help='Seconds between message polls while waiting for replies')
    parser.add_argument('--once', dest='once', action='store_true', help='Exit after sending instead of waiting')
    parser.add_argument('-v', '--verbose', dest='verbose', action='store_true', help='Debug logging')
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Pair, send what was asked for, then print replies until interrupted."""
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    config = ConfigHandler()
    relay = HttpRelay(args.relay_url or config["relay_url"], verify=config["verify_tls"])
    client = SecureTransferClient(relay, config)

    try:
        ctx = client.connect(" ".join(args.code))
    except (TransferError, ValueError) as e:
        client.display_error_message(f"Connection failed: {e}")
        return 1

    try:
        if args.text or args.files:
            try:
                client.send_message(ctx, args.text, args.files)
            except (TransferError, ValueError) as e:
                client.display_error_message(f"Send failed: {e}")
                return 1
        while not args.once and ctx.active:
            try:
                records = client.fetch_received_messages(ctx)
            except RateLimitedError as e:
                client.display_error_message(str(e))
                time.sleep(args.poll_interval * 2)
                continue
            except TransportError as e:
                client.display_error_message(f"Could not fetch messages: {e}")
            else:
                if records:
                    client.display_received_messages(records)
            time.sleep(args.poll_interval)
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        client.disconnect(ctx)
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
