"""
Clients for the untrusted relay.

The relay stores and forwards encrypted envelopes and pushes small
notifications. Nothing sent through this module is plaintext: callers hand
over hex fields and encrypted blobs produced by ``shared.SessionCipher``.
"""
import json
import logging
import threading
from collections.abc import Callable
from typing import Any, TypedDict
from urllib.parse import urlsplit, urlunsplit

import requests
from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

import configs
from shared import (EncryptedEnvelope, EncryptedFile, MessageKind, RateLimitedError, SessionConflictError,
                    TransportError, bytes_to_human_readable, parse_phrase_wordlist)

logger = logging.getLogger(__name__)

PHRASE_WORDLIST_PATH = "/eff_wordlist.json"


class RelayConfig(TypedDict):
    max_file_size: int
    max_file_size_formatted: str


class JoinResult(TypedDict):
    code: str
    token: str
    peer_public_key_hex: str | None


def peer_role(role: str) -> str:
    return "initiator" if role == "responder" else "responder"


def notification_url(base_url: str) -> str:
    """Same host as the HTTP relay, ws:// or wss:// scheme."""
    parts = urlsplit(base_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    return urlunsplit((scheme, parts.netloc, "/", "", ""))


class HttpRelay:
    """
    HTTP side of the relay: session join, message submission and retrieval.

    Every non-2xx answer is turned into a ``TransportError``. 429 becomes
    ``RateLimitedError`` and 409 on join becomes ``SessionConflictError`` so
    callers can react to them specifically.
    """

    def __init__(self, base_url: str = configs.RELAY_URL, session: requests.Session | None = None,
                 timeout: float = configs.HTTP_TIMEOUT, verify: bool = True) -> None:
        self.base_url: str = base_url.rstrip("/")
        self.session: requests.Session = session or requests.Session()
        self.timeout: float = timeout
        self.verify: bool = verify

    @property
    def notification_url(self) -> str:
        return notification_url(self.base_url)

    def _request(self, method: str, path: str, default_error: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout,
                                            verify=self.verify, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"Could not reach relay: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError()
        if response.status_code == 409:
            raise SessionConflictError()
        if not response.ok:
            raise TransportError(self._error_message(response, default_error), response.status_code)
        return response

    @staticmethod
    def _error_message(response: requests.Response, default_error: str) -> str:
        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            return f"Server error: {response.status_code} {response.reason}"
        try:
            body = response.json()
        except ValueError:
            return f"Server error: {response.status_code} {response.reason}"
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return default_error

    @staticmethod
    def _json(response: requests.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise TransportError("Relay returned invalid JSON", response.status_code) from e
        if not isinstance(body, dict):
            raise TransportError("Relay returned an unexpected JSON document", response.status_code)
        return body

    def fetch_config(self) -> RelayConfig:
        """Server side limits. Falls back to the local defaults if the relay does not answer."""
        try:
            body = self._json(self._request("GET", "/api/config", "Could not fetch relay config"))
            max_file_size = int(body["maxFileSize"])
        except (TransportError, KeyError, TypeError, ValueError) as e:
            logger.warning("Using default max file size, relay config unavailable: %s", e)
            return RelayConfig(max_file_size=configs.DEFAULT_MAX_FILE_SIZE,
                               max_file_size_formatted=bytes_to_human_readable(configs.DEFAULT_MAX_FILE_SIZE))

        formatted = body.get("maxFileSizeFormatted") or bytes_to_human_readable(max_file_size)
        return RelayConfig(max_file_size=max_file_size, max_file_size_formatted=str(formatted))

    def fetch_phrase_wordlist(self) -> list[str]:
        """
        The verification phrase wordlist as served to the other device too.

        :raises TransportError: If the relay does not serve a valid wordlist.
        """
        response = self._request("GET", PHRASE_WORDLIST_PATH, "Could not fetch verification wordlist")
        try:
            return parse_phrase_wordlist(self._json(response))
        except ValueError as e:
            raise TransportError(f"Relay served an invalid verification wordlist: {e}",
                                 response.status_code) from e

    def join_session(self, code: str, role: str, public_key_hex: str) -> JoinResult:
        """
        Publish our public key for ``code``.

        :return: The session code, the notification token and the peer's
            public key if the peer already joined.
        """
        response = self._request("POST", "/api/session/join", "Connection failed",
                                 json={"code": code, f"{role}PublicKeyHex": public_key_hex})
        body = self._json(response)
        token = body.get("webSocketToken")
        if not token:
            raise TransportError("Relay did not return a notification token", response.status_code)
        logger.info("Joined session %s as %s", body.get("code", code), role)
        return JoinResult(code=str(body.get("code") or code), token=str(token),
                          peer_public_key_hex=body.get(f"{peer_role(role)}PublicKeyHex") or None)

    def send_text(self, code: str, envelope: EncryptedEnvelope) -> None:
        parts = [
            ("code", (None, code)),
            ("messageType", (None, MessageKind.TEXT.value)),
            ("ciphertext", (None, envelope["ciphertext"])),
            ("iv", (None, envelope["iv"])),
            ("authTag", (None, envelope["authTag"])),
        ]
        self._request("POST", "/api/message/send", "Send text failed", files=parts)

    def send_files(self, code: str, files: list[EncryptedFile]) -> None:
        parts: list[tuple[str, tuple[Any, ...]]] = [
            ("code", (None, code)),
            ("messageType", (None, MessageKind.FILES.value)),
        ]
        for encrypted in files:
            parts.append(("files", (encrypted["filename"], encrypted["blob"], "application/octet-stream")))
            parts.append(("fileIvs[]", (None, encrypted["iv"])))
            parts.append(("fileNames[]", (None, encrypted["encryptedName"])))
            parts.append(("fileNameIvs[]", (None, encrypted["nameIv"])))
        self._request("POST", "/api/message/send", "Send files failed", files=parts)

    def retrieve_messages(self, code: str) -> list[dict[str, Any]]:
        body = self._json(self._request("GET", f"/api/message/retrieve/{code}", "Retrieve failed"))
        messages = body.get("messages") or []
        if not isinstance(messages, list):
            raise TransportError("Relay returned malformed message list")
        return [m for m in messages if isinstance(m, dict)]


class NotificationChannel:
    """
    Persistent notification connection with automatic reconnect.

    Runs in a background thread: connect, subscribe, hand every JSON message
    to ``on_message``. When the connection drops it waits ``backoff`` seconds
    and reconnects for as long as ``should_reconnect()`` is true. ``close()``
    ends the loop for good.
    """

    def __init__(self, url: str, subscription: dict[str, str], on_message: Callable[[dict[str, Any]], None],
                 should_reconnect: Callable[[], bool], backoff: float = configs.RECONNECT_BACKOFF,
                 connect: Callable[..., Any] = ws_connect) -> None:
        self.url: str = url
        self.subscription: dict[str, str] = subscription
        self.on_message = on_message
        self.should_reconnect = should_reconnect
        self.backoff: float = backoff
        self.connect = connect

        self.thread: threading.Thread | None = None
        self.connect_attempts: int = 0
        self._closed: threading.Event = threading.Event()
        self._connection_lock: threading.Lock = threading.Lock()
        self._connection: Any = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> None:
        if self.thread is not None and self.thread.is_alive():
            return  # Thread already running
        self._closed.clear()
        self.thread = threading.Thread(target=self._run, daemon=True, name="notification-channel")
        self.thread.start()

    def _run(self) -> None:
        while not self._closed.is_set():
            self.connect_attempts += 1
            try:
                with self.connect(self.url) as connection:
                    with self._connection_lock:
                        if self._closed.is_set():
                            break
                        self._connection = connection
                    connection.send(json.dumps(self.subscription))
                    logger.info("Notification channel connected, subscribed to %s", self.subscription.get("code"))
                    for raw in connection:
                        self._dispatch(raw)
                logger.info("Notification channel disconnected")
            except (WebSocketException, OSError) as e:
                logger.warning("Notification channel error: %s", e)
            finally:
                with self._connection_lock:
                    self._connection = None

            if self._closed.is_set() or not self.should_reconnect():
                break
            logger.info("Reconnecting notification channel in %.1f s", self.backoff)
            self._closed.wait(self.backoff)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Ignoring malformed notification: %s", e)
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring notification that is not a JSON object")
            return
        try:
            self.on_message(data)
        except Exception:  # pylint: disable=broad-exception-caught
            # A failing handler must not kill the channel thread
            logger.exception("Error handling notification %r", data.get("type"))

    def close(self) -> None:
        """Stop the reconnect loop and close the live connection, if any."""
        self._closed.set()
        with self._connection_lock:
            connection = self._connection
        if connection is not None:
            try:
                connection.close()
            except (WebSocketException, OSError) as e:
                logger.debug("Error closing notification channel: %s", e)
        if self.thread is not None and self.thread is not threading.current_thread():
            self.thread.join(timeout=1.0)
        self.thread = None
