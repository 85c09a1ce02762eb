import logging
import os
import subprocess
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Optional, Tuple

import httpx

from .config import Settings
from .errors import SecretNotFound, SessionError
from .keychain import KeyStore
from .mailbox import Mailbox
from .models import AccessToken, InstanceStatus, StartRequest
from .tokens import TokenManager
from .wait import ProgressRenderer, WaitCondition, wait_for_state

NOT_REPORTED = "not reported"
AWAITING_ADDRESS = "running (awaiting address)"
START_REQUESTED = "start requested"


class SshLauncher:
    def __init__(self, ssh_binary: str = "ssh", runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.ssh_binary = ssh_binary
        self.runner = runner

    @contextmanager
    def key_file(self, key_data: str) -> Iterator[str]:
        """Owner-only temporary key file, removed on every exit path."""
        fd, path = tempfile.mkstemp(prefix="lab-connect-key-", suffix=".pem")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(key_data if key_data.endswith("\n") else key_data + "\n")
            yield path
        finally:
            Path(path).unlink(missing_ok=True)

    def launch(self, user: str, address: str, key_data: str) -> int:
        with self.key_file(key_data) as key_path:
            args = [
                self.ssh_binary,
                "-i", key_path,
                "-o", "StrictHostKeyChecking=no",
                "-o", "UserKnownHostsFile=/dev/null",
                f"{user}@{address}",
            ]
            logging.info(f"[CONNECT] Opening SSH session to {user}@{address}")
            try:
                return self.runner(args).returncode
            except FileNotFoundError as e:
                raise SessionError(f"SSH client '{self.ssh_binary}' not found") from e


def lookup_public_ip(url: Optional[str], timeout: float = 5.0) -> Optional[str]:
    if not url:
        return None
    try:
        response = httpx.get(url, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logging.debug(f"[CONNECT] Public address lookup failed: {e}")
        return None
    return response.text.strip() or None


def _answers(status: InstanceStatus, since: datetime) -> bool:
    # Admin statuses echo the request time, which survives clock skew
    if status.requested_at is not None and status.requested_at >= since:
        return True
    return status.last_updated >= since


class ConnectOrchestrator:
    """The unprivileged connect flow: validate, check status, request a
    start if needed, wait, then hand off to SSH."""

    def __init__(self, tokens: TokenManager, keys: KeyStore, settings: Settings,
                 launcher: Optional[SshLauncher] = None,
                 mailbox_factory: Callable[..., Mailbox] = Mailbox,
                 progress: Optional[ProgressRenderer] = None,
                 wait_fn: Callable = wait_for_state):
        self.tokens = tokens
        self.keys = keys
        self.settings = settings
        self.launcher = launcher or SshLauncher()
        self.mailbox_factory = mailbox_factory
        self.progress = progress
        self.wait_fn = wait_fn

    def _mailbox(self, token: AccessToken) -> Mailbox:
        return self.mailbox_factory(self.settings.sync_config(token.project, token.mailbox_url))

    def resolve(self, username: str, project: Optional[str] = None) -> AccessToken:
        token = self.tokens.find_token(username, project)
        # Cheap local checks run before any mailbox I/O
        return self.tokens.validate_token(token.project, token.username)

    def instance_status(self, username: str, project: Optional[str] = None) -> Tuple[AccessToken, Optional[InstanceStatus]]:
        token = self.resolve(username, project)
        return token, self._mailbox(token).read_status(token.project, token.username)

    def build_request(self, token: AccessToken) -> StartRequest:
        return StartRequest(
            username=token.username,
            student_id=token.student_id,
            token=token.token_hash,
            machine_hash=token.fingerprint.hash if token.fingerprint else "",
            request_ip=lookup_public_ip(self.settings.ip_lookup_url),
        )

    def wait_until_ready(self, mailbox: Mailbox, token: AccessToken, timeout: float,
                         cancel: Optional[threading.Event] = None,
                         since: Optional[datetime] = None) -> InstanceStatus:
        """Block until the published status is ready. A status written before
        `since` predates the pending request and is not acted on."""
        latest = {}

        def current_state() -> str:
            status = mailbox.read_status(token.project, token.username)
            if status is None:
                return NOT_REPORTED
            if since is not None and not _answers(status, since):
                return START_REQUESTED
            latest["status"] = status
            if status.state == "running" and not status.address:
                return AWAITING_ADDRESS
            return status.state

        condition = WaitCondition(
            resource_name=f"{token.username}'s instance",
            target_state="running",
            current_state_fn=current_state,
            poll_interval=self.settings.poll_interval,
            max_duration=timeout,
        )
        result = self.wait_fn(condition, cancel=cancel, progress=self.progress)
        result.raise_for_outcome()
        return latest["status"]

    def connect(self, username: str, project: Optional[str] = None, force: bool = False,
                timeout: Optional[float] = None, cancel: Optional[threading.Event] = None) -> int:
        token = self.resolve(username, project)
        timeout = timeout if timeout is not None else self.settings.connect_timeout
        logging.info(f"[CONNECT] Connecting to {username}'s instance in project {token.project}")

        mailbox = self._mailbox(token)
        status = mailbox.read_status(token.project, token.username)
        logging.info(f"[CONNECT] Instance state: {status.state if status else NOT_REPORTED}")

        if not (status and status.ready):
            if force:
                logging.warning(f"[CONNECT] Instance state is {status.state if status else NOT_REPORTED}, "
                                f"attempting connection anyway")
            else:
                request = self.build_request(token)
                mailbox.submit_start_request(token.project, token.username, request)
                logging.info("[CONNECT] Start request submitted, waiting for the instance to start")
                status = self.wait_until_ready(mailbox, token, timeout, cancel, since=request.requested_at)

        if status is None or not status.address:
            raise SessionError("instance has no public address; connect without --force to request a start",
                               remediation=f"lab-connect connect {username}")

        try:
            key_data = self.keys.retrieve_key(token.project, token.username)
        except SecretNotFound as e:
            raise SessionError(
                f"no SSH key stored for {username} in project {token.project}",
                remediation=f"lab-connect keychain store {token.project} {username} <key-file>",
            ) from e

        user = f"{self.settings.ssh_user_prefix}{username}"
        return self.launcher.launch(user, status.address, key_data)
