import base64
import binascii
import hashlib
import json
import logging
import os
import re
import secrets
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ValidationError

from .errors import (
    AccessWindowEnded,
    AccessWindowNotStarted,
    FingerprintError,
    InvalidTokenFormat,
    MachineMismatch,
    TokenExpired,
    TokenNotFound,
    TokenValidationError,
)
from .fingerprint import PlatformIdentity, generate_fingerprint, validate_fingerprint
from .models import ROLE_PERMISSIONS, AccessToken, AccessWindow, Role, utcnow

TOKEN_PREFIX = "lc1"
SECRET_BYTES = 32
DEFAULT_TOKEN_LIFETIME = timedelta(days=180)
NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")

ACTIVATE_HINT = "lab-connect activate <token> <student-id>"


class ParsedToken(BaseModel):
    """What an opaque token says about itself, before any local state exists."""

    project: str
    username: str
    mailbox_url: str = ""
    role: Role = "student"
    expires_at: Optional[datetime] = None
    access_window: Optional[AccessWindow] = None


def hash_token(opaque: str) -> str:
    return hashlib.sha256(opaque.encode("utf-8")).hexdigest()


def _check_name(kind: str, value: str):
    if ".." in value or not NAME_PATTERN.match(value):
        raise InvalidTokenFormat(f"invalid {kind}: {value!r}")


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _epoch(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp()) if value is not None else None


def _from_epoch(value) -> Optional[datetime]:
    return datetime.fromtimestamp(int(value), tz=timezone.utc) if value is not None else None


def encode_token(parsed: ParsedToken) -> str:
    window = parsed.access_window or AccessWindow()
    payload = {
        "p": parsed.project,
        "u": parsed.username,
        "m": parsed.mailbox_url,
        "r": parsed.role,
        "e": _epoch(parsed.expires_at),
        "ws": _epoch(window.start),
        "we": _epoch(window.end),
    }
    body = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{TOKEN_PREFIX}.{body}.{secrets.token_urlsafe(SECRET_BYTES)}"


def parse_token(opaque: str) -> ParsedToken:
    parts = opaque.strip().split(".")
    if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
        raise InvalidTokenFormat("invalid token format", remediation=ACTIVATE_HINT)
    _, body, secret = parts
    # 128 bits of randomness is 22 base64 characters
    if len(secret) < 22:
        raise InvalidTokenFormat("invalid token format: secret too short")
    try:
        payload = json.loads(_b64decode(body).decode("utf-8"))
        window = None
        if payload.get("ws") is not None or payload.get("we") is not None:
            window = AccessWindow(start=_from_epoch(payload.get("ws")), end=_from_epoch(payload.get("we")))
        parsed = ParsedToken(
            project=payload["p"],
            username=payload["u"],
            mailbox_url=payload.get("m") or "",
            role=payload.get("r") or "student",
            expires_at=_from_epoch(payload.get("e")),
            access_window=window,
        )
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError) as e:
        # ValidationError is a ValueError
        raise InvalidTokenFormat(f"invalid token format: {e}") from e
    _check_name("project", parsed.project)
    _check_name("username", parsed.username)
    return parsed


class TokenManager:
    """Issues, stores and validates access tokens.

    Records live in `tokens_dir`, one owner-only JSON file per
    (project, username). Files are independent, so activating different
    tokens concurrently is safe; two machines activating the same token is
    not serialised anywhere.
    """

    def __init__(self, tokens_dir: Path, identity: Optional[PlatformIdentity] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.tokens_dir = Path(tokens_dir)
        self.identity = identity
        self.clock = clock
        self.tokens_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    def _path(self, project: str, username: str) -> Path:
        _check_name("project", project)
        _check_name("username", username)
        return self.tokens_dir / f"{username}@{project}.json"

    def generate_token(self, project: str, username: str, student_id: str, role: Role,
                       permissions: Iterable[str], mailbox_url: str, expires_at: datetime,
                       access_window: Optional[AccessWindow] = None) -> Tuple[str, AccessToken]:
        _check_name("project", project)
        _check_name("username", username)
        parsed = ParsedToken(project=project, username=username, mailbox_url=mailbox_url,
                             role=role, expires_at=expires_at, access_window=access_window)
        opaque = encode_token(parsed)
        token = AccessToken(
            project=project,
            username=username,
            student_id=student_id,
            role=role,
            permissions=list(permissions),
            mailbox_url=mailbox_url,
            created_at=self.clock(),
            expires_at=expires_at,
            access_window=access_window,
            token_hash=hash_token(opaque),
        )
        logging.info(f"[TOKENS] Generated {role} token for {username} in project {project}")
        return opaque, token

    def activate_token(self, opaque: str, student_id: str) -> AccessToken:
        parsed = parse_token(opaque)
        fingerprint = generate_fingerprint(self.identity)
        token_hash = hash_token(opaque)

        existing = self._load_if_present(parsed.project, parsed.username)
        if existing is not None and existing.token_hash == token_hash:
            # Re-activation on the same machine rewrites the same record
            existing.bind(fingerprint)
            existing.student_id = student_id
            token = existing
        else:
            now = self.clock()
            token = AccessToken(
                project=parsed.project,
                username=parsed.username,
                student_id=student_id,
                role=parsed.role,
                permissions=list(ROLE_PERMISSIONS[parsed.role]),
                mailbox_url=parsed.mailbox_url,
                created_at=now,
                expires_at=parsed.expires_at or now + DEFAULT_TOKEN_LIFETIME,
                access_window=parsed.access_window,
                token_hash=token_hash,
            )
            token.bind(fingerprint)

        self.save_token(token)
        logging.info(f"[TOKENS] Activated token for {token.username} in project {token.project}")
        return token

    def save_token(self, token: AccessToken):
        path = self._path(token.project, token.username)
        # mkstemp creates the file 0600
        fd, tmp = tempfile.mkstemp(dir=self.tokens_dir, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(token.model_dump_json(indent=2))
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def load_token(self, project: str, username: str) -> AccessToken:
        path = self._path(project, username)
        try:
            data = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise TokenNotFound(f"no access token found for {username} in project {project}",
                                remediation=ACTIVATE_HINT)
        try:
            return AccessToken.model_validate_json(data)
        except ValidationError as e:
            raise TokenNotFound(f"access token for {username} is unreadable: {e.error_count()} errors",
                                remediation=ACTIVATE_HINT) from e

    def _load_if_present(self, project: str, username: str) -> Optional[AccessToken]:
        try:
            return self.load_token(project, username)
        except TokenNotFound:
            return None

    def remove_token(self, project: str, username: str):
        path = self._path(project, username)
        try:
            path.unlink()
        except FileNotFoundError:
            raise TokenNotFound(f"no access token found for {username} in project {project}")
        logging.info(f"[TOKENS] Removed token for {username} in project {project}")

    def check_token(self, token: AccessToken):
        """Run the validation checks in order; the first failure is raised."""
        now = self.clock()
        if now > token.expires_at:
            raise TokenExpired(f"token expired on {token.expires_at:%Y-%m-%d}; ask your instructor for a new token")

        window = token.access_window
        if window is not None and window.start is not None and now < window.start:
            raise AccessWindowNotStarted(f"access not yet available (starts {window.start:%Y-%m-%d %H:%M})")
        if window is not None and window.end is not None and now > window.end:
            raise AccessWindowEnded(f"access ended on {window.end:%Y-%m-%d %H:%M}")

        if token.fingerprint is not None and not validate_fingerprint(token.fingerprint, self.identity):
            raise MachineMismatch("token is bound to a different machine; ask your instructor to reissue the token")

    def validate_token(self, project: str, username: str) -> AccessToken:
        token = self.load_token(project, username)
        self.check_token(token)
        return token

    def list_tokens(self) -> List[AccessToken]:
        tokens = []
        for path in sorted(self.tokens_dir.glob("*.json")):
            try:
                tokens.append(AccessToken.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as e:
                logging.warning(f"[TOKENS] Skipping unreadable token file {path.name}: {e}")
        return tokens

    def find_token(self, username: str, project: Optional[str] = None) -> AccessToken:
        if project:
            return self.load_token(project, username)
        for token in self.list_tokens():
            if token.username == username:
                return token
        raise TokenNotFound(f"no access token found for {username}", remediation=ACTIVATE_HINT)

    def describe(self, token: AccessToken) -> str:
        """Short validity label for listings."""
        labels = {
            TokenExpired: "expired",
            AccessWindowNotStarted: "not yet active",
            AccessWindowEnded: "access ended",
            MachineMismatch: "other machine",
        }
        try:
            self.check_token(token)
        except TokenValidationError as e:
            return labels.get(type(e), "invalid")
        except FingerprintError:
            return "unverifiable"
        return "valid"
