"""
Administrator-side flows: issuing tokens for a class roster, processing the
start requests students leave in the mailbox, and publishing instance status.
"""
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

from pydantic import ValidationError

from .control_plane import AzureControlPlane
from .errors import (
    ControlPlaneError,
    LabConnectError,
    MailboxUnavailable,
    ResourceErrorState,
    TokenNotFound,
    TokenValidationError,
    WaitTimeout,
)
from .mailbox import Mailbox
from .models import ROLE_PERMISSIONS, ClassConfig, InstanceStatus, StartRequest, utcnow
from .tokens import DEFAULT_TOKEN_LIFETIME, TokenManager
from .wait import wait_for_instance_state


def load_class_config(path: Path) -> ClassConfig:
    try:
        return ClassConfig.model_validate_json(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise LabConnectError(f"class configuration not found: {path}")
    except ValidationError as e:
        raise LabConnectError(f"invalid class configuration {path}: {e}") from e


def generate_class_tokens(config: ClassConfig, issuer: TokenManager, output_dir: Path,
                          now: Optional[datetime] = None) -> Path:
    """Issue one token per roster member and write them to
    `<project>-tokens.txt` as USERNAME:ROLE:TOKEN lines. Issued records are
    kept in the issuer's store so start requests can be checked later."""
    now = now or utcnow()
    expires_at = now + DEFAULT_TOKEN_LIFETIME
    window = config.access_window()

    roster = [(user, "student", f"student-{i}") for i, user in enumerate(config.students, 1)]
    roster += [(user, "ta", f"ta-{i}") for i, user in enumerate(config.tas, 1)]
    if config.professor:
        roster.append((config.professor, "professor", "professor-1"))

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    tokens_file = output_dir / f"{config.project}-tokens.txt"
    lines = [
        f"# Access tokens for {config.project}",
        "# Format: USERNAME:ROLE:TOKEN",
        "# Distribution: send each user their own token only",
        "",
    ]
    for username, role, student_id in roster:
        try:
            opaque, token = issuer.generate_token(
                config.project, username, student_id, role, ROLE_PERMISSIONS[role],
                config.mailbox_url, expires_at, access_window=window,
            )
            issuer.save_token(token)
        except LabConnectError as e:
            logging.error(f"[ADMIN] Failed to generate token for {username}: {e}")
            continue
        lines.append(f"{username}:{role}:{opaque}")

    fd = os.open(tokens_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    logging.info(f"[ADMIN] Wrote {len(lines) - 4} tokens to {tokens_file}")
    return tokens_file


def verify_request(issued: TokenManager, project: str, username: str, request: StartRequest) -> bool:
    try:
        token = issued.load_token(project, username)
        issued.check_token(token)
    except (TokenNotFound, TokenValidationError) as e:
        logging.warning(f"[ADMIN] Start request from {username} has no valid issued token: {e}")
        return False
    if token.token_hash != request.token:
        logging.warning(f"[ADMIN] Start request from {username} carries an unknown token")
        return False
    return True


def publish_instance_status(mailbox: Mailbox, control_plane: AzureControlPlane, project: str,
                            username: str, instance_name: str, **extra) -> InstanceStatus:
    state = control_plane.get_instance_state(instance_name)
    address = control_plane.get_public_ip(instance_name) if state == "running" else None
    status = InstanceStatus(state=state, address=address, **extra)
    mailbox.publish_status(project, username, status)
    return status


def approve_request(mailbox: Mailbox, control_plane: AzureControlPlane, project: str, username: str,
                    instance_name: str, request: StartRequest, wait_fn: Callable = wait_for_instance_state):
    control_plane.start_instance(instance_name)
    mailbox.publish_status(project, username, InstanceStatus(
        state="starting", start_requested=True,
        requested_at=request.requested_at, requested_by=username,
    ))
    result = wait_fn(instance_name, "running", lambda: control_plane.get_instance_state(instance_name))
    result.raise_for_outcome()
    publish_instance_status(mailbox, control_plane, project, username, instance_name,
                            requested_at=request.requested_at, requested_by=username)


def _publish_failure(mailbox: Mailbox, project: str, username: str, request: StartRequest):
    # The student's wait sees the failure marker and stops at once
    status = InstanceStatus(state="failed", requested_at=request.requested_at, requested_by=username)
    try:
        mailbox.publish_status(project, username, status)
    except MailboxUnavailable as e:
        logging.error(f"[ADMIN] Could not publish failure for {username}: {e}")


def process_start_requests(mailbox: Mailbox, control_plane: Optional[AzureControlPlane], project: str,
                           approve: bool = False, issued: Optional[TokenManager] = None,
                           instance_template: str = "{username}",
                           wait_fn: Callable = wait_for_instance_state) -> Dict[str, str]:
    """Returns the outcome per user: pending, rejected, started or failed.
    One user's failure never stops the others."""
    requests = mailbox.list_pending_requests(project)
    outcomes = {}
    for username, request in sorted(requests.items()):
        if issued is not None and not verify_request(issued, project, username, request):
            try:
                mailbox.clear_start_request(project, username)
            except MailboxUnavailable as e:
                logging.warning(f"[ADMIN] Could not clear rejected request from {username}: {e}")
            outcomes[username] = "rejected"
            continue
        if not approve:
            outcomes[username] = "pending"
            continue

        instance_name = instance_template.format(username=username, project=project)
        logging.info(f"[ADMIN] Approving start request from {username} for {instance_name}")
        try:
            approve_request(mailbox, control_plane, project, username, instance_name, request, wait_fn)
        except (ControlPlaneError, MailboxUnavailable, ResourceErrorState, WaitTimeout) as e:
            logging.error(f"[ADMIN] Failed to start {instance_name} for {username}: {e}")
            _publish_failure(mailbox, project, username, request)
            outcomes[username] = "failed"
            continue
        try:
            mailbox.clear_start_request(project, username)
        except MailboxUnavailable as e:
            # Started anyway; a leftover request is harmless on the next run
            logging.warning(f"[ADMIN] Could not clear start request for {username}: {e}")
        outcomes[username] = "started"
    return outcomes
