"""
Mailbox protocol: status and start-request objects in a shared blob container.

Status blobs are written by the administrator and readable by anyone; request
blobs are writable by anyone and read by the administrator. Each path has a
single legitimate writer, so plain overwrites are safe and no locking is done.
Reads are eventually consistent.
"""
import logging
from typing import Dict, Optional

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import ContainerClient, ContentSettings
from pydantic import BaseModel, ValidationError

from .config import SyncConfig
from .errors import MailboxUnavailable
from .models import InstanceStatus, StartRequest, utcnow

STATUS_BLOB = "status.json"
START_REQUEST_BLOB = "start-request.json"
JSON_CONTENT = ContentSettings(content_type="application/json")


def blob_path(project: str, user: str, name: str) -> str:
    for part in (project, user):
        if not part or "/" in part or part in (".", ".."):
            raise MailboxUnavailable(f"invalid mailbox path component: {part!r}")
    return f"{project}/{user}/{name}"


class Mailbox:
    def __init__(self, sync_config: SyncConfig, container: Optional[ContainerClient] = None, credential=None):
        self.sync_config = sync_config
        if container is None:
            if not sync_config.enabled or not sync_config.mailbox_url:
                raise MailboxUnavailable(
                    f"no mailbox configured for project {sync_config.project}; "
                    f"set LAB_CONNECT_MAILBOX_URL or reactivate your token",
                )
            container = ContainerClient.from_container_url(
                sync_config.mailbox_url,
                credential=credential,
                connection_timeout=sync_config.timeout,
                read_timeout=sync_config.timeout,
            )
        self.container = container

    def _put(self, name: str, model: BaseModel):
        try:
            self.container.upload_blob(
                name, model.model_dump_json(indent=2), overwrite=True, content_settings=JSON_CONTENT,
            )
        except AzureError as e:
            raise MailboxUnavailable(f"failed to write {name}: {e}") from e

    def _get(self, name: str) -> Optional[bytes]:
        try:
            return self.container.download_blob(name).readall()
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise MailboxUnavailable(f"failed to read {name}: {e}") from e

    # --- status channel (administrator writes, student reads) ---

    def publish_status(self, project: str, user: str, status: InstanceStatus):
        status.last_updated = utcnow()
        name = blob_path(project, user, STATUS_BLOB)
        self._put(name, status)
        logging.info(f"[MAILBOX] Published status {status.state} for {user} in {project}")

    def read_status(self, project: str, user: str) -> Optional[InstanceStatus]:
        """None means the instance has never been reported, not an error."""
        name = blob_path(project, user, STATUS_BLOB)
        data = self._get(name)
        if data is None:
            return None
        try:
            return InstanceStatus.model_validate_json(data)
        except ValidationError as e:
            # A half-written or foreign object; callers retry on the next poll
            raise MailboxUnavailable(f"unreadable status for {user}: {e.error_count()} errors") from e

    # --- request channel (student writes, administrator reads) ---

    def submit_start_request(self, project: str, user: str, request: StartRequest):
        name = blob_path(project, user, START_REQUEST_BLOB)
        self._put(name, request)
        logging.info(f"[MAILBOX] Submitted start request for {user} in {project}")

    def list_pending_requests(self, project: str) -> Dict[str, StartRequest]:
        prefix = f"{project}/"
        try:
            names = [b.name for b in self.container.list_blobs(name_starts_with=prefix)]
        except AzureError as e:
            raise MailboxUnavailable(f"failed to list requests for {project}: {e}") from e

        requests = {}
        for name in names:
            parts = name.split("/")
            if len(parts) != 3 or parts[2] != START_REQUEST_BLOB:
                continue
            user = parts[1]
            try:
                data = self._get(name)
                if data is None:
                    continue
                requests[user] = StartRequest.model_validate_json(data)
            except (MailboxUnavailable, ValidationError) as e:
                logging.warning(f"[MAILBOX] Skipping start request {name}: {e}")
        return requests

    def clear_start_request(self, project: str, user: str):
        name = blob_path(project, user, START_REQUEST_BLOB)
        try:
            self.container.delete_blob(name)
        except ResourceNotFoundError:
            return
        except AzureError as e:
            raise MailboxUnavailable(f"failed to clear start request for {user}: {e}") from e
        logging.info(f"[MAILBOX] Cleared start request for {user} in {project}")
