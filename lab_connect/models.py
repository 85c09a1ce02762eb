from datetime import date, datetime, time, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import MachineMismatch

Role = Literal["student", "ta", "professor"]

STUDENT_PERMISSIONS = ["connect"]
TA_PERMISSIONS = ["connect", "start", "stop", "status"]
ROLE_PERMISSIONS = {
    "student": STUDENT_PERMISSIONS,
    "ta": TA_PERMISSIONS,
    "professor": TA_PERMISSIONS,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive timestamps from hand-edited files are taken as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MachineFingerprint(BaseModel):
    hash: str
    platform: str
    hostname: str


class AccessWindow(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    normalize_utc = field_validator("start", "end")(_as_utc)


class AccessToken(BaseModel):
    project: str
    username: str
    student_id: str
    role: Role = "student"
    permissions: List[str] = Field(default_factory=lambda: list(STUDENT_PERMISSIONS))
    mailbox_url: str = ""
    fingerprint: Optional[MachineFingerprint] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    access_window: Optional[AccessWindow] = None
    token_hash: str

    normalize_utc = field_validator("created_at", "expires_at")(_as_utc)

    @property
    def bound(self) -> bool:
        return self.fingerprint is not None

    def bind(self, fingerprint: MachineFingerprint):
        """Bind the token to a device. Binding is one-way: a token that is
        already bound to another machine is never rebound."""
        if self.fingerprint is not None and self.fingerprint.hash != fingerprint.hash:
            raise MachineMismatch(
                f"token for {self.username} is already bound to another machine; "
                f"ask your instructor to reissue the token",
            )
        self.fingerprint = fingerprint


class StartRequest(BaseModel):
    username: str
    student_id: str
    token: str  # token hash, never the raw token
    requested_at: datetime = Field(default_factory=utcnow)
    machine_hash: str = ""
    request_ip: Optional[str] = None

    normalize_utc = field_validator("requested_at")(_as_utc)


class InstanceStatus(BaseModel):
    state: str
    address: Optional[str] = None
    last_updated: datetime = Field(default_factory=utcnow)
    start_requested: bool = False
    requested_at: Optional[datetime] = None
    requested_by: Optional[str] = None
    budget_remaining: Optional[float] = None
    access_expires: Optional[datetime] = None

    normalize_utc = field_validator("last_updated", "requested_at", "access_expires")(_as_utc)

    @property
    def ready(self) -> bool:
        return self.state == "running" and bool(self.address)


class ClassConfig(BaseModel):
    """Roster for one class/lab/project, validated once when loaded."""

    kind: Literal["class"] = "class"
    project: str
    mailbox_url: str
    students: List[str] = Field(default_factory=list)
    tas: List[str] = Field(default_factory=list)
    professor: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(extra="forbid")

    def access_window(self) -> Optional[AccessWindow]:
        if self.start_date is None and self.end_date is None:
            return None
        start = end = None
        if self.start_date is not None:
            start = datetime.combine(self.start_date, time.min, tzinfo=timezone.utc)
        if self.end_date is not None:
            end = datetime.combine(self.end_date, time.max, tzinfo=timezone.utc)
        return AccessWindow(start=start, end=end)
