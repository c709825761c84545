"""
Data model for publisher provisioning.

Live collections are always keyed by ``PublisherUnit.key``.  ``ordinal`` only
feeds placement and naming; it is never used to address a unit.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone


# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------

# PublisherIdentity.status
PUBLISHER_PENDING = "Pending"
PUBLISHER_CONNECTED = "Connected"
PUBLISHER_DISCONNECTED = "Disconnected"

# ComputeInstance.state
INSTANCE_PENDING = "Pending"
INSTANCE_RUNNING = "Running"
INSTANCE_TERMINATED = "Terminated"

# ComputeInstance.management_state
MANAGEMENT_UNKNOWN = "Unknown"
MANAGEMENT_ONLINE = "Online"

# RegistrationExecution.status
EXEC_IN_PROGRESS = "InProgress"
EXEC_SUCCESS = "Success"
EXEC_FAILED = "Failed"
EXEC_CANCELLED = "Cancelled"
EXEC_TIMED_OUT = "TimedOut"
EXEC_TERMINAL = (EXEC_SUCCESS, EXEC_FAILED, EXEC_CANCELLED, EXEC_TIMED_OUT)

# Unit outcomes reported by the controller.
OUTCOME_PENDING = "Pending"
OUTCOME_CONNECTED = "Connected"
OUTCOME_FAILED = "Failed"
OUTCOME_DESTROYED = "Destroyed"
OUTCOME_UNCHANGED = "Unchanged"

# Pipeline steps, used in failure reports.
STEP_CREATE_PUBLISHER = "CreatePublisher"
STEP_ISSUE_TOKEN = "IssueToken"
STEP_PUT_SECRET = "PutSecret"
STEP_LAUNCH = "Launch"
STEP_WAIT_ONLINE = "WaitOnline"
STEP_REGISTER = "Registration"
STEP_TERMINATE = "Terminate"
STEP_DELETE_PUBLISHER = "DeletePublisher"
STEP_DELETE_SECRET = "DeleteSecret"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PublisherUnit:
    key: str           # stable identity, e.g. "pub-1"
    display_name: str  # name sent to the tenant, e.g. "npa-publisher-2"
    ordinal: int       # 0-based creation order


@dataclass
class PublisherIdentity:
    publisher_id: str
    name: str
    status: str = PUBLISHER_PENDING  # Pending | Connected | Disconnected


@dataclass
class RegistrationToken:
    publisher_id: str
    value: str = field(repr=False)
    consumed: bool = False


@dataclass
class TokenRef:
    """Where a registration token lives, without its value."""

    publisher_id: str
    secret_path: str
    consumed: bool = False


@dataclass
class ComputeInstance:
    instance_id: str
    state: str = INSTANCE_PENDING                  # Pending | Running | Terminated
    management_state: str = MANAGEMENT_UNKNOWN     # Unknown | Online
    subnet_id: str | None = None


@dataclass
class RegistrationExecution:
    execution_id: str
    target_instance_id: str
    token_ref: TokenRef
    status: str = EXEC_IN_PROGRESS
    stdout: str = ""
    stderr: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in EXEC_TERMINAL


# ---------------------------------------------------------------------------
# Persisted unit record
# ---------------------------------------------------------------------------

@dataclass
class UnitRecord:
    """Everything the controller remembers about one unit between runs."""

    key: str
    display_name: str
    ordinal: int
    publisher_id: str | None = None
    token: TokenRef | None = None
    instance_id: str | None = None
    subnet_id: str | None = None
    outcome: str = OUTCOME_PENDING
    step: str | None = None
    reason: str | None = None
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def unit(self) -> PublisherUnit:
        return PublisherUnit(key=self.key, display_name=self.display_name, ordinal=self.ordinal)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "UnitRecord":
        data = dict(data)
        token = data.pop("token", None)
        record = cls(**data)
        if token:
            record.token = TokenRef(**token)
        return record


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@dataclass
class UnitResult:
    key: str
    outcome: str                 # Connected | Failed | Destroyed | Unchanged
    step: str | None = None      # step at which a failure happened
    reason: str | None = None
    diagnostic: str = ""         # remote stdout/stderr or API error body

    @property
    def failed(self) -> bool:
        return self.outcome == OUTCOME_FAILED


@dataclass
class DriftWarning:
    key: str
    message: str


@dataclass
class Plan:
    to_create: dict[str, PublisherUnit] = field(default_factory=dict)
    to_destroy: list[str] = field(default_factory=list)
    to_replace: dict[str, PublisherUnit] = field(default_factory=dict)
    unchanged: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)  # recorded, not Connected; left as-is

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_destroy or self.to_replace)
