"""
Registration executor — binds a running instance to its tenant identity.

The token is resolved server-side with the executor's own credentials and
handed to a single remote command as a document parameter.  It is never part
of the instance's user data, tags, or anything the instance itself can read
back from the metadata service.

Lifecycle of one attempt::

    Created -> InProgress -> Success | Failed | Cancelled | TimedOut
"""

from __future__ import annotations

import logging
import re
import threading

from provisioner.errors import (
    OperationCancelled,
    PollTimeout,
    ProvisionerError,
    RegistrationFailed,
    TokenConsumedError,
)
from provisioner.models import (
    EXEC_CANCELLED,
    EXEC_FAILED,
    EXEC_IN_PROGRESS,
    EXEC_SUCCESS,
    EXEC_TIMED_OUT,
    RegistrationExecution,
    TokenRef,
)
from provisioner.polling import Waiter, poll_until

logger = logging.getLogger(__name__)

DEFAULT_DOCUMENT_NAME = "NPA-RegisterPublisher"
DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_MAX_ATTEMPTS = 60

MAX_OUTPUT_CHARS = 4000
REDACTED = "***REDACTED***"

# Remote-execution statuses -> execution status.  Anything unlisted that is
# not in progress counts as a failure (Undeliverable, Terminated, ...).
_STATUS_MAP = {
    "Pending": EXEC_IN_PROGRESS,
    "InProgress": EXEC_IN_PROGRESS,
    "Delayed": EXEC_IN_PROGRESS,
    "Success": EXEC_SUCCESS,
    "Failed": EXEC_FAILED,
    "Cancelled": EXEC_CANCELLED,
    "Cancelling": EXEC_CANCELLED,
    "TimedOut": EXEC_TIMED_OUT,
}

_CONSUMED_PATTERN = re.compile(
    r"token\s+(has\s+)?(already\s+been\s+used|already\s+used|been\s+consumed|already\s+consumed)"
    r"|publisher\s+(is\s+)?already\s+registered",
    re.IGNORECASE,
)


def normalize_status(remote_status: str | None) -> str:
    if remote_status is None:
        return EXEC_IN_PROGRESS
    return _STATUS_MAP.get(remote_status, EXEC_FAILED)


def redact(text: str | None, secret: str | None) -> str:
    """Strip *secret* from *text* and keep the last ``MAX_OUTPUT_CHARS``."""
    out = text or ""
    if secret:
        out = out.replace(secret, REDACTED)
    return out[-MAX_OUTPUT_CHARS:]


def looks_like_consumed_token(execution: RegistrationExecution) -> bool:
    return bool(_CONSUMED_PATTERN.search(f"{execution.stdout}\n{execution.stderr}"))


class RegistrationExecutor:
    """Runs the registration command on a target instance.

    Parameters
    ----------
    secrets:
        Secret store bound to the executor's own (elevated) identity.
    remote:
        Remote-execution client with ``send_command``, ``get_command_status``
        and ``cancel_command`` (see ``connectors.aws.ManagementPlane``).
    """

    def __init__(
        self,
        secrets,
        remote,
        document_name: str = DEFAULT_DOCUMENT_NAME,
        waiter: Waiter | None = None,
    ) -> None:
        self._secrets = secrets
        self._remote = remote
        self.document_name = document_name
        self._waiter = waiter or Waiter()

        self._lock = threading.Lock()
        self._executions: dict[str, RegistrationExecution] = {}
        self._active: dict[str, str] = {}  # instance_id -> execution_id
        self._secret_values: dict[str, str] = {}  # execution_id -> token, for redaction only

    def get(self, execution_id: str) -> RegistrationExecution:
        return self._executions[execution_id]

    # ------------------------------------------------------------------
    # StartRegistration
    # ------------------------------------------------------------------

    def start_registration(self, instance_id: str, token_ref: TokenRef) -> str:
        """Resolve the token and send exactly one registration command."""
        if token_ref.consumed:
            raise TokenConsumedError(
                f"registration token for publisher {token_ref.publisher_id} was already used; "
                "issue a new publisher identity and token"
            )

        with self._lock:
            active = self._active.get(instance_id)
            if active and not self._executions[active].is_terminal:
                raise ProvisionerError(
                    f"registration {active} is still in progress on {instance_id}"
                )

        token = self._secrets.get_secret(token_ref.secret_path, decrypt=True)
        command_id = self._remote.send_command(
            instance_id, self.document_name, {"token": [token]},
        )

        execution = RegistrationExecution(
            execution_id=command_id,
            target_instance_id=instance_id,
            token_ref=token_ref,
        )
        with self._lock:
            self._executions[command_id] = execution
            self._active[instance_id] = command_id
            self._secret_values[command_id] = token

        logger.info("Registration %s started on %s", command_id, instance_id)
        return command_id

    # ------------------------------------------------------------------
    # PollExecution
    # ------------------------------------------------------------------

    def _observe(self, execution: RegistrationExecution) -> RegistrationExecution:
        secret = self._secret_values.get(execution.execution_id)
        result = self._remote.get_command_status(execution.execution_id, execution.target_instance_id)
        if result is None:
            # Invocation not visible yet.
            return execution
        execution.status = normalize_status(result.get("status"))
        execution.stdout = redact(result.get("stdout"), secret)
        execution.stderr = redact(result.get("stderr"), secret)
        return execution

    def _finish(self, execution: RegistrationExecution) -> None:
        with self._lock:
            self._secret_values.pop(execution.execution_id, None)
            if self._active.get(execution.target_instance_id) == execution.execution_id:
                del self._active[execution.target_instance_id]
        if execution.status == EXEC_SUCCESS:
            execution.token_ref.consumed = True

    def poll_execution(
        self,
        execution_id: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> str:
        """Poll until the execution is terminal; returns its status.

        Hitting the attempt ceiling marks the execution ``TimedOut`` and asks
        the remote side to cancel the command.  A cancel-event abort leaves
        the execution in its last observed state.
        """
        execution = self._executions[execution_id]
        try:
            poll_until(
                lambda: self._observe(execution),
                lambda ex: ex.is_terminal,
                interval=poll_interval,
                max_attempts=max_attempts,
                waiter=self._waiter,
                description=f"registration {execution_id}",
            )
        except PollTimeout:
            execution.status = EXEC_TIMED_OUT
            try:
                self._remote.cancel_command(execution_id, execution.target_instance_id)
            except ProvisionerError as exc:
                logger.warning("Could not cancel timed-out command %s: %s", execution_id, exc)
        except OperationCancelled:
            logger.warning("Polling of %s cancelled in state %s", execution_id, execution.status)
            raise

        self._finish(execution)
        logger.info("Registration %s finished: %s", execution_id, execution.status)
        return execution.status

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    def register(
        self,
        instance_id: str,
        token_ref: TokenRef,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> RegistrationExecution:
        """Start one attempt and wait for it; raise unless it succeeded."""
        execution_id = self.start_registration(instance_id, token_ref)
        status = self.poll_execution(execution_id, poll_interval, max_attempts)
        execution = self._executions[execution_id]
        if status == EXEC_SUCCESS:
            return execution

        if status == EXEC_FAILED and looks_like_consumed_token(execution):
            # The tenant rejected the token as used; it cannot be retried.
            token_ref.consumed = True
            raise TokenConsumedError(
                f"publisher {token_ref.publisher_id} rejected its token as already used: "
                f"{execution.stderr or execution.stdout}"
            )
        raise RegistrationFailed(
            f"registration on {instance_id} ended {status}",
            status=status,
            stdout=execution.stdout,
            stderr=execution.stderr,
        )
