"""
Tests for provisioner.registration — single-use enforcement, one command per
attempt, status mapping, redaction and diagnostics.
"""

from __future__ import annotations

import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from provisioner.errors import (
    ProvisionerError,
    RegistrationFailed,
    SecretAccessDenied,
    TokenConsumedError,
)
from provisioner.models import TokenRef
from provisioner.polling import Waiter
from provisioner.registration import (
    MAX_OUTPUT_CHARS,
    REDACTED,
    RegistrationExecutor,
    normalize_status,
    redact,
)

TOKEN = "s3cr3t-token-value"


# =========================================================================
# Helpers
# =========================================================================

def _make_executor(statuses=None, stdout="", stderr=""):
    """Executor wired to mock secrets/remote.  *statuses* feeds successive polls."""
    secrets = MagicMock()
    secrets.get_secret.return_value = TOKEN
    remote = MagicMock()
    remote.send_command.return_value = "cmd-1"
    results = []
    for status in statuses or ["Success"]:
        results.append(None if status is None else {"status": status, "stdout": stdout, "stderr": stderr})
    remote.get_command_status.side_effect = results
    sleeps = []
    executor = RegistrationExecutor(secrets, remote, document_name="Doc", waiter=Waiter(sleep=sleeps.append))
    return executor, secrets, remote, sleeps


def _ref(consumed=False):
    return TokenRef(publisher_id="42", secret_path="/npa/publishers/p/registration-token", consumed=consumed)


# =========================================================================
# Tests: start_registration
# =========================================================================

class TestStartRegistration:

    def test_consumed_token_rejected_before_any_call(self):
        executor, secrets, remote, _ = _make_executor()
        with pytest.raises(TokenConsumedError):
            executor.start_registration("i-1", _ref(consumed=True))
        secrets.get_secret.assert_not_called()
        remote.send_command.assert_not_called()

    def test_resolves_and_sends_exactly_once(self):
        executor, secrets, remote, _ = _make_executor()
        execution_id = executor.start_registration("i-1", _ref())

        assert execution_id == "cmd-1"
        secrets.get_secret.assert_called_once_with("/npa/publishers/p/registration-token", decrypt=True)
        remote.send_command.assert_called_once_with("i-1", "Doc", {"token": [TOKEN]})

    def test_second_start_while_in_progress_rejected(self):
        executor, _, remote, _ = _make_executor()
        executor.start_registration("i-1", _ref())
        with pytest.raises(ProvisionerError):
            executor.start_registration("i-1", _ref())
        assert remote.send_command.call_count == 1

    def test_access_denied_propagates(self):
        executor, secrets, remote, _ = _make_executor()
        secrets.get_secret.side_effect = SecretAccessDenied("nope")
        with pytest.raises(SecretAccessDenied):
            executor.start_registration("i-1", _ref())
        remote.send_command.assert_not_called()


# =========================================================================
# Tests: poll_execution
# =========================================================================

class TestPollExecution:

    def test_success_marks_token_consumed(self):
        executor, _, _, _ = _make_executor(["InProgress", "Success"])
        ref = _ref()
        execution_id = executor.start_registration("i-1", ref)

        status = executor.poll_execution(execution_id, 10, 5)

        assert status == "Success"
        assert ref.consumed is True

    def test_invocation_not_visible_yet_keeps_polling(self):
        executor, _, _, sleeps = _make_executor([None, "Pending", "Success"])
        execution_id = executor.start_registration("i-1", _ref())
        assert executor.poll_execution(execution_id, 10, 5) == "Success"
        assert sleeps == [10, 10]

    def test_attempt_ceiling_times_out_and_cancels(self):
        executor, _, remote, _ = _make_executor(["InProgress"] * 3)
        ref = _ref()
        execution_id = executor.start_registration("i-1", ref)

        status = executor.poll_execution(execution_id, 10, 3)

        assert status == "TimedOut"
        remote.cancel_command.assert_called_once_with("cmd-1", "i-1")
        assert ref.consumed is False

    def test_new_attempt_allowed_after_terminal(self):
        executor, _, remote, _ = _make_executor(["Failed"])
        execution_id = executor.start_registration("i-1", _ref())
        executor.poll_execution(execution_id, 10, 3)

        remote.send_command.return_value = "cmd-2"
        assert executor.start_registration("i-1", _ref()) == "cmd-2"

    def test_output_is_redacted(self):
        executor, _, _, _ = _make_executor(["Failed"], stdout=f"using token {TOKEN}", stderr=f"bad {TOKEN}")
        execution_id = executor.start_registration("i-1", _ref())
        executor.poll_execution(execution_id, 10, 3)

        execution = executor.get(execution_id)
        assert TOKEN not in execution.stdout
        assert TOKEN not in execution.stderr
        assert REDACTED in execution.stdout


# =========================================================================
# Tests: register (start + poll)
# =========================================================================

class TestRegister:

    def test_failure_raises_with_output(self):
        executor, _, _, _ = _make_executor(["Failed"], stdout="wizard started", stderr="cannot reach tenant")
        with pytest.raises(RegistrationFailed) as exc_info:
            executor.register("i-1", _ref(), 10, 3)
        assert exc_info.value.status == "Failed"
        assert exc_info.value.stderr == "cannot reach tenant"
        assert exc_info.value.stdout == "wizard started"

    def test_cancelled_command_is_failure(self):
        executor, _, _, _ = _make_executor(["Cancelled"])
        with pytest.raises(RegistrationFailed) as exc_info:
            executor.register("i-1", _ref(), 10, 3)
        assert exc_info.value.status == "Cancelled"

    def test_rejected_token_is_single_use_violation(self):
        executor, _, _, _ = _make_executor(["Failed"], stderr="Token has already been used")
        ref = _ref()
        with pytest.raises(TokenConsumedError):
            executor.register("i-1", ref, 10, 3)
        assert ref.consumed is True

    def test_success_returns_execution(self):
        executor, _, _, _ = _make_executor(["Success"], stdout="Publisher registered")
        execution = executor.register("i-1", _ref(), 10, 3)
        assert execution.status == "Success"
        assert execution.stdout == "Publisher registered"

    def test_retry_with_consumed_token_fails_fast(self):
        executor, _, remote, _ = _make_executor(["Success"])
        ref = _ref()
        executor.register("i-1", ref, 10, 3)
        with pytest.raises(TokenConsumedError):
            executor.register("i-1", ref, 10, 3)
        assert remote.send_command.call_count == 1


# =========================================================================
# Tests: helpers
# =========================================================================

class TestHelpers:

    @pytest.mark.parametrize("remote, expected", [
        ("Pending", "InProgress"),
        ("Delayed", "InProgress"),
        ("Success", "Success"),
        ("Cancelling", "Cancelled"),
        ("TimedOut", "TimedOut"),
        ("Undeliverable", "Failed"),
        (None, "InProgress"),
    ])
    def test_normalize_status(self, remote, expected):
        assert normalize_status(remote) == expected

    def test_redact_truncates_tail(self):
        text = "x" * (MAX_OUTPUT_CHARS + 100) + "END"
        out = redact(text, None)
        assert len(out) == MAX_OUTPUT_CHARS
        assert out.endswith("END")
