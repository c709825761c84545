"""
Tests for the npa-provisioner command line — argument parsing, dispatch and
exit codes.  The controller is replaced with a MagicMock.
"""

from __future__ import annotations

import os
import sys
import textwrap
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import npa_provisioner
from provisioner.config import load_config
from provisioner.controller import ReconcileReport, build_controller
from provisioner.errors import ConfigError, StateLockError, TenantError
from provisioner.models import OUTCOME_CONNECTED, OUTCOME_FAILED, Plan, UnitResult
from provisioner.state import StateLock


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "publishers.yaml"
    path.write_text(textwrap.dedent(f"""
        publishers:
          base_name: npa
          count: 2
        aws:
          subnet_ids: [subnet-a]
        state_dir: {tmp_path / "state"}
    """))
    return path


@pytest.fixture(autouse=True)
def _no_signal_handlers():
    with patch("npa_provisioner._install_signal_handlers"):
        yield


def _run(config_file, *args, controller=None):
    with patch("provisioner.controller.build_controller", return_value=controller or MagicMock()) as build:
        code = npa_provisioner.main(["--config", str(config_file), *args])
    return code, build


# =========================================================================
# Tests: argument parsing
# =========================================================================

class TestParseArgs:

    def test_config_flag_forms(self):
        assert npa_provisioner._parse_args(["--config", "a.yaml", "plan"]) == ("a.yaml", "plan", [])
        assert npa_provisioner._parse_args(["apply", "--config=b.yaml"]) == ("b.yaml", "apply", [])

    def test_config_from_environment(self, monkeypatch):
        monkeypatch.setenv("NPA_CONFIG", "env.yaml")
        assert npa_provisioner._parse_args(["status"])[0] == "env.yaml"

    def test_replace_keys(self):
        assert npa_provisioner._parse_args(["replace", "pub-1", "pub-2"])[2] == ["pub-1", "pub-2"]

    def test_unknown_command(self):
        with pytest.raises(ConfigError):
            npa_provisioner._parse_args(["launch"])

    def test_no_command(self):
        with pytest.raises(ConfigError):
            npa_provisioner._parse_args([])


# =========================================================================
# Tests: dispatch and exit codes
# =========================================================================

class TestMain:

    def test_usage_error(self, config_file):
        assert npa_provisioner.main(["--config", str(config_file), "bogus"]) == 2

    def test_missing_config(self, tmp_path):
        assert npa_provisioner.main(["--config", str(tmp_path / "none.yaml"), "plan"]) == 2

    def test_plan(self, config_file):
        controller = MagicMock()
        controller.plan.return_value = Plan()
        code, _ = _run(config_file, "plan", controller=controller)
        assert code == 0
        controller.plan.assert_called_once_with()

    def test_apply_success(self, config_file):
        controller = MagicMock()
        controller.reconcile.return_value = ReconcileReport(
            plan=Plan(), results={"pub-1": UnitResult(key="pub-1", outcome=OUTCOME_CONNECTED)},
        )
        code, _ = _run(config_file, "apply", controller=controller)
        assert code == 0

    def test_apply_with_failed_unit(self, config_file, capsys):
        controller = MagicMock()
        controller.reconcile.return_value = ReconcileReport(plan=Plan(), results={
            "pub-1": UnitResult(key="pub-1", outcome=OUTCOME_CONNECTED),
            "pub-2": UnitResult(key="pub-2", outcome=OUTCOME_FAILED, step="WaitOnline",
                                reason="TimedOut: no heartbeat"),
        })
        code, _ = _run(config_file, "apply", controller=controller)
        assert code == 1
        assert "WaitOnline" in capsys.readouterr().err

    def test_replace_requires_keys(self, config_file):
        code, build = _run(config_file, "replace")
        assert code == 2
        build.assert_not_called()

    def test_replace_passes_keys(self, config_file):
        controller = MagicMock()
        controller.replace_units.return_value = ReconcileReport(plan=Plan(), results={})
        code, _ = _run(config_file, "replace", "pub-2", controller=controller)
        assert code == 0
        controller.replace_units.assert_called_once_with(["pub-2"])

    def test_locked_state_is_usage_error(self, config_file):
        controller = MagicMock()
        controller.reconcile.side_effect = StateLockError("state is locked by someone")
        code, _ = _run(config_file, "apply", controller=controller)
        assert code == 2

    def test_tenant_error_exits_one(self, config_file):
        controller = MagicMock()
        controller.destroy_all.side_effect = TenantError("tenant down")
        code, _ = _run(config_file, "destroy", controller=controller)
        assert code == 1

    def test_status(self, config_file, capsys):
        controller = MagicMock()
        controller.status.return_value = ([], [])
        code, _ = _run(config_file, "status", controller=controller)
        assert code == 0
        assert "No publishers recorded" in capsys.readouterr().err


class TestPlanIsReadOnly:

    def test_plan_creates_nothing_in_aws(self, config_file):
        session = MagicMock()
        with patch("connectors.aws.build_session", return_value=session), \
                patch("connectors.netskope.TenantClient"):
            code = npa_provisioner.main(["--config", str(config_file), "plan"])

        assert code == 0
        ssm = session.client.return_value
        ssm.create_document.assert_not_called()
        ssm.describe_document.assert_not_called()
        ssm.send_command.assert_not_called()
        session.client.return_value.run_instances.assert_not_called()

    def test_registration_document_deferred_to_apply(self, config_file):
        session = MagicMock()
        with patch("connectors.aws.build_session", return_value=session), \
                patch("connectors.netskope.TenantClient"):
            controller = build_controller(load_config(config_file))

        ssm = session.client.return_value
        ssm.describe_document.assert_not_called()
        controller.before_apply()
        ssm.describe_document.assert_called_once_with(Name="NPA-RegisterPublisher")


class TestUnlock:

    def test_unlock_when_not_locked(self, config_file):
        assert npa_provisioner.main(["--config", str(config_file), "unlock"]) == 0

    def test_unlock_shows_holder(self, config_file, tmp_path, capsys):
        StateLock(tmp_path / "state", timeout=0).acquire()
        assert npa_provisioner.main(["--config", str(config_file), "unlock"]) == 2
        assert "npa-provisioner unlock" in capsys.readouterr().err

    def test_unlock_with_id(self, config_file, tmp_path):
        lock_id = StateLock(tmp_path / "state", timeout=0).acquire()
        assert npa_provisioner.main(["--config", str(config_file), "unlock", lock_id]) == 0
        assert not (tmp_path / "state" / "state.lock").exists()
