"""Tests for the kubestage CLI."""

import json
from unittest.mock import MagicMock

import pytest
import yaml
from botocore.exceptions import ClientError
from click.testing import CliRunner

from kubestage.cli import main, purge_local
from kubestage.config import load_config
from kubestage.orchestrator import PipelineRun, RunStatus, save_run
from kubestage.remote import RemoteExecutor
from kubestage.store import VariableStore


@pytest.fixture
def home(tmp_path, monkeypatch):
    """KUBESTAGE_HOME with a config.yaml pointing at a scratch project."""
    home = tmp_path / "home"
    project = tmp_path / "project"
    (project / "terraform").mkdir(parents=True)
    home.mkdir()
    (home / "config.yaml").write_text(yaml.safe_dump({
        "project_dir": str(project),
        "kubeconfig_path": str(tmp_path / "kubeconfig"),
        "github_user": "octocat",
        "logging": {"dir": str(tmp_path / "logs"), "console": False},
    }))
    monkeypatch.setenv("KUBESTAGE_HOME", str(home))
    return home


@pytest.fixture
def state(home):
    """A state file as left by a completed pipeline."""
    config = load_config(home / "config.yaml")
    store = VariableStore.open(config.state_path, create=True)
    for key, value in {
        "REGION": "us-east-1",
        "TF_STATE_BUCKET": "retail-store-terraform-state",
        "MASTER_PUBLIC_IP": "3.91.10.20",
        "WORKER1_PUBLIC_IP": "3.91.10.21",
        "WORKER2_PUBLIC_IP": "3.91.10.22",
        "ECR_REGISTRY": "123456789012.dkr.ecr.us-east-1.amazonaws.com",
        "DYNAMODB_TABLE_NAME": "retail-store-cart",
        "APP_URL": "http://3.91.10.20:30080",
        "ARGOCD_URL": "http://3.91.10.20:30090",
        "ARGOCD_ADMIN_PASSWORD": "Xq7-admin-pass",
    }.items():
        store.set(key, value)
    store.persist()
    return config


@pytest.fixture
def backends(monkeypatch, transport, ssh_transport, clock):
    """Replace the executor and AWS client the CLI builds with fakes."""
    cloud = MagicMock()
    monkeypatch.setattr(
        "kubestage.cli.build_executor",
        lambda config, abort_event: RemoteExecutor(
            local=transport, ssh=ssh_transport, abort_event=abort_event, clock=clock, sleep=clock.sleep
        ),
    )
    monkeypatch.setattr("kubestage.cli.build_cloud", lambda config: cloud)
    monkeypatch.setattr("shutil.which", lambda name: f"/usr/bin/{name}")
    return cloud


class TestConfigure:
    """kubestage configure."""

    def test_writes_default_config(self, tmp_path, monkeypatch):
        """A fresh home gets config.yaml and an .env template."""
        home = tmp_path / "home"
        monkeypatch.setenv("KUBESTAGE_HOME", str(home))

        result = CliRunner().invoke(main, ["configure"])

        assert result.exit_code == 0
        data = yaml.safe_load((home / "config.yaml").read_text())
        assert data["region"] == "us-east-1"
        assert data["argocd_nodeport"] == 30090
        assert (home / ".env").exists()

    def test_refuses_to_overwrite(self, home):
        """An existing config is kept unless --force is given."""
        before = (home / "config.yaml").read_text()
        result = CliRunner().invoke(main, ["configure"])
        assert result.exit_code == 2
        assert (home / "config.yaml").read_text() == before

        result = CliRunner().invoke(main, ["configure", "--force"])
        assert result.exit_code == 0
        assert (home / "config.yaml").read_text() != before


class TestConfigErrors:
    """User errors exit with 2."""

    def test_missing_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("KUBESTAGE_HOME", str(tmp_path / "empty"))
        result = CliRunner().invoke(main, ["status"])
        assert result.exit_code == 2

    def test_unknown_config_key(self, home):
        (home / "config.yaml").write_text("regoin: eu-west-1\n")
        result = CliRunner().invoke(main, ["status"])
        assert result.exit_code == 2

    def test_status_before_init(self, home):
        """No state file yet is a user error, not a crash."""
        result = CliRunner().invoke(main, ["status"])
        assert result.exit_code == 2

    def test_resume_and_from_conflict(self, home):
        result = CliRunner().invoke(main, ["up", "--resume", "--from", "deploy"])
        assert result.exit_code == 2
        assert "mutually exclusive" in result.output


class TestUp:
    """Pipeline command."""

    def test_resume_uses_last_up_run(self, state, monkeypatch):
        """A failed teardown after a failed up does not change where up resumes."""
        save_run(PipelineRun("up", status=RunStatus.FAILED, resume_point="deploy"), state.runs_path)
        save_run(PipelineRun("teardown", status=RunStatus.FAILED, resume_point="destroy-gitops"), state.runs_path)
        run_phases = MagicMock(return_value=PipelineRun("up", status=RunStatus.SUCCEEDED))
        monkeypatch.setattr("kubestage.cli._run_phases", run_phases)

        result = CliRunner().invoke(main, ["up", "--resume"])
        assert result.exit_code == 0, result.output
        assert run_phases.call_args.kwargs["resume_from"] == "deploy"
        assert "Resuming from deploy" in result.output


class TestStatus:
    """kubestage status / show."""

    def test_json_masks_secrets(self, state):
        """Secrets are masked unless --show-secrets is given."""
        result = CliRunner().invoke(main, ["status", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["facts"]["MASTER_PUBLIC_IP"] == "3.91.10.20"
        assert data["facts"]["ARGOCD_ADMIN_PASSWORD"] != "Xq7-admin-pass"
        assert data["last_run"] is None

        result = CliRunner().invoke(main, ["status", "--json", "--show-secrets"])
        assert json.loads(result.output)["facts"]["ARGOCD_ADMIN_PASSWORD"] == "Xq7-admin-pass"

    def test_show_alias(self, state):
        result = CliRunner().invoke(main, ["show"])
        assert result.exit_code == 0
        assert "MASTER_PUBLIC_IP" in result.output
        assert "Xq7-admin-pass" not in result.output


class TestUrls:
    """kubestage urls."""

    def test_urls(self, state):
        result = CliRunner().invoke(main, ["urls"])
        assert result.exit_code == 0
        assert "http://3.91.10.20:30080" in result.output
        assert "http://3.91.10.20:30090" in result.output
        assert "admin" in result.output
        assert "Xq7-admin-pass" not in result.output
        assert "retail-store-cart" in result.output

    def test_show_password(self, state):
        result = CliRunner().invoke(main, ["urls", "--show-secrets"])
        assert "Xq7-admin-pass" in result.output


class TestCheck:
    """kubestage check PHASE."""

    def test_unknown_phase(self, state, backends):
        result = CliRunner().invoke(main, ["check", "no-such-phase"])
        assert result.exit_code == 2

    def test_missing_facts(self, state, backends):
        """Unmet requirements exit with 2."""
        result = CliRunner().invoke(main, ["check", "deploy"])
        assert result.exit_code == 2

    def test_before_init(self, home, backends):
        result = CliRunner().invoke(main, ["check", "apply"])
        assert result.exit_code == 2


class TestPhaseCommands:
    """One command per phase."""

    def test_phase_command_runs_phase(self, state, backends):
        """A phase command runs that phase alone and records its facts."""
        table = {"TableStatus": "ACTIVE", "TableArn": "arn:aws:dynamodb:us-east-1:123456789012:table/retail-store-cart"}
        backends.describe_table.side_effect = [None, table]

        result = CliRunner().invoke(main, ["dynamodb"])

        assert result.exit_code == 0
        backends.create_cart_table.assert_called_once_with("retail-store-cart")
        assert VariableStore.load(state.state_path).get("DYNAMODB_TABLE_ARN") == table["TableArn"]

    def test_failed_phase_exits_one(self, state, backends):
        """An AWS error while acting fails the command with exit 1."""
        backends.describe_table.return_value = None
        backends.create_cart_table.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "not authorized"}}, "CreateTable"
        )
        result = CliRunner().invoke(main, ["dynamodb"])
        assert result.exit_code == 1

    def test_every_phase_has_a_command(self):
        for name in ("init", "apply", "start", "cluster-init", "dynamodb", "deploy", "gitops-repo", "gitops-init"):
            assert name in main.commands


class TestTeardown:
    """kubestage teardown confirmations."""

    @pytest.mark.parametrize("answers", ["no\n", "yes\nnope\n", "\n\n"])
    def test_cancelled_without_both_confirmations(self, state, backends, transport, answers):
        """Anything but 'yes' then 'DELETE' deletes nothing and exits 3."""
        result = CliRunner().invoke(main, ["teardown"], input=answers)

        assert result.exit_code == 3
        assert transport.ran("terraform plan -destroy")
        assert not transport.ran("terraform destroy")
        backends.delete_table.assert_not_called()
        backends.delete_bucket.assert_not_called()
        assert state.state_path.exists()

    def test_confirmed_teardown_of_empty_environment(self, state, backends, transport):
        """With everything already gone every phase is skipped."""
        backends.describe_table.return_value = None
        transport.on("terraform state list", stdout="")

        result = CliRunner().invoke(main, ["teardown"], input="yes\nDELETE\n")

        assert result.exit_code == 0
        assert not transport.ran("terraform destroy")
        assert state.state_path.exists()

    def test_purge_local(self, state, backends, transport):
        """--purge-local removes the state file after a successful teardown."""
        backends.describe_table.return_value = None
        transport.on("terraform state list", stdout="")

        result = CliRunner().invoke(main, ["teardown", "--purge-local"], input="yes\nDELETE\n")

        assert result.exit_code == 0
        assert not state.state_path.exists()


def test_purge_local_only_removes_what_exists(state):
    removed = purge_local(state)
    assert removed == [state.state_path]
