"""Tests for preflight requirement checks."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, NoCredentialsError

from kubestage.errors import PreflightFailure
from kubestage.preflight import (
    AwsCredentials,
    CheckStatus,
    Facts,
    LocalDirectory,
    LocalFile,
    PreflightChecker,
    Setting,
    Tool,
)


def _checker(store=None, cloud=None, found=("kubectl", "helm")):
    return PreflightChecker(
        store if store is not None else {},
        cloud,
        which=lambda name: f"/usr/bin/{name}" if name in found else None,
    )


class TestTool:
    """Executables on PATH."""

    def test_found(self):
        """A tool on PATH is satisfied with its path as detail."""
        result = _checker().check(Tool("kubectl"))
        assert result.ok
        assert result.detail == "/usr/bin/kubectl"

    def test_missing_has_install_hint(self):
        """Known tools come with an install hint."""
        result = _checker().check(Tool("terraform"))
        assert result.status == CheckStatus.MISSING
        assert "terraform" in result.hint.lower()


class TestAwsCredentials:
    """STS caller identity."""

    def test_satisfied(self):
        """Working credentials report the caller ARN."""
        cloud = MagicMock()
        cloud.identity.return_value = {"Arn": "arn:aws:iam::123:user/dev"}
        result = _checker(cloud=cloud).check(AwsCredentials())
        assert result.ok
        assert result.detail == "arn:aws:iam::123:user/dev"

    def test_no_credentials_is_missing(self):
        """No credentials at all is MISSING."""
        cloud = MagicMock()
        cloud.identity.side_effect = NoCredentialsError()
        assert _checker(cloud=cloud).check(AwsCredentials()).status == CheckStatus.MISSING

    def test_rejected_credentials_are_misconfigured(self):
        """Expired or invalid credentials are MISCONFIGURED."""
        cloud = MagicMock()
        cloud.identity.side_effect = ClientError(
            {"Error": {"Code": "ExpiredToken", "Message": "expired"}}, "GetCallerIdentity"
        )
        result = _checker(cloud=cloud).check(AwsCredentials())
        assert result.status == CheckStatus.MISCONFIGURED
        assert "ExpiredToken" in result.detail


class TestFacts:
    """Keys written by earlier phases."""

    def test_all_present(self):
        """Present keys are satisfied."""
        store = {"MASTER_PUBLIC_IP": "1.2.3.4", "KUBECONFIG_PATH": "/k"}
        assert _checker(store).check(Facts("MASTER_PUBLIC_IP", "KUBECONFIG_PATH")).ok

    def test_first_missing_key_named(self):
        """The missing key is named and the producing phase suggested."""
        result = _checker({"A": "1"}).check(Facts("A", "K8S_API_ENDPOINT", produced_by="cluster-init"))
        assert result.status == CheckStatus.MISSING
        assert result.name == "K8S_API_ENDPOINT"
        assert result.hint == "Run 'kubestage cluster-init' first"

    def test_empty_value_counts_as_missing(self):
        """An empty value is not a recorded fact."""
        assert not _checker({"A": ""}).check(Facts("A")).ok


class TestLocalPaths:
    """Local files and directories."""

    def test_file(self, tmp_path):
        """Files must exist and be regular files."""
        key = tmp_path / "key"
        assert _checker().check(LocalFile(key)).status == CheckStatus.MISSING
        key.write_text("k")
        assert _checker().check(LocalFile(key)).ok
        assert _checker().check(LocalFile(tmp_path)).status == CheckStatus.MISCONFIGURED

    def test_directory(self, tmp_path):
        """Directories must exist and be directories."""
        assert _checker().check(LocalDirectory(tmp_path)).ok
        assert _checker().check(LocalDirectory(tmp_path / "nope")).status == CheckStatus.MISSING

    def test_setting(self):
        """Unset configuration values are MISCONFIGURED."""
        assert _checker().check(Setting("github_user", None)).status == CheckStatus.MISCONFIGURED
        assert _checker().check(Setting("github_user", "octocat")).ok


class TestChecker:
    """evaluate() and verify()."""

    def test_evaluate_returns_every_result(self):
        """evaluate() does not stop at the first failure."""
        results = _checker().evaluate([Tool("terraform"), Tool("kubectl"), Tool("gh")])
        assert [r.ok for r in results] == [False, True, False]

    def test_verify_stops_at_first_failure(self):
        """verify() raises for the first unmet requirement and checks nothing after it."""
        cloud = MagicMock()
        with pytest.raises(PreflightFailure) as exc_info:
            _checker(cloud=cloud).verify([Tool("kubectl"), Tool("terraform"), AwsCredentials()])
        assert exc_info.value.result.name == "terraform"
        cloud.identity.assert_not_called()

    def test_verify_passes(self):
        """verify() returns quietly when everything is satisfied."""
        _checker().verify([Tool("kubectl"), Tool("helm")])
