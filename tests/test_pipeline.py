"""
Tests for the release pipeline.
"""

import json
import subprocess
from unittest.mock import Mock, patch

import pytest
import requests

from tagship import terraform
from tagship.config import ReleaseConfig
from tagship.errors import BuildError, ConvergenceError
from tagship.events import read_events
from tagship.pipeline import public_entry_point, release, resolve_repository_uri
from tagship.state import read_history, read_outputs_json
from tagship.status import PipelineStage, StatusDeriver

REPO = "123456789012.dkr.ecr.us-east-1.amazonaws.com/app"
OUTPUTS = {
    "public_url": "http://app-alb.us-east-1.elb.amazonaws.com",
    "cluster_name": "app-cluster",
    "service_name": "app-service",
    "task_definition_arn": "arn:aws:ecs:us-east-1:123456789012:task-definition/app:7",
}


def _healthy():
    response = Mock(status_code=200)
    response.json.return_value = {"status": "ok"}
    return response


def _unhealthy():
    response = Mock(status_code=503)
    response.json.return_value = {}
    return response


@pytest.fixture
def config(tmp_path):
    return ReleaseConfig(
        repository_uri=REPO, verify_attempts=3, verify_interval=5, terraform_dir=str(tmp_path)
    )


@pytest.fixture(autouse=True)
def prepare_workdir():
    with patch("tagship.pipeline.prepare_workdir", side_effect=lambda release_id, workdir, backend: workdir) as mock_prepare:
        yield mock_prepare


@pytest.fixture
def publish():
    with patch("tagship.pipeline.publish") as mock_publish:
        mock_publish.side_effect = lambda release_id, repo, tags, region, **kw: [f"{repo}:{t}" for t in tags]
        yield mock_publish


@pytest.fixture
def converge():
    with patch("tagship.pipeline.converge") as mock_converge:
        mock_converge.return_value = {
            "plan": {"adds": 0, "changes": 1, "destroys": 0, "changes_pending": True},
            "outputs": dict(OUTPUTS),
        }
        yield mock_converge


def _types(release_id):
    return [e["type"] for e in read_events(release_id)]


class TestReleaseSucceeded:

    def test_full_pipeline(self, tagship_home, config, publish, converge):
        sleep = Mock()
        with patch("tagship.verify.requests.get", side_effect=[_unhealthy(), _healthy()]):
            result = release("v1.2.0", "0123456789abcdef", config=config, sleep=sleep)

        assert result["status"] == "succeeded"
        assert result["image_uri"] == f"{REPO}:v1.2.0"
        assert result["verify_attempts"] == 2
        sleep.assert_called_once_with(5)

        publish.assert_called_once()
        assert publish.call_args.args[2] == ["v1.2.0", "0123456", "latest"]

        tfvars = converge.call_args.args[2]
        assert tfvars["image_uri"] == f"{REPO}:v1.2.0"
        assert tfvars["tags"] == {"project": "tagship", "managed_by": "terraform"}

        release_id = result["release_id"]
        types = _types(release_id)
        assert types[0] == "RELEASE_START"
        assert types.count("VERIFY_ATTEMPT") == 2
        assert types[-2:] == ["VERIFY_OK", "DONE"]
        assert read_outputs_json(release_id) == OUTPUTS

        info = StatusDeriver().derive_status(read_events(release_id))
        assert info.stage == PipelineStage.SUCCEEDED

    def test_success_is_recorded_in_history(self, tagship_home, config, publish, converge):
        with patch("tagship.verify.requests.get", return_value=_healthy()):
            result = release("v1.2.0", "0123456789abcdef", config=config, sleep=Mock())

        history = read_history()
        assert len(history) == 1
        assert history[0]["release_id"] == result["release_id"]
        assert history[0]["task_definition_arn"] == OUTPUTS["task_definition_arn"]

    def test_skip_build_redeploys_existing_image(self, tagship_home, config, publish, converge):
        with patch("tagship.verify.requests.get", return_value=_healthy()):
            result = release("v1.1.0", config=config, skip_build=True, sleep=Mock())

        publish.assert_not_called()
        assert result["status"] == "succeeded"
        assert converge.call_args.args[2]["image_uri"] == f"{REPO}:v1.1.0"


class TestReleaseFailed:

    def test_verification_budget_exhausted(self, tagship_home, config, publish, converge):
        sleep = Mock()
        with patch("tagship.verify.requests.get", side_effect=requests.exceptions.ConnectionError("refused")) as get:
            result = release("v1.2.0", "0123456789abcdef", config=config, sleep=sleep)

        assert result["status"] == "failed"
        assert result["category"] == "verification"
        assert get.call_count == 3
        assert sleep.call_count == 2
        assert any("rollback" in line for line in result["rollback_guidance"])
        assert read_history() == []

        types = _types(result["release_id"])
        assert types[-2:] == ["VERIFY_FAIL", "ERROR"]
        assert "DONE" not in types

        info = StatusDeriver().derive_status(read_events(result["release_id"]))
        assert info.stage == PipelineStage.FAILED
        assert info.failure_category == "verification"

    def test_failed_release_offers_previous_release(self, tagship_home, config, publish, converge):
        with patch("tagship.verify.requests.get", return_value=_healthy()):
            release("v1.0.0", "aaaaaaa1", config=config, sleep=Mock())
        with patch("tagship.verify.requests.get", return_value=_unhealthy()):
            result = release("v1.1.0", "bbbbbbb2", config=config, sleep=Mock())

        guidance = "\n".join(result["rollback_guidance"])
        assert "tagship rollback --tag v1.0.0" in guidance
        assert OUTPUTS["task_definition_arn"] in guidance
        assert "app-cluster" in guidance

    def test_build_failure_halts_before_convergence(self, tagship_home, config, publish, converge):
        publish.side_effect = BuildError("Command failed: docker build", last_lines=["no space left"])

        result = release("v1.2.0", "0123456789abcdef", config=config, sleep=Mock())

        assert result["status"] == "failed"
        assert result["category"] == "build"
        assert result["last_lines"] == ["no space left"]
        converge.assert_not_called()

        error = read_events(result["release_id"])[-1]
        assert error["type"] == "ERROR"
        assert error["data"]["category"] == "build"

    def test_convergence_failure_halts_before_verification(self, tagship_home, config, publish, converge):
        converge.side_effect = ConvergenceError("Terraform command failed: terraform apply")

        with patch("tagship.verify.requests.get") as get:
            result = release("v1.2.0", "0123456789abcdef", config=config, sleep=Mock())

        assert result["category"] == "convergence"
        get.assert_not_called()
        assert "VERIFY_ATTEMPT" not in _types(result["release_id"])

    def test_no_automatic_rollback(self, tagship_home, config, publish, converge):
        with patch("tagship.verify.requests.get", return_value=_unhealthy()), \
                patch("tagship.rollback.rollback_to_revision") as rollback:
            release("v1.2.0", "0123456789abcdef", config=config, sleep=Mock())

        rollback.assert_not_called()
        assert converge.call_count == 1


class TestBackendInitialisation:

    def test_init_runs_before_repository_lookup(self, tagship_home, tmp_path, publish, converge):
        config = ReleaseConfig(verify_attempts=1, terraform_dir=str(tmp_path), backend_config="backend.hcl")
        calls = []

        def fake_popen(command, **kwargs):
            calls.append(command[:2])
            process = Mock(returncode=0)
            process.stdout = iter(["Terraform has been successfully initialized!\n"])
            return process

        def fake_run(command, **kwargs):
            calls.append(command[:2])
            stdout = json.dumps({"ecr_repository_url": {"value": REPO}})
            return subprocess.CompletedProcess(args=command, returncode=0, stdout=stdout, stderr="")

        with patch("tagship.pipeline.prepare_workdir", terraform.prepare_workdir), \
                patch("tagship.terraform.subprocess.Popen", side_effect=fake_popen), \
                patch("tagship.terraform.subprocess.run", side_effect=fake_run), \
                patch("tagship.verify.requests.get", return_value=_healthy()):
            result = release("v1.0.0", "abcdef1234", config=config, sleep=Mock())

        assert calls == [["terraform", "init"], ["terraform", "output"]]
        assert result["status"] == "succeeded"
        assert publish.call_args.args[1] == REPO
        assert converge.call_args.kwargs["initialized"] is True

    def test_init_failure_is_a_convergence_failure(self, tagship_home, config, prepare_workdir, publish, converge):
        prepare_workdir.side_effect = ConvergenceError("Terraform command failed: terraform init -no-color")

        result = release("v1.0.0", "abcdef1234", config=config, sleep=Mock())

        assert result["status"] == "failed"
        assert result["category"] == "convergence"
        publish.assert_not_called()
        converge.assert_not_called()


class TestIdempotentInputs:

    def test_unchanged_configuration_yields_identical_tfvars(self, tagship_home, config, publish, converge):
        with patch("tagship.verify.requests.get", return_value=_healthy()):
            first = release("v1.0.0", "abcdef1234", config=config, sleep=Mock())
            second = release("v1.0.0", "abcdef1234", config=config, sleep=Mock())

        assert first["release_id"] != second["release_id"]
        first_tfvars, second_tfvars = (c.args[2] for c in converge.call_args_list)
        assert first_tfvars == second_tfvars


class TestUnexpectedFailure:

    def test_unexpected_error_fails_the_release(self, tagship_home, config, publish, converge):
        publish.side_effect = KeyError("authorizationData")

        result = release("v1.2.0", "0123456789abcdef", config=config, sleep=Mock())

        assert result["status"] == "failed"
        assert result["category"] == "internal"
        assert "KeyError" in result["error"]
        converge.assert_not_called()

        error = read_events(result["release_id"])[-1]
        assert error["type"] == "ERROR"
        assert error["data"]["category"] == "internal"

    def test_invalid_budget_on_direct_config(self, tagship_home, tmp_path, publish, converge):
        config = ReleaseConfig(repository_uri=REPO, verify_attempts=0, terraform_dir=str(tmp_path))

        with patch("tagship.verify.requests.get") as get:
            result = release("v1.2.0", "0123456789abcdef", config=config, sleep=Mock())

        get.assert_not_called()
        assert result["status"] == "failed"
        assert result["category"] == "internal"

        info = StatusDeriver().derive_status(read_events(result["release_id"]))
        assert info.stage == PipelineStage.FAILED
        assert read_history() == []


class TestValidation:

    def test_invalid_tag(self, tagship_home, config):
        with pytest.raises(ValueError):
            release("release-1", "0123456", config=config)

    def test_commit_required_to_build(self, tagship_home, config):
        with pytest.raises(ValueError):
            release("v1.0.0", config=config)


class TestHelpers:

    def test_repository_from_outputs(self, tmp_path):
        config = ReleaseConfig(terraform_dir=str(tmp_path))
        with patch("tagship.pipeline.get_terraform_outputs", return_value={"ecr_repository_url": REPO}):
            assert resolve_repository_uri(config, tmp_path) == REPO

    def test_repository_unknown(self, tmp_path):
        config = ReleaseConfig(terraform_dir=str(tmp_path))
        with patch("tagship.pipeline.get_terraform_outputs", return_value={}):
            with pytest.raises(BuildError):
                resolve_repository_uri(config, tmp_path)

    def test_entry_point_falls_back_to_dns_name(self):
        assert public_entry_point({"alb_dns_name": "alb.example.com"}) == "alb.example.com"

    def test_entry_point_missing(self):
        with pytest.raises(ConvergenceError):
            public_entry_point({})
