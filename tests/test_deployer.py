"""Tests for the Deploy stage."""

from __future__ import annotations

import asyncio
import json

from meeting2code.config import DeploySettings
from meeting2code.dashboard.events import EventType
from meeting2code.deployer import AzdCli, Deployer, endpoint_from_show, error_tail, extract_url, scaffold_infra
from meeting2code.errors import FailureKind
from meeting2code.process import MockProcessRunner, ProcessResult
from meeting2code.workspace import Workspace

SITE_URL = "https://gentle-sea-0a1b2c.azurestaticapps.net"
SHOW_OUTPUT = json.dumps({"services": {"web": {"endpoint": SITE_URL + "/"}}})


def failing(stderr: str) -> ProcessResult:
    return ProcessResult(args=[], exit_code=1, stderr=stderr)


def deployer_for(workspace: Workspace, runner: MockProcessRunner, **settings) -> Deployer:
    deploy_settings = DeploySettings(**settings)
    return Deployer(AzdCli(runner, workspace.path, deploy_settings), workspace, deploy_settings)


def test_extract_url() -> None:
    text = f"Deploying service web\n  - Endpoint: {SITE_URL}\nSUCCESS"
    assert extract_url(text) == SITE_URL
    assert extract_url("https://example.com") is None


def test_endpoint_from_show() -> None:
    assert endpoint_from_show(SHOW_OUTPUT) == SITE_URL + "/"
    assert endpoint_from_show(json.dumps({"services": {"web": {}}})) is None
    assert endpoint_from_show("ERROR: no project") is None


def test_error_tail_keeps_the_end() -> None:
    detail = "x" * 1000 + " Bearer secret-token final line"
    tail = error_tail(detail)
    assert tail.startswith("...")
    assert tail.endswith("final line")
    assert "secret-token" not in tail


def test_scaffold_infra_skips_existing(tmp_path) -> None:
    written = scaffold_infra(tmp_path, sku="Standard")
    assert written == ["infra/main.bicep", "infra/modules/staticwebapp.bicep", "infra/main.parameters.json"]
    assert "Standard" in (tmp_path / "infra" / "modules" / "staticwebapp.bicep").read_text()
    assert scaffold_infra(tmp_path) == []


class TestRedeploy:
    """An existing environment is redeployed after merging feature branches."""

    def _feature_branch(self, workspace: Workspace) -> None:
        workspace.create_branch("feature/gap-1-add-consent")
        workspace.write_files({"consent.html": "<input type=\"checkbox\">"})
        workspace.commit_all("Add consent")
        workspace.reset_to_baseline()

    def test_merges_and_redeploys(self, workspace: Workspace, events) -> None:
        self._feature_branch(workspace)
        runner = MockProcessRunner(responses={"azd show": SHOW_OUTPUT})

        result = asyncio.run(deployer_for(workspace, runner).deploy(events))

        assert result.success is True
        assert result.url == SITE_URL + "/"
        assert result.message == "Redeployed with 1 merged branch(es)"
        assert (workspace.path / "consent.html").exists()
        assert runner.called("azd deploy")
        assert not runner.called("azd up")
        assert events.of(EventType.DEPLOY_URL) == [{"url": SITE_URL + "/"}]
        assert events.of(EventType.PROGRESS)[-1]["step"] == 4

    def test_deploy_falls_back_to_up(self, workspace: Workspace) -> None:
        runner = MockProcessRunner(responses={
            "azd show": SHOW_OUTPUT,
            "azd deploy": failing("ERROR: service package missing"),
        })

        result = asyncio.run(deployer_for(workspace, runner).deploy())

        assert result.success is True
        assert result.message == "Redeployed to Azure"
        assert len(runner.called("azd up")) == 1


class TestFirstDeploy:
    """No environment yet: prepare config and infrastructure, then ``azd up``."""

    def test_scaffolds_and_deploys(self, workspace: Workspace, events) -> None:
        runner = MockProcessRunner(responses={
            "azd show": failing("ERROR: no environment"),
            "azd init": failing("ERROR: could not detect project"),
            "azd up": f"Deploying services\n  - Endpoint: {SITE_URL}\n",
        })

        result = asyncio.run(deployer_for(workspace, runner, subscription_id="sub-123").deploy(events))

        assert result.success is True
        assert result.url == SITE_URL
        assert "host: staticwebapp" in (workspace.path / "azure.yaml").read_text()
        assert (workspace.path / "infra" / "main.bicep").exists()
        assert ["azd", "env", "set", "AZURE_SUBSCRIPTION_ID", "sub-123"] in runner.calls
        assert ["azd", "env", "set", "AZURE_LOCATION", "eastus2"] in runner.calls
        assert not runner.called("az account")
        assert events.of(EventType.DEPLOY_URL) == [{"url": SITE_URL}]

    def test_url_from_show_after_up(self, workspace: Workspace) -> None:
        shows = iter([failing("ERROR: no environment"), SHOW_OUTPUT])
        runner = MockProcessRunner(responses={
            "azd show": lambda argv: next(shows),
            "azd up": "SUCCESS: Your application was provisioned",
        })

        result = asyncio.run(deployer_for(workspace, runner, subscription_id="sub-123").deploy())

        assert result.url == SITE_URL + "/"
        assert len(runner.called("azd show")) == 2

    def test_subscription_matching_the_signed_in_user(self, workspace: Workspace) -> None:
        subscriptions = [
            {"id": "sub-1", "tenantId": "t-1", "name": "Other", "user": "bob@contoso.com"},
            {"id": "sub-2", "tenantId": "t-1", "name": "Web", "user": "alice@contoso.com"},
        ]
        runner = MockProcessRunner(responses={
            "azd show": failing("ERROR: no environment"),
            "azd auth login": "Logged in to Azure as alice@contoso.com",
            "az account list": json.dumps(subscriptions),
            "azd up": f"Endpoint: {SITE_URL}",
        })

        asyncio.run(deployer_for(workspace, runner).deploy())

        assert ["az", "account", "set", "--subscription", "sub-2"] in runner.calls
        assert ["azd", "env", "set", "AZURE_SUBSCRIPTION_ID", "sub-2"] in runner.calls


class TestFailures:
    """Deploy failures are classified and returned, not raised."""

    def test_auth_failure(self, workspace: Workspace, events) -> None:
        runner = MockProcessRunner(responses={
            "azd show": failing("ERROR: no environment"),
            "azd up": failing("ERROR: not logged in, run `azd auth login` to log in"),
            "azd auth login": failing("not logged in"),
        })

        result = asyncio.run(deployer_for(workspace, runner, subscription_id="sub-123").deploy(events))

        assert result.success is False
        assert result.error_type == FailureKind.AUTH
        assert result.to_dict()["errorType"] == "auth"
        assert len(runner.called("azd auth login")) == 1
        assert events.of(EventType.DEPLOY_URL) == []

    def test_infra_failure(self, workspace: Workspace) -> None:
        runner = MockProcessRunner(responses={
            "azd show": failing("ERROR: no environment"),
            "azd up": failing("ERROR: deployment failed: bicep compile error in infra/main.bicep"),
        })

        result = asyncio.run(deployer_for(workspace, runner, subscription_id="sub-123").deploy())

        assert result.success is False
        assert result.error_type == FailureKind.INFRA
        assert not runner.called("azd auth login")
