"""Deploy stage: ship the working copy to Azure with the ``azd`` CLI.

Deploys are idempotent: when ``azd show`` reports an existing endpoint the
stage merges local feature branches and redeploys; otherwise it prepares
``azure.yaml`` and Bicep infrastructure and runs ``azd up``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Optional

from .config import DeploySettings
from .dashboard.events import Emit, EventType, null_emit
from .errors import ExternalProcessFailure, FailureKind, WorkspaceError
from .models import DeployResult
from .process import ProcessResult, ProcessRunner, classify_failure, sanitize_error
from .prompts import render_template
from .workspace import Workspace

logger = logging.getLogger(__name__)

AZURE_URL_RE = re.compile(
    r"https?://[a-zA-Z0-9\-._]+\.(?:azurestaticapps\.net|azurewebsites\.net|azure-api\.net|azurefd\.net)[^\s)\"']*"
)
AZD_USER_RE = re.compile(r"Logged in to Azure as (\S+)")
ERROR_TAIL_CHARS = 600


def extract_url(text: str) -> Optional[str]:
    """First Azure-hosted URL in ``text``."""
    match = AZURE_URL_RE.search(text)
    return match.group(0) if match else None


def endpoint_from_show(output: str) -> Optional[str]:
    """First service endpoint in ``azd show --output json`` output."""
    try:
        data = json.loads(output)
    except json.JSONDecodeError:
        return None
    services = data.get("services") if isinstance(data, dict) else None
    for service in (services or {}).values():
        if isinstance(service, dict) and service.get("endpoint"):
            return service["endpoint"]
    return None


def error_tail(detail: str) -> str:
    detail = sanitize_error(detail.strip())
    return "..." + detail[-ERROR_TAIL_CHARS:] if len(detail) > ERROR_TAIL_CHARS else detail


class AzdCli:
    """Argument construction for ``azd`` and the ``az`` account commands."""

    def __init__(self, runner: ProcessRunner, cwd: Path, settings: DeploySettings):
        self.runner = runner
        self.cwd = cwd
        self.settings = settings

    async def _run(self, args: list[str], timeout: float, cwd: Optional[Path] = None) -> ProcessResult:
        return await self.runner.run(args, timeout=timeout, cwd=cwd or self.cwd)

    async def show(self) -> Optional[str]:
        """Endpoint of an existing deployment, or None."""
        try:
            result = await self._run(["azd", "show", "--output", "json"], timeout=30)
        except ExternalProcessFailure:
            return None
        return endpoint_from_show(result.stdout) if result.ok else None

    async def deploy(self) -> ProcessResult:
        result = await self._run(["azd", "deploy", "--no-prompt"], timeout=self.settings.deploy_timeout)
        return result.raise_for_status("azd deploy failed")

    async def up(self) -> ProcessResult:
        result = await self._run(["azd", "up", "--no-prompt"], timeout=self.settings.deploy_timeout)
        return result.raise_for_status("azd up failed")

    async def init_from_code(self) -> ProcessResult:
        result = await self._run(["azd", "init", "--from-code", "--no-prompt"], timeout=self.settings.init_timeout)
        return result.raise_for_status("azd init failed")

    async def env_new(self) -> ProcessResult:
        return await self._run(["azd", "env", "new", self.settings.env_name, "--no-prompt"], timeout=30)

    async def env_select(self) -> ProcessResult:
        return await self._run(["azd", "env", "select", self.settings.env_name], timeout=10)

    async def env_set(self, key: str, value: str) -> ProcessResult:
        return await self._run(["azd", "env", "set", key, value], timeout=10)

    async def auth_user(self) -> Optional[str]:
        """Account azd is logged in as, or None."""
        try:
            result = await self._run(["azd", "auth", "login", "--check-status"], timeout=15)
        except ExternalProcessFailure:
            return None
        match = AZD_USER_RE.search(result.output)
        return match.group(1) if match else None

    async def auth_ok(self) -> bool:
        try:
            return (await self._run(["azd", "auth", "login", "--check-status"], timeout=15)).ok
        except ExternalProcessFailure:
            return False

    async def subscriptions(self) -> list[dict]:
        result = await self._run([
            "az", "account", "list",
            "--query", "[?state=='Enabled'].{id:id,tenantId:tenantId,name:name,user:user.name}",
            "-o", "json",
        ], timeout=15)
        result.raise_for_status("az account list failed")
        data = json.loads(result.stdout or "[]")
        return data if isinstance(data, list) else []

    async def current_account(self) -> dict:
        result = await self._run(
            ["az", "account", "show", "--query", "{id:id,tenantId:tenantId,user:user.name}", "-o", "json"],
            timeout=15,
        )
        result.raise_for_status("az account show failed")
        return json.loads(result.stdout or "{}")

    async def set_subscription(self, subscription_id: str) -> ProcessResult:
        result = await self._run(["az", "account", "set", "--subscription", subscription_id], timeout=10)
        return result.raise_for_status("az account set failed")


def scaffold_infra(repo_path: Path, sku: str = "Free") -> list[str]:
    """Write Bicep files for a Static Web App unless ``infra/main.bicep`` exists.

    Returns:
        Relative paths written (empty when skipped).
    """
    infra = repo_path / "infra"
    if (infra / "main.bicep").exists():
        return []
    (infra / "modules").mkdir(parents=True, exist_ok=True)
    parameters = {
        "$schema": "https://schema.management.azure.com/schemas/2019-04-01/deploymentParameters.json#",
        "contentVersion": "1.0.0.0",
        "parameters": {
            "environmentName": {"value": "${AZURE_ENV_NAME}"},
            "location": {"value": "${AZURE_LOCATION}"},
        },
    }
    files = {
        "infra/main.bicep": render_template("infra_main.bicep.j2") + "\n",
        "infra/modules/staticwebapp.bicep": render_template("infra_staticwebapp.bicep.j2", sku=sku) + "\n",
        "infra/main.parameters.json": json.dumps(parameters, indent=2) + "\n",
    }
    for rel, content in files.items():
        (repo_path / rel).write_text(content, encoding="utf-8")
    return list(files)


class Deployer:
    """Deploys the working copy and reports a :class:`DeployResult`."""

    def __init__(self, azd: AzdCli, workspace: Workspace, settings: DeploySettings, app_name: str = "website"):
        self.azd = azd
        self.workspace = workspace
        self.settings = settings
        self.app_name = app_name

    async def merge_feature_branches(self, log) -> list[str]:
        """Merge local ``feature/gap-*`` branches into the baseline, skipping conflicts."""
        ws = self.workspace
        try:
            await asyncio.to_thread(ws.checkout_baseline)
            branches = await asyncio.to_thread(ws.feature_branches)
        except WorkspaceError as e:
            log(f"Warning: branch merge step failed: {str(e)[:200]}")
            return []
        if not branches:
            log("No local-agent feature branches found to merge.")
            return []

        log(f"Found {len(branches)} local-agent branch(es) to merge: {', '.join(branches)}")
        merged = []
        for branch in branches:
            if await asyncio.to_thread(ws.merge, branch):
                log(f"Merged: {branch}")
                merged.append(branch)
            else:
                log(f"Warning: could not merge {branch}; merge aborted")
        return merged

    async def _commit_local_changes(self, log) -> bool:
        try:
            commit = await asyncio.to_thread(self.workspace.commit_all, "Include local agent changes for deployment")
        except WorkspaceError as e:
            log(f"Warning: could not commit local changes: {str(e)[:200]}")
            return False
        if commit:
            log("Committed local changes for deployment.")
        return commit is not None

    async def _ensure_azure_yaml(self, log) -> None:
        if (self.workspace.path / "azure.yaml").exists():
            log("azure.yaml already exists.")
            return
        log("No azure.yaml found; initializing with azd...")
        try:
            await self.azd.init_from_code()
            log("azd init completed; azure.yaml created.")
        except ExternalProcessFailure as e:
            log(f"azd init --from-code failed: {error_tail(e.detail)[:200]}")
            (self.workspace.path / "azure.yaml").write_text(
                render_template("azure_yaml.j2", name=self.app_name) + "\n", encoding="utf-8"
            )
            log("Created azure.yaml for static web app deployment.")

    async def _select_subscription(self, log) -> None:
        if self.settings.subscription_id:
            await self.azd.env_set("AZURE_SUBSCRIPTION_ID", self.settings.subscription_id)
            log(f"Using configured subscription {self.settings.subscription_id}")
            return
        try:
            user = await self.azd.auth_user()
            log(f"azd authenticated as: {user or 'unknown'}")
            subscriptions = await self.azd.subscriptions()
            chosen = next((s for s in subscriptions if user and s.get("user") == user), None)
            if chosen is None:
                account = await self.azd.current_account()
                chosen = next(
                    (s for s in subscriptions if s.get("tenantId") == account.get("tenantId")),
                    subscriptions[0] if subscriptions else None,
                )
            if chosen is None:
                log("Warning: no enabled subscriptions found.")
                return
            await self.azd.set_subscription(chosen["id"])
            await self.azd.env_set("AZURE_SUBSCRIPTION_ID", chosen["id"])
            log(f"Using subscription: {chosen.get('name')} ({chosen['id']}) [tenant: {chosen.get('tenantId')}]")
        except (ExternalProcessFailure, json.JSONDecodeError, KeyError) as e:
            log(f"Warning: could not auto-detect subscription; azd up may prompt ({str(e)[:120]})")

    async def _configure_environment(self, log) -> None:
        if not (await self.azd.env_new()).ok:
            log(f'Environment "{self.settings.env_name}" may already exist; continuing.')
        if not (await self.azd.env_select()).ok:
            log("Could not select env; it may already be active.")
        if not (await self.azd.env_set("AZURE_LOCATION", self.settings.location)).ok:
            log("Warning: could not set AZURE_LOCATION.")
        await self._select_subscription(log)

    async def _redeploy(self, url: str, progress, log) -> DeployResult:
        progress(1, "Merging local agent changes...")
        merged = await self.merge_feature_branches(log)
        local = await self._commit_local_changes(log)

        progress(2, "Redeploying to Azure...")
        try:
            await self.azd.deploy()
        except ExternalProcessFailure as e:
            log(f"azd deploy failed, falling back to azd up: {error_tail(e.detail)[:200]}")
            await self.azd.up()
        progress(4, "Redeployment complete!")

        if merged or local:
            message = f"Redeployed with {len(merged)} merged branch(es)" + (" + local changes" if local else "")
        else:
            message = "Redeployed to Azure"
        return DeployResult(success=True, message=message, url=url)

    async def _first_deploy(self, progress, log) -> DeployResult:
        progress(1, "Preparing Azure deployment config...")
        await self.merge_feature_branches(log)
        await self._ensure_azure_yaml(log)
        written = await asyncio.to_thread(scaffold_infra, self.workspace.path)
        if written:
            log(f"Scaffolded {', '.join(written)}.")
        else:
            log("infra/main.bicep already exists; skipping scaffold.")

        progress(2, "Configuring Azure environment...")
        await self._configure_environment(log)

        progress(2, "Running Azure deployment (this may take a few minutes)...")
        result = await self.azd.up()
        url = extract_url(result.output)
        if not url:
            progress(3, "Retrieving deployment URL...")
            url = await self.azd.show()

        progress(4, "Deployment complete!")
        if url:
            return DeployResult(success=True, message="Successfully deployed to Azure", url=url)
        return DeployResult(success=True, message="Deployment completed; check the Azure Portal for the URL")

    async def deploy(self, emit: Emit = null_emit) -> DeployResult:
        """Deploy and return the outcome. Failures are classified, not raised."""

        def progress(step: int, message: str) -> None:
            emit(EventType.PROGRESS, {"step": step, "message": message})

        def log(message: str) -> None:
            logger.info(message)
            emit(EventType.LOG, {"message": message})

        try:
            progress(0, "Checking existing Azure deployment...")
            existing = await self.azd.show()
            if existing:
                log(f"Found existing deployment: {existing}")
                result = await self._redeploy(existing, progress, log)
            else:
                log("No existing azd environment; deploying fresh.")
                result = await self._first_deploy(progress, log)
        except (ExternalProcessFailure, WorkspaceError, OSError) as e:
            detail = e.detail if isinstance(e, ExternalProcessFailure) else str(e)
            message = error_tail(detail)
            kind = classify_failure(message)
            if isinstance(e, ExternalProcessFailure) and e.kind != FailureKind.UNKNOWN:
                kind = e.kind
            log(f"Deployment error: {message}")
            if kind == FailureKind.AUTH:
                if await self.azd.auth_ok():
                    log("Auth status check passed; the token may have refreshed.")
                else:
                    log("Auth check failed; re-authenticate with 'azd auth login'.")
            return DeployResult(success=False, message=message, error_type=kind)

        if result.url:
            emit(EventType.DEPLOY_URL, {"url": result.url})
            log(f"Live URL: {result.url}")
        return result
