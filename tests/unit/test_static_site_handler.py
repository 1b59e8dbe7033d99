"""Unit tests for the static-site target handler."""

from pathlib import Path

import httpx
import pytest

from smartdeploy.handlers.static_site import StaticSiteHandler, find_output_dir, install_command
from smartdeploy.models.deployment import DeploymentRequest, TargetPlatform
from smartdeploy.models.project import ProjectProfile
from smartdeploy.models.steps import StepId, StepStatus
from smartdeploy.utils.process import CommandResult

SITE = DeploymentRequest(repo_url="https://github.com/acme/storefront", build_cmd="npm run build")
PROFILE = ProjectProfile(language="node", framework="react", build_cmd="npm run build")


class FakeShell:
    """Stands in for run_command; the build command writes out/index.html."""

    def __init__(self, fail_on: str | None = None):
        self.commands: list[str] = []
        self.fail_on = fail_on

    async def __call__(self, cmd, cwd=None, env=None, timeout=300):
        self.commands.append(cmd)
        if cmd == self.fail_on:
            return CommandResult(returncode=1, stdout="", stderr="Module not found: ./App")
        if cmd == "npm run build":
            out = Path(cwd) / "out"
            out.mkdir(exist_ok=True)
            (out / "index.html").write_text("<html></html>")
            return CommandResult(returncode=0, stdout="Compiled successfully\n", stderr="")
        return CommandResult(returncode=0, stdout="added 120 packages\n", stderr="")


class TestStaticSiteHandler:
    """Tests for StaticSiteHandler."""

    @pytest.fixture
    def uploads(self) -> list[httpx.Request]:
        return []

    @pytest.fixture
    def handler(self, aws, uploads) -> StaticSiteHandler:
        handler = StaticSiteHandler(aws)

        def record(request: httpx.Request) -> httpx.Response:
            uploads.append(request)
            return httpx.Response(200)

        handler.amplify.transport = httpx.MockTransport(record)
        return handler

    @pytest.fixture
    def shell(self, monkeypatch) -> FakeShell:
        shell = FakeShell()
        monkeypatch.setattr("smartdeploy.handlers.static_site.run_command", shell)
        return shell

    @pytest.mark.asyncio
    async def test_build_and_publish(self, handler, aws, shell, uploads, make_context):
        context = make_context(profile=PROFILE, request=SITE, target=TargetPlatform.STATIC_SITE)

        outcome = await handler.deploy(context)

        assert outcome.success and not outcome.in_progress
        site = outcome.refs.static_site
        assert outcome.url == f"https://main.{site.default_domain}"
        assert shell.commands == ["npm install", "npm run build"]
        assert len(uploads) == 1
        assert uploads[0].method == "PUT"
        assert uploads[0].headers["Content-Type"] == "application/zip"
        assert aws.count("amplify", "start_deployment") == 1

    @pytest.mark.asyncio
    async def test_app_and_branch_are_reused(self, handler, aws, shell, make_context):
        await handler.deploy(make_context(profile=PROFILE, request=SITE, target=TargetPlatform.STATIC_SITE))
        await handler.deploy(make_context(profile=PROFILE, request=SITE, target=TargetPlatform.STATIC_SITE))

        assert aws.count("amplify", "create_app") == 1
        assert aws.count("amplify", "create_branch") == 1

    @pytest.mark.asyncio
    async def test_running_job_is_in_progress(self, handler, aws, shell, make_context):
        aws.job_status = "RUNNING"

        outcome = await handler.deploy(make_context(profile=PROFILE, request=SITE, target=TargetPlatform.STATIC_SITE))

        assert outcome.success
        assert outcome.in_progress

    @pytest.mark.asyncio
    async def test_failed_job_keeps_app(self, handler, aws, shell, make_context):
        aws.job_status = "FAILED"

        outcome = await handler.deploy(make_context(profile=PROFILE, request=SITE, target=TargetPlatform.STATIC_SITE))

        assert outcome.success is False
        assert outcome.refs.static_site.app_id in aws.amplify_apps

    @pytest.mark.asyncio
    async def test_build_failure_is_reported(self, handler, aws, monkeypatch, uploads, make_context):
        """A failed build fails the build step and reports the app created during setup."""
        monkeypatch.setattr("smartdeploy.handlers.static_site.run_command", FakeShell(fail_on="npm run build"))
        context = make_context(profile=PROFILE, request=SITE, target=TargetPlatform.STATIC_SITE)

        outcome = await handler.deploy(context)

        assert outcome.success is False
        assert "Module not found" in outcome.message
        assert outcome.refs.static_site.branch == "main"
        build = next(s for s in context.channel.ledger if s.id == StepId.BUILD)
        assert build.status == StepStatus.ERROR
        assert uploads == []

    @pytest.mark.asyncio
    async def test_teardown_deletes_app(self, handler, aws, shell, make_context):
        context = make_context(profile=PROFILE, request=SITE, target=TargetPlatform.STATIC_SITE)
        outcome = await handler.deploy(context)

        steps = await handler.teardown(context.record.model_copy(update={"refs": outcome.refs}))

        assert [s.success for s in steps] == [True]
        assert aws.amplify_apps == {}


class TestBuildHelpers:
    """Tests for install/output detection."""

    def test_install_command(self, tmp_path: Path):
        assert install_command(tmp_path, None) == "npm install"
        (tmp_path / "package-lock.json").write_text("{}")
        assert install_command(tmp_path, None) == "npm ci"
        assert install_command(tmp_path, "pnpm install") == "pnpm install"

    def test_find_output_dir(self, tmp_path: Path):
        (tmp_path / "out").mkdir()
        assert find_output_dir(tmp_path, None) is None
        (tmp_path / "dist").mkdir()
        (tmp_path / "dist" / "index.html").write_text("")
        assert find_output_dir(tmp_path, None) == tmp_path / "dist"
        assert find_output_dir(tmp_path, "build") is None
