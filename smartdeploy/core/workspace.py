"""Repository checkout and project introspection."""

import asyncio
import json
import re
import shutil
import tempfile
from pathlib import Path
from typing import Any

import yaml

from smartdeploy.config import settings
from smartdeploy.core.exceptions import StepFailedError
from smartdeploy.core.interfaces import CheckoutResult
from smartdeploy.models.deployment import DeploymentRequest
from smartdeploy.models.project import DatabaseEngine, ProjectProfile, ServiceDescriptor
from smartdeploy.utils.logging import get_logger
from smartdeploy.utils.process import run_command

logger = get_logger(__name__)

COMPOSE_FILES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")
SERVICE_DIRS = ("ui", "frontend", "web", "client", "api", "backend", "server", "app", "service")
DATABASE_IMAGES = ("postgres", "mysql", "mariadb", "mssql", "sqlserver", "mongo", "redis")

LANGUAGE_MARKERS = (
    ("package.json", "node"),
    ("requirements.txt", "python"),
    ("pyproject.toml", "python"),
    ("Pipfile", "python"),
    ("go.mod", "go"),
    ("pom.xml", "java"),
    ("build.gradle", "java"),
    ("Cargo.toml", "rust"),
    ("composer.json", "php"),
    ("Gemfile", "ruby"),
)

NODE_SOCKET_PACKAGES = ("ws", "socket.io", "@nestjs/websockets", "uWebSockets.js")
NODE_DB_PACKAGES: dict[str, DatabaseEngine] = {
    "pg": "postgres",
    "postgres": "postgres",
    "mysql": "mysql",
    "mysql2": "mysql",
    "mssql": "mssql",
    "tedious": "mssql",
}
PYTHON_SOCKET_PACKAGES = ("websockets", "channels", "python-socketio", "flask-socketio")
PYTHON_DB_PACKAGES: dict[str, DatabaseEngine] = {
    "psycopg": "postgres",
    "psycopg2": "postgres",
    "psycopg2-binary": "postgres",
    "asyncpg": "postgres",
    "pymysql": "mysql",
    "mysqlclient": "mysql",
    "pyodbc": "mssql",
    "pymssql": "mssql",
}


class GitWorkspace:
    """Clones repositories into scratch directories."""

    def __init__(self, root: str | None = None, timeout: float | None = None):
        self.root = Path(root or settings.clone_root)
        self.timeout = timeout or settings.clone_timeout_seconds

    async def clone(self, request: DeploymentRequest) -> CheckoutResult:
        """Clone the requested branch, then pin the commit if one was given.

        Raises:
            StepFailedError: If git fails
        """
        self.root.mkdir(parents=True, exist_ok=True)
        target = Path(tempfile.mkdtemp(prefix=f"{request.repo_name}-", dir=self.root))

        depth = [] if request.commit_sha else ["--depth", "1"]
        result = await run_command(
            ["git", "clone", *depth, "--branch", request.branch, request.repo_url, str(target)],
            timeout=self.timeout,
        )
        if not result.ok:
            shutil.rmtree(target, ignore_errors=True)
            raise StepFailedError("clone", result.tail())

        if request.commit_sha:
            checkout = await run_command(
                ["git", "checkout", request.commit_sha], cwd=target, timeout=self.timeout
            )
            if not checkout.ok:
                shutil.rmtree(target, ignore_errors=True)
                raise StepFailedError("clone", checkout.tail())

        head = await run_command(["git", "log", "-1", "--format=%H%n%s"], cwd=target, timeout=30)
        sha, _, message = head.stdout.strip().partition("\n")

        logger.info("workspace.cloned", repo=request.repo_url, branch=request.branch, sha=sha)
        return CheckoutResult(path=target, commit_sha=sha or None, commit_message=message or None)

    async def cleanup(self, checkout: CheckoutResult) -> None:
        await asyncio.to_thread(shutil.rmtree, checkout.path, True)
        logger.debug("workspace.removed", path=str(checkout.path))


def detect_language(directory: Path) -> str:
    if not directory.is_dir():
        return ""
    for marker, language in LANGUAGE_MARKERS:
        if (directory / marker).exists():
            return language
    if any(directory.glob("*.csproj")) or any(directory.glob("*.sln")):
        return "dotnet"
    return ""


def _read_json(path: Path) -> dict[str, Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}


def _python_requirements(directory: Path) -> set[str]:
    names: set[str] = set()
    for name in ("requirements.txt", "pyproject.toml", "Pipfile"):
        path = directory / name
        if not path.exists():
            continue
        text = path.read_text(encoding="utf-8", errors="ignore").lower()
        names.update(re.findall(r"[a-z0-9][a-z0-9._-]*", text))
    return names


class FilesystemIntrospector:
    """Builds a ProjectProfile from the files of a checkout."""

    async def inspect(self, path: Path, request: DeploymentRequest) -> ProjectProfile:
        return await asyncio.to_thread(self._inspect, path, request)

    def _inspect(self, root: Path, request: DeploymentRequest) -> ProjectProfile:
        app_dir = root / request.work_dir if request.work_dir else root
        services = self.detect_services(app_dir)

        language = detect_language(app_dir)
        if not language:
            for sub in SERVICE_DIRS + ("src",):
                language = detect_language(app_dir / sub)
                if language:
                    break
        if not language and services:
            language = services[0].language

        framework = ""
        is_static_export = False
        uses_websockets = False
        engine: DatabaseEngine | None = None
        port: int | None = None

        package = _read_json(app_dir / "package.json")
        if package:
            deps = {**package.get("dependencies", {}), **package.get("devDependencies", {})}
            if "next" in deps:
                framework = "nextjs"
                is_static_export = self._is_next_static_export(app_dir)
            elif "vite" in deps:
                framework = "vite"
            elif "react-scripts" in deps:
                framework = "cra"
            uses_websockets = any(p in deps for p in NODE_SOCKET_PACKAGES)
            engine = next((NODE_DB_PACKAGES[p] for p in NODE_DB_PACKAGES if p in deps), None)
        elif language == "python":
            requirements = _python_requirements(app_dir)
            for candidate in ("django", "fastapi", "flask"):
                if candidate in requirements:
                    framework = candidate
                    break
            uses_websockets = any(p in requirements for p in PYTHON_SOCKET_PACKAGES)
            engine = next(
                (PYTHON_DB_PACKAGES[p] for p in PYTHON_DB_PACKAGES if p in requirements), None
            )

        engine = engine or self.detect_database(app_dir)

        dockerfile = app_dir / "Dockerfile"
        if dockerfile.exists():
            match = re.search(r"^\s*EXPOSE\s+(\d+)", dockerfile.read_text(errors="ignore"), re.M)
            if match:
                port = int(match.group(1))

        profile = ProjectProfile(
            language=language,
            framework=framework,
            has_container_file=dockerfile.exists(),
            port=port,
            uses_websockets=uses_websockets,
            uses_database=engine is not None,
            is_multi_service=len(services) > 1,
            is_static_export=is_static_export,
            database_engine=engine,
            build_cmd=request.build_cmd,
            run_cmd=request.run_cmd,
            services=services if len(services) > 1 else [],
        )
        logger.info(
            "introspection.completed",
            language=profile.language,
            framework=profile.framework,
            services=len(profile.services),
            database=engine,
        )
        return profile

    @staticmethod
    def _is_next_static_export(app_dir: Path) -> bool:
        for name in ("next.config.js", "next.config.mjs", "next.config.ts"):
            path = app_dir / name
            if path.exists() and re.search(r"output\s*:\s*['\"]export['\"]", path.read_text(errors="ignore")):
                return True
        return False

    def detect_services(self, app_dir: Path) -> list[ServiceDescriptor]:
        """Services from a compose file, or from conventional service directories."""
        for name in COMPOSE_FILES:
            path = app_dir / name
            if not path.exists():
                continue
            try:
                compose = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            except yaml.YAMLError as e:
                logger.warning("introspection.compose_invalid", file=name, error=str(e))
                continue
            services = []
            for service_name, config in (compose.get("services") or {}).items():
                config = config or {}
                image = str(config.get("image", ""))
                if any(db in image or db in service_name for db in DATABASE_IMAGES):
                    continue
                build = config.get("build")
                if build is None:
                    continue
                context = build if isinstance(build, str) else build.get("context", ".")
                dockerfile = None if isinstance(build, str) else build.get("dockerfile")
                services.append(
                    ServiceDescriptor(
                        name=service_name,
                        work_dir=str(context).removeprefix("./") or ".",
                        language=detect_language(app_dir / context),
                        port=self._compose_port(config),
                        dockerfile=dockerfile,
                        depends_on=self._compose_depends(config),
                    )
                )
            if services:
                return services

        services = []
        for sub in SERVICE_DIRS:
            language = detect_language(app_dir / sub)
            if language:
                dockerfile = "Dockerfile" if (app_dir / sub / "Dockerfile").exists() else None
                services.append(
                    ServiceDescriptor(name=sub, work_dir=sub, language=language, dockerfile=dockerfile)
                )
        return services if len(services) > 1 else []

    @staticmethod
    def _compose_port(config: dict[str, Any]) -> int | None:
        for entry in config.get("ports") or []:
            container_port = str(entry).split(":")[-1].split("/")[0]
            if container_port.isdigit():
                return int(container_port)
        for entry in config.get("expose") or []:
            if str(entry).isdigit():
                return int(entry)
        return None

    @staticmethod
    def _compose_depends(config: dict[str, Any]) -> list[str]:
        depends = config.get("depends_on") or []
        if isinstance(depends, dict):
            return list(depends)
        return [str(d) for d in depends]

    @staticmethod
    def detect_database(app_dir: Path) -> DatabaseEngine | None:
        """Database engine referenced by compose images or .NET connection strings."""
        for name in COMPOSE_FILES:
            path = app_dir / name
            if path.exists():
                text = path.read_text(errors="ignore")
                if "mssql" in text or "sqlserver" in text:
                    return "mssql"
                if "postgres" in text:
                    return "postgres"
                if "mysql" in text:
                    return "mysql"
        for name in ("appsettings.json", "appsettings.Development.json"):
            settings_json = _read_json(app_dir / name)
            for value in (settings_json.get("ConnectionStrings") or {}).values():
                lowered = str(value).lower()
                if "host=" in lowered or "postgres" in lowered:
                    return "postgres"
                if "server=" in lowered:
                    return "mssql"
        return None
