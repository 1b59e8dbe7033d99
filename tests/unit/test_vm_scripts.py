"""Unit tests for virtual-machine shell scripts."""

import base64

from smartdeploy.handlers.vm_scripts import (
    VmService,
    bootstrap_script,
    env_file,
    redeploy_script,
    service_logs_script,
)

SERVICES = [VmService(name="shop-api", directory=".", port=8080)]
ENV = {"DATABASE_URL": "postgresql://dbadmin:hunter2@db:5432/appdb", "API_KEY": "s3cret"}


class TestBootstrapScript:
    """Tests for bootstrap_script and redeploy_script."""

    def test_secret_files_are_written_without_tracing(self):
        script = bootstrap_script("https://github.com/acme/shop-api", "main", None, SERVICES, ENV)
        lines = script.splitlines()

        env_line = next(i for i, line in enumerate(lines) if line.endswith("> .env"))
        compose_line = next(i for i, line in enumerate(lines) if "docker-compose.smartdeploy.yml" in line)
        assert lines[env_line - 1] == "set +x"
        assert lines[compose_line + 1] == "set -x"
        assert "hunter2" not in script
        assert base64.b64encode(env_file(ENV).encode()).decode() in script

    def test_repository_and_branch_are_quoted(self):
        script = redeploy_script(
            "https://github.com/acme/shop-api; rm -rf /",
            "feature/$(whoami)",
            "4f2c9e1a7b3d",
            SERVICES,
            {},
        )

        assert "git remote set-url origin 'https://github.com/acme/shop-api; rm -rf /'" in script
        assert "git fetch origin 'feature/$(whoami)'" in script
        assert "git checkout -B 'feature/$(whoami)' 'origin/feature/$(whoami)'" in script
        assert "git checkout 4f2c9e1a7b3d" in script

    def test_plain_names_stay_unquoted(self):
        script = bootstrap_script("https://github.com/acme/shop-api", "main", None, SERVICES, {})

        assert "git remote add origin https://github.com/acme/shop-api || true" in script
        assert "git checkout -B main origin/main" in script


class TestServiceLogsScript:
    """Tests for service_logs_script."""

    def test_tail_and_service(self):
        script = service_logs_script("shop-api", 50)

        assert "logs --no-color --timestamps --tail 50 shop-api" in script
        assert script.rstrip().endswith("|| true")

    def test_all_services(self):
        script = service_logs_script(None, 200)

        assert "--tail 200 2>/dev/null" in script

    def test_service_name_is_quoted(self):
        assert "'api; reboot'" in service_logs_script("api; reboot", 10)
