"""Shell scripts run on virtual machine instances.

Environment and compose content are shipped base64-encoded so commas,
quotes and newlines in values survive the trip.
"""

import base64
import shlex
from dataclasses import dataclass

import yaml

APP_DIR = "/home/ec2-user/app"


@dataclass
class VmService:
    name: str
    directory: str
    port: int
    dockerfile: str | None = None  # generated content when the repo has none


def _b64(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


def env_file(env: dict[str, str]) -> str:
    lines = []
    for key, value in sorted(env.items()):
        if "\n" in value or '"' in value or " " in value:
            value = '"' + value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n") + '"'
        lines.append(f"{key}={value}")
    return "\n".join(lines) + "\n"


def compose_file(services: list[VmService], env: dict[str, str]) -> str:
    compose: dict = {"services": {}}
    for service in services:
        environment = {"PORT": str(service.port), "NODE_ENV": "production"}
        if "DATABASE_URL" in env:
            environment["DATABASE_URL"] = env["DATABASE_URL"]
        compose["services"][service.name] = {
            "build": {"context": "." if service.directory == "." else f"./{service.directory}"},
            "ports": [f"{service.port}:{service.port}"],
            "env_file": [".env"],
            "environment": environment,
            "restart": "unless-stopped",
        }
    return yaml.safe_dump(compose, sort_keys=False)


def nginx_conf(port: int) -> str:
    return f"""server {{
    listen 80;
    server_name _;

    location / {{
        proxy_pass http://127.0.0.1:{port};
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection 'upgrade';
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_cache_bypass $http_upgrade;
    }}
}}
"""


def _write_app_files(services: list[VmService], env: dict[str, str]) -> str:
    # Both files carry secrets; keep them out of the xtrace output
    lines = [
        "set +x",
        f"echo '{_b64(env_file(env))}' | base64 -d > .env",
        f"echo '{_b64(compose_file(services, env))}' | base64 -d > docker-compose.smartdeploy.yml",
        "set -x",
    ]
    for service in services:
        if service.dockerfile:
            target = "Dockerfile" if service.directory == "." else f"{service.directory}/Dockerfile"
            lines.append(
                f"[ -f {target} ] || echo '{_b64(service.dockerfile)}' | base64 -d > {target}"
            )
    return "\n".join(lines)


def _checkout(repo_url: str, branch: str, commit_sha: str | None) -> str:
    repo, ref, remote_ref = shlex.quote(repo_url), shlex.quote(branch), shlex.quote(f"origin/{branch}")
    lines = [f"git fetch --depth 50 origin {ref}", f"git checkout -B {ref} {remote_ref}"]
    if commit_sha:
        lines = [
            f"git fetch origin {ref}",
            f"git checkout -B {ref} {remote_ref}",
            f"git checkout {shlex.quote(commit_sha)}",
        ]
    return "\n".join([f"git remote set-url origin {repo}", *lines])


def _nginx(services: list[VmService]) -> str:
    port = services[0].port if services else 8080
    if port == 80:
        return "# application listens on port 80 directly"
    return "\n".join(
        [
            "yum install -y nginx",
            f"echo '{_b64(nginx_conf(port))}' | base64 -d > /etc/nginx/conf.d/app.conf",
            "systemctl enable nginx",
            "systemctl restart nginx",
        ]
    )


def bootstrap_script(
    repo_url: str,
    branch: str,
    commit_sha: str | None,
    services: list[VmService],
    env: dict[str, str],
) -> str:
    """User data for a fresh instance."""
    return f"""#!/bin/bash
set -euxo pipefail

yum update -y
yum install -y docker git
systemctl enable --now docker
systemctl enable --now amazon-ssm-agent || true

curl -sSL "https://github.com/docker/compose/releases/latest/download/docker-compose-$(uname -s)-$(uname -m)" -o /usr/local/bin/docker-compose
chmod +x /usr/local/bin/docker-compose

mkdir -p {APP_DIR}
cd {APP_DIR}
git init -q .
git remote add origin {shlex.quote(repo_url)} || true
{_checkout(repo_url, branch, commit_sha)}

{_write_app_files(services, env)}

/usr/local/bin/docker-compose -f docker-compose.smartdeploy.yml up -d --build

{_nginx(services)}

echo "SmartDeploy bootstrap complete"
"""


def redeploy_script(
    repo_url: str,
    branch: str,
    commit_sha: str | None,
    services: list[VmService],
    env: dict[str, str],
) -> str:
    """In-place rebuild and restart on an existing instance."""
    return f"""#!/bin/bash
set -euxo pipefail
cd {APP_DIR}

/usr/local/bin/docker-compose -f docker-compose.smartdeploy.yml down || true
docker system prune -af || true

{_checkout(repo_url, branch, commit_sha)}
git reset --hard HEAD

{_write_app_files(services, env)}

/usr/local/bin/docker-compose -f docker-compose.smartdeploy.yml up -d --build
echo "SmartDeploy redeploy complete"
"""


def service_logs_script(service: str | None, lines: int) -> str:
    """Print recent container output with timestamps; never fails."""
    target = f" {shlex.quote(service)}" if service else ""
    return f"""#!/bin/bash
cd {APP_DIR} || exit 0
/usr/local/bin/docker-compose -f docker-compose.smartdeploy.yml logs --no-color --timestamps --tail {int(lines)}{target} 2>/dev/null || true
"""
