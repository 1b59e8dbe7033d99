"""Dockerfiles generated for services that do not ship one."""

NODE = """FROM public.ecr.aws/docker/library/node:20-alpine
WORKDIR /app
COPY package*.json ./
RUN npm ci || npm install
COPY . .
RUN npm run build --if-present
ENV PORT={port}
EXPOSE {port}
CMD {cmd}
"""

PYTHON = """FROM public.ecr.aws/docker/library/python:3.11-slim
WORKDIR /app
COPY requirements.txt* ./
RUN if [ -f requirements.txt ]; then pip install --no-cache-dir -r requirements.txt; fi
COPY . .
RUN if [ -f pyproject.toml ] && [ ! -f requirements.txt ]; then pip install --no-cache-dir .; fi
ENV PORT={port}
EXPOSE {port}
CMD {cmd}
"""

GO = """FROM public.ecr.aws/docker/library/golang:1.21-alpine AS builder
WORKDIR /src
COPY go.* ./
RUN go mod download
COPY . .
RUN CGO_ENABLED=0 go build -o /out/main .

FROM public.ecr.aws/docker/library/alpine:latest
WORKDIR /app
COPY --from=builder /out/main ./main
ENV PORT={port}
EXPOSE {port}
CMD ["./main"]
"""

DOTNET = """FROM mcr.microsoft.com/dotnet/sdk:8.0 AS build
WORKDIR /src
COPY . .
RUN dotnet restore
RUN dotnet publish -c Release -o /app

FROM mcr.microsoft.com/dotnet/aspnet:8.0
WORKDIR /app
COPY --from=build /app .
ENV ASPNETCORE_URLS=http://+:{port}
EXPOSE {port}
ENTRYPOINT ["sh", "-c", "dotnet $(ls *.dll | head -n 1)"]
"""

RUST = """FROM public.ecr.aws/docker/library/rust:1.77 AS builder
WORKDIR /src
COPY . .
RUN cargo build --release && cp "$(find target/release -maxdepth 1 -type f -perm -u+x | head -n 1)" /out-bin

FROM public.ecr.aws/docker/library/debian:bookworm-slim
WORKDIR /app
COPY --from=builder /out-bin ./app
ENV PORT={port}
EXPOSE {port}
CMD ["./app"]
"""

TEMPLATES = {"node": NODE, "python": PYTHON, "go": GO, "dotnet": DOTNET, "rust": RUST}

DEFAULT_COMMANDS = {
    "node": '["npm", "start"]',
    "python": '["python", "app.py"]',
}


def exec_form(command: str) -> str:
    return '["sh", "-c", "' + command.replace("\\", "\\\\").replace('"', '\\"') + '"]'


def generate_dockerfile(language: str, port: int, run_cmd: str | None = None) -> str:
    """Dockerfile for ``language``; unknown languages get the Node template."""
    template = TEMPLATES.get(language, NODE)
    cmd = exec_form(run_cmd) if run_cmd else DEFAULT_COMMANDS.get(language, DEFAULT_COMMANDS["node"])
    return template.format(port=port, cmd=cmd)
