"""
Dockerfile generation for projects that do not ship their own.

Templates are keyed by detected framework, then by build tool; frameworks
without a template of their own reuse the generic Node one.
"""

from collections.abc import Callable
import json
import re

from launchpad.models import DetectionResult

GENERATED_DOCKERFILE = "Dockerfile.launchpad"

DOCKERIGNORE = """\
node_modules
.git
.gitignore
*.md
.env*
.DS_Store
*.log
coverage
.next/cache
__pycache__
*.pyc
.pytest_cache
.venv
venv
Dockerfile.launchpad
"""


def _cmd(command: str) -> str:
    return f"CMD {json.dumps(['sh', '-c', command])}"


def _lockfiles(d: DetectionResult) -> str:
    lockfile = {
        "yarn": "yarn.lock",
        "pnpm": "pnpm-lock.yaml",
        "bun": "bun.lockb",
    }.get(d.package_manager or "")
    if lockfile:
        return f"COPY package*.json {lockfile} ./"
    return "COPY package*.json ./"


def _env_lines(d: DetectionResult) -> str:
    return "\n".join(f"ENV {key}={value}" for key, value in sorted(d.env.items()))


def node_template(d: DetectionResult) -> str:
    lines = [
        f"FROM node:{_node_major(d)}-alpine",
        "WORKDIR /app",
        "",
        _lockfiles(d),
        f"RUN {d.install_command or 'npm install'}",
        "",
        "COPY . .",
    ]
    if d.build_command:
        lines.append(f"RUN {d.build_command}")
    lines += [
        "",
        "ENV NODE_ENV=production",
        f"ENV PORT={d.port}",
        _env_lines(d),
        f"EXPOSE {d.port}",
        _cmd(d.start_command or "npm start"),
    ]
    return "\n".join(lines).strip() + "\n"


def nestjs_template(d: DetectionResult) -> str:
    return f"""\
FROM node:{_node_major(d)}-alpine AS builder
WORKDIR /app

{_lockfiles(d)}
RUN {d.install_command or 'npm install'}

COPY . .
RUN {d.build_command or 'npm run build'}

FROM node:{_node_major(d)}-alpine
WORKDIR /app

COPY package*.json ./
RUN npm install --omit=dev
COPY --from=builder /app/dist ./dist

ENV NODE_ENV=production
ENV PORT={d.port}
EXPOSE {d.port}
{_cmd(d.start_command or 'node dist/main.js')}
"""


def python_template(d: DetectionResult) -> str:
    return f"""\
FROM python:3.11-slim
WORKDIR /app

COPY . .
RUN {'pip install --no-cache-dir poetry && poetry config virtualenvs.create false && ' if d.package_manager == 'poetry' else ''}{d.install_command or 'pip install --no-cache-dir -r requirements.txt'}

ENV PYTHONUNBUFFERED=1
ENV PORT={d.port}
EXPOSE {d.port}
{_cmd(d.start_command or 'python app.py')}
"""


def go_template(d: DetectionResult) -> str:
    return f"""\
FROM golang:1.22-alpine AS builder
WORKDIR /app

COPY go.* ./
RUN go mod download
COPY . .
RUN CGO_ENABLED=0 GOOS=linux go build -o app

FROM alpine:3.19
RUN apk --no-cache add ca-certificates
WORKDIR /app
COPY --from=builder /app/app .

ENV PORT={d.port}
EXPOSE {d.port}
CMD ["./app"]
"""


def maven_template(d: DetectionResult) -> str:
    return f"""\
FROM maven:3.9-eclipse-temurin-21 AS builder
WORKDIR /app

COPY pom.xml ./
RUN mvn -B dependency:go-offline
COPY . .
RUN {d.build_command or 'mvn -B -DskipTests clean package'} && cp $(ls target/*.jar | grep -v original | head -n 1) app.jar

FROM eclipse-temurin:21-jre
WORKDIR /app
COPY --from=builder /app/app.jar ./app.jar

ENV PORT={d.port}
EXPOSE {d.port}
{_cmd(d.start_command or 'java -jar app.jar')}
"""


def gradle_template(d: DetectionResult) -> str:
    return f"""\
FROM gradle:8-jdk21 AS builder
WORKDIR /app

COPY . .
RUN {d.build_command or 'gradle build -x test --console=plain'} && cp $(ls build/libs/*.jar | grep -v plain | head -n 1) app.jar

FROM eclipse-temurin:21-jre
WORKDIR /app
COPY --from=builder /app/app.jar ./app.jar

ENV PORT={d.port}
EXPOSE {d.port}
{_cmd(d.start_command or 'java -jar app.jar')}
"""


def php_template(d: DetectionResult) -> str:
    return f"""\
FROM php:8.3-cli
RUN apt-get update && apt-get install -y --no-install-recommends unzip git && rm -rf /var/lib/apt/lists/*
COPY --from=composer:2 /usr/bin/composer /usr/bin/composer
WORKDIR /app

COPY . .
RUN {d.install_command or 'composer install --no-dev --no-interaction'}

ENV PORT={d.port}
EXPOSE {d.port}
{_cmd(d.start_command or 'php -S 0.0.0.0:8000 -t public')}
"""


def dotnet_template(d: DetectionResult) -> str:
    return f"""\
FROM mcr.microsoft.com/dotnet/sdk:8.0 AS builder
WORKDIR /app

COPY *.csproj ./
RUN {d.install_command or 'dotnet restore'}
COPY . .
RUN {d.build_command or 'dotnet publish -c Release -o out'}

FROM mcr.microsoft.com/dotnet/aspnet:8.0
WORKDIR /app
COPY --from=builder /app/out ./

{_env_lines(d)}
EXPOSE {d.port}
{_cmd(d.start_command or 'dotnet app.dll')}
"""


def rust_template(d: DetectionResult) -> str:
    return f"""\
FROM rust:1-slim AS builder
WORKDIR /app

COPY . .
RUN {d.build_command or 'cargo build --release'}

FROM debian:bookworm-slim
RUN apt-get update && apt-get install -y --no-install-recommends ca-certificates && rm -rf /var/lib/apt/lists/*
WORKDIR /app
COPY --from=builder /app/target/release/ ./

ENV PORT={d.port}
EXPOSE {d.port}
{_cmd(d.start_command or './app')}
"""


def _node_major(d: DetectionResult) -> str:
    match = re.search(r"\d+", d.node_version or "")
    return match.group(0) if match else "20"


DOCKERFILE_TEMPLATES: dict[str, Callable[[DetectionResult], str]] = {
    "node": node_template,
    "nestjs": nestjs_template,
    "flask": python_template,
    "django": python_template,
    "fastapi": python_template,
    "go": go_template,
    "laravel": php_template,
    "php": php_template,
    "dotnet": dotnet_template,
    "rust": rust_template,
}

# Java frameworks build the same way whatever the framework
PACKAGE_MANAGER_TEMPLATES: dict[str, Callable[[DetectionResult], str]] = {
    "maven": maven_template,
    "gradle": gradle_template,
}


def generate_dockerfile(detection: DetectionResult) -> str:
    """Dockerfile content for the detected framework, then its build tool."""
    template = DOCKERFILE_TEMPLATES.get(detection.framework)
    if template is None:
        template = PACKAGE_MANAGER_TEMPLATES.get(detection.package_manager or "", node_template)
    return template(detection)
