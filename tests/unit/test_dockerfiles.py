"""Tests for generated Dockerfiles."""

from launchpad.dockerfiles import generate_dockerfile
from launchpad.models import DetectionResult, ProjectType


class TestGenerateDockerfile:
    def test_node_uses_lockfile_and_engine_version(self):
        detection = DetectionResult(
            framework="express",
            package_manager="pnpm",
            project_type=ProjectType.BACKEND,
            install_command="pnpm install --frozen-lockfile",
            build_command="pnpm run build",
            start_command="pnpm run start",
            node_version=">=18.12",
            port=3001,
            env={"FOO": "bar"},
        )

        content = generate_dockerfile(detection)

        assert content.startswith("FROM node:18-alpine")
        assert "COPY package*.json pnpm-lock.yaml ./" in content
        assert "RUN pnpm install --frozen-lockfile" in content
        assert "RUN pnpm run build" in content
        assert "ENV PORT=3001" in content
        assert "ENV FOO=bar" in content
        assert "EXPOSE 3001" in content
        assert 'CMD ["sh", "-c", "pnpm run start"]' in content

    def test_node_defaults(self):
        content = generate_dockerfile(DetectionResult(framework="nextjs"))

        assert content.startswith("FROM node:20-alpine")
        assert "RUN npm install" in content
        assert 'CMD ["sh", "-c", "npm start"]' in content

    def test_nestjs_is_multi_stage(self):
        content = generate_dockerfile(DetectionResult(framework="nestjs", port=3000))

        assert "AS builder" in content
        assert "COPY --from=builder /app/dist ./dist" in content
        assert 'CMD ["sh", "-c", "node dist/main.js"]' in content

    def test_python_poetry(self):
        detection = DetectionResult(
            framework="fastapi",
            package_manager="poetry",
            install_command="poetry install",
            start_command="uvicorn main:app --host 0.0.0.0 --port 8000",
            port=8000,
        )

        content = generate_dockerfile(detection)

        assert content.startswith("FROM python:3.11-slim")
        assert "pip install --no-cache-dir poetry" in content
        assert "poetry install" in content
        assert "EXPOSE 8000" in content

    def test_go(self):
        content = generate_dockerfile(DetectionResult(framework="go", port=8080))

        assert "FROM golang:1.22-alpine AS builder" in content
        assert 'CMD ["./app"]' in content

    def test_spring_on_maven_picks_maven_template(self):
        content = generate_dockerfile(
            DetectionResult(framework="spring", package_manager="maven", port=8080)
        )

        assert content.startswith("FROM maven:3.9-eclipse-temurin-21 AS builder")
        assert "FROM eclipse-temurin:21-jre" in content
        assert 'CMD ["sh", "-c", "java -jar app.jar"]' in content

    def test_spring_on_gradle_picks_gradle_template(self):
        content = generate_dockerfile(
            DetectionResult(framework="spring", package_manager="gradle", port=8080)
        )

        assert content.startswith("FROM gradle:8-jdk21 AS builder")
        assert "build/libs/*.jar" in content

    def test_rust_copies_release_binaries(self):
        content = generate_dockerfile(
            DetectionResult(framework="rust", start_command="./api-server", port=8080)
        )

        assert "RUN cargo build --release" in content
        assert "COPY --from=builder /app/target/release/ ./" in content
        assert 'CMD ["sh", "-c", "./api-server"]' in content

    def test_dotnet_publishes_and_sets_urls(self):
        detection = DetectionResult(
            framework="dotnet",
            install_command="dotnet restore",
            build_command="dotnet publish -c Release -o out",
            start_command="dotnet Shop.Api.dll",
            env={"ASPNETCORE_URLS": "http://+:8080"},
            port=8080,
        )

        content = generate_dockerfile(detection)

        assert "FROM mcr.microsoft.com/dotnet/aspnet:8.0" in content
        assert "ENV ASPNETCORE_URLS=http://+:8080" in content
        assert 'CMD ["sh", "-c", "dotnet Shop.Api.dll"]' in content

    def test_php_installs_with_composer(self):
        content = generate_dockerfile(
            DetectionResult(
                framework="laravel",
                install_command="composer install --no-dev --no-interaction",
                port=8000,
            )
        )

        assert "COPY --from=composer:2 /usr/bin/composer /usr/bin/composer" in content
        assert "RUN composer install --no-dev --no-interaction" in content
