"""Project detection - infers framework, toolchain and build settings from a tree."""

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
import json
import os
from pathlib import Path
import re
from typing import Any

import structlog

from launchpad.errors import DetectionError
from launchpad.models import DetectionResult, PipelineConfig, ProjectType

logger = structlog.get_logger()

MANIFESTS = (
    "package.json",
    "requirements.txt",
    "pyproject.toml",
    "go.mod",
    "pom.xml",
    "build.gradle",
    "build.gradle.kts",
    "composer.json",
    "pubspec.yaml",
    "Cargo.toml",
    "Dockerfile",
)
PIPELINE_CONFIG_FILE = "pipeline.json"
SKIP_DIRS = {"node_modules", "logs"}
DEFAULT_NODE_VERSION = "20"
NPM_DEFAULT_TEST = 'echo "Error: no test specified" && exit 1'

# (lockfile, package manager, install command), in order of preference
_LOCKFILES: list[tuple[str, str, str]] = [
    ("bun.lockb", "bun", "bun install"),
    ("pnpm-lock.yaml", "pnpm", "pnpm install --frozen-lockfile"),
    ("yarn.lock", "yarn", "yarn install --frozen-lockfile"),
    ("package-lock.json", "npm", "npm ci"),
]

# Static output directories, in order of preference, with the framework family each implies
STATIC_DIRS: list[tuple[str, str]] = [
    ("build", "React / SvelteKit"),
    ("dist", "Vue / Angular / Svelte / Vite"),
    ("out", "Next.js export"),
    (".next", "Next.js"),
    ("public", "plain static site"),
]


@dataclass
class ProjectContext:
    """What a detection rule gets to look at."""

    root: Path
    package_json: dict[str, Any] | None = None
    deps: dict[str, str] = field(default_factory=dict)
    scripts: dict[str, str] = field(default_factory=dict)

    def has(self, *parts: str) -> bool:
        return self.root.joinpath(*parts).exists()

    def read(self, name: str) -> str:
        try:
            return (self.root / name).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    @property
    def package_manager(self) -> str:
        return detect_package_manager(self.root)

    @property
    def install_command(self) -> str:
        return install_command_for(self.root)

    @property
    def language(self) -> str:
        return "typescript" if "typescript" in self.deps else "javascript"

    @property
    def node_version(self) -> str:
        engines = (self.package_json or {}).get("engines") or {}
        return str(engines.get("node") or DEFAULT_NODE_VERSION)

    def script(self, name: str, default: str | None = None) -> str | None:
        """Package-manager invocation of a package.json script, or ``default``."""
        if name not in self.scripts:
            return default
        manager = self.package_manager
        if manager == "yarn":
            return f"yarn {name}"
        return f"{manager} run {name}"

    @property
    def test_command(self) -> str | None:
        test = self.scripts.get("test")
        if not test or test.strip() == NPM_DEFAULT_TEST:
            return None
        return self.script("test")


@dataclass(frozen=True)
class DetectionRule:
    name: str
    detect: Callable[[ProjectContext], DetectionResult | None]


def detect_package_manager(root: Path) -> str | None:
    for lockfile, manager, _ in _LOCKFILES:
        if (root / lockfile).exists():
            return manager
    if (root / "package.json").exists():
        return "npm"
    return None


def install_command_for(root: Path) -> str:
    for lockfile, _, command in _LOCKFILES:
        if (root / lockfile).exists():
            return command
    return "npm install"


def _node_result(ctx: ProjectContext, **values: Any) -> DetectionResult:
    defaults = {
        "language": ctx.language,
        "package_manager": ctx.package_manager,
        "install_command": ctx.install_command,
        "test_command": ctx.test_command,
        "node_version": ctx.node_version,
    }
    return DetectionResult(**{**defaults, **values})


def _detect_dockerfile(ctx: ProjectContext) -> DetectionResult | None:
    if not ctx.has("Dockerfile"):
        return None
    port = 3000
    match = re.search(r"EXPOSE\s+(\d+)", ctx.read("Dockerfile"), re.IGNORECASE)
    if match:
        port = int(match.group(1))
    return DetectionResult(
        framework="docker",
        install_command=None,
        port=port,
        dockerfile_exists=True,
        confidence=100,
    )


def _detect_nextjs(ctx: ProjectContext) -> DetectionResult | None:
    if "next" not in ctx.deps:
        return None
    return _node_result(
        ctx,
        framework="nextjs",
        project_type=ProjectType.FULLSTACK,
        build_command=ctx.script("build", "npx next build"),
        start_command=ctx.script("start", "npx next start"),
        output_directory=".next",
        port=3000,
        env={"NEXT_TELEMETRY_DISABLED": "1"},
        confidence=95,
    )


def _detect_nuxt(ctx: ProjectContext) -> DetectionResult | None:
    if "nuxt" not in ctx.deps:
        return None
    return _node_result(
        ctx,
        framework="nuxt",
        project_type=ProjectType.FULLSTACK,
        build_command=ctx.script("build", "npx nuxt build"),
        start_command=ctx.script("start", "node .output/server/index.mjs"),
        output_directory=".output",
        port=3000,
        env={"NUXT_TELEMETRY_DISABLED": "1"},
        confidence=90,
    )


def _detect_nestjs(ctx: ProjectContext) -> DetectionResult | None:
    if "@nestjs/core" not in ctx.deps:
        return None
    return _node_result(
        ctx,
        framework="nestjs",
        language="typescript",
        project_type=ProjectType.BACKEND,
        build_command=ctx.script("build", "npx nest build"),
        start_command=ctx.script("start:prod", "node dist/main.js"),
        output_directory="dist",
        port=3000,
        confidence=90,
    )


def _detect_react(ctx: ProjectContext) -> DetectionResult | None:
    if "react" not in ctx.deps:
        return None
    is_vite = "vite" in ctx.deps
    return _node_result(
        ctx,
        framework="react",
        project_type=ProjectType.FRONTEND,
        build_command=ctx.script("build", "npx vite build" if is_vite else "npm run build"),
        start_command=ctx.script("start", "npx vite preview" if is_vite else "npx serve -s build"),
        output_directory="dist" if is_vite else "build",
        port=4173 if is_vite else 3000,
        confidence=85,
    )


def _detect_vue(ctx: ProjectContext) -> DetectionResult | None:
    if "vue" not in ctx.deps:
        return None
    return _node_result(
        ctx,
        framework="vue",
        project_type=ProjectType.FRONTEND,
        build_command=ctx.script("build", "npx vite build"),
        start_command=ctx.script("preview", "npx vite preview"),
        output_directory="dist",
        port=4173,
        confidence=85,
    )


def _detect_svelte(ctx: ProjectContext) -> DetectionResult | None:
    if "svelte" not in ctx.deps:
        return None
    is_kit = "@sveltejs/kit" in ctx.deps
    return _node_result(
        ctx,
        framework="sveltekit" if is_kit else "svelte",
        project_type=ProjectType.FULLSTACK if is_kit else ProjectType.FRONTEND,
        build_command=ctx.script("build", "npx vite build"),
        start_command=ctx.script("preview", "npx vite preview"),
        output_directory="build" if is_kit else "dist",
        port=4173,
        confidence=85,
    )


def _detect_angular(ctx: ProjectContext) -> DetectionResult | None:
    if "@angular/core" not in ctx.deps:
        return None
    return _node_result(
        ctx,
        framework="angular",
        language="typescript",
        project_type=ProjectType.FRONTEND,
        build_command=ctx.script("build", "npx ng build"),
        start_command=ctx.script("start", "npx ng serve"),
        output_directory="dist",
        port=4200,
        confidence=85,
    )


def _node_backend(framework: str) -> Callable[[ProjectContext], DetectionResult | None]:
    def detect(ctx: ProjectContext) -> DetectionResult | None:
        if framework not in ctx.deps:
            return None
        typescript = "typescript" in ctx.deps
        return _node_result(
            ctx,
            framework=framework,
            project_type=ProjectType.BACKEND,
            build_command=ctx.script("build", "npx tsc") if typescript else None,
            start_command=ctx.script("start", "node index.js"),
            output_directory="dist" if typescript else None,
            port=3000,
            confidence=80,
        )

    return detect


def _detect_node_generic(ctx: ProjectContext) -> DetectionResult | None:
    if ctx.package_json is None or "build" not in ctx.scripts:
        return None
    return _node_result(
        ctx,
        framework="node",
        project_type=ProjectType.FRONTEND if "start" not in ctx.scripts else ProjectType.BACKEND,
        build_command=ctx.script("build"),
        start_command=ctx.script("start"),
        port=3000,
        confidence=50,
    )


def _detect_python(ctx: ProjectContext) -> DetectionResult | None:
    has_requirements = ctx.has("requirements.txt")
    has_pyproject = ctx.has("pyproject.toml")
    if not has_requirements and not has_pyproject:
        return None

    content = (ctx.read("requirements.txt") + ctx.read("pyproject.toml")).lower()
    framework, start_command, port = "flask", "python app.py", 5000
    if "django" in content:
        framework, start_command, port = (
            "django",
            "python manage.py runserver 0.0.0.0:8000",
            8000,
        )
    elif "fastapi" in content or "uvicorn" in content:
        framework, start_command, port = (
            "fastapi",
            "uvicorn main:app --host 0.0.0.0 --port 8000",
            8000,
        )

    test_command = None
    if "pytest" in content or ctx.has("tests"):
        test_command = "python -m pytest"

    return DetectionResult(
        framework=framework,
        language="python",
        package_manager="poetry" if has_pyproject else "pip",
        project_type=ProjectType.BACKEND,
        install_command="poetry install" if has_pyproject else "pip install -r requirements.txt",
        start_command=start_command,
        test_command=test_command,
        port=port,
        env={"PYTHONUNBUFFERED": "1"},
        confidence=75,
    )


def _detect_go(ctx: ProjectContext) -> DetectionResult | None:
    if not ctx.has("go.mod"):
        return None
    return DetectionResult(
        framework="go",
        language="go",
        package_manager="go",
        project_type=ProjectType.BACKEND,
        install_command="go mod download",
        build_command="go build -o app",
        start_command="./app",
        test_command="go test ./...",
        port=8080,
        toolchain_image="golang:1.22-alpine",
        confidence=85,
    )


def _detect_maven(ctx: ProjectContext) -> DetectionResult | None:
    if not ctx.has("pom.xml"):
        return None
    return DetectionResult(
        framework="spring" if "spring-boot" in ctx.read("pom.xml") else "maven",
        language="java",
        package_manager="maven",
        project_type=ProjectType.BACKEND,
        build_command="mvn -B -DskipTests clean package",
        start_command="java -jar app.jar",
        test_command="mvn -B test",
        port=8080,
        toolchain_image="maven:3.9-eclipse-temurin-21",
        confidence=85,
    )


def _detect_gradle(ctx: ProjectContext) -> DetectionResult | None:
    build_file = next((n for n in ("build.gradle", "build.gradle.kts") if ctx.has(n)), None)
    if build_file is None:
        return None
    return DetectionResult(
        framework="spring" if "org.springframework.boot" in ctx.read(build_file) else "gradle",
        language="kotlin" if build_file.endswith(".kts") else "java",
        package_manager="gradle",
        project_type=ProjectType.BACKEND,
        build_command="gradle build -x test --console=plain",
        start_command="java -jar app.jar",
        test_command="gradle test --console=plain",
        port=8080,
        toolchain_image="gradle:8-jdk21",
        confidence=85,
    )


def _detect_php(ctx: ProjectContext) -> DetectionResult | None:
    if not ctx.has("composer.json"):
        return None
    is_laravel = ctx.has("artisan")
    docroot = "public" if ctx.has("public") else "."
    try:
        scripts = json.loads(ctx.read("composer.json") or "{}").get("scripts") or {}
    except (ValueError, AttributeError):
        scripts = {}
    return DetectionResult(
        framework="laravel" if is_laravel else "php",
        language="php",
        package_manager="composer",
        project_type=ProjectType.BACKEND,
        install_command="composer install --no-dev --no-interaction",
        start_command=f"php -S 0.0.0.0:8000 -t {docroot}",
        # Dev dependencies are left out of the image
        test_command=(
            "composer install --no-interaction && composer test --no-interaction"
            if "test" in scripts
            else None
        ),
        port=8000,
        confidence=80,
    )


def _detect_flutter(ctx: ProjectContext) -> DetectionResult | None:
    if not ctx.has("pubspec.yaml") or "flutter" not in ctx.read("pubspec.yaml"):
        return None
    return DetectionResult(
        framework="flutter",
        language="dart",
        package_manager="pub",
        project_type=ProjectType.FRONTEND,
        install_command="flutter pub get",
        build_command="flutter build web",
        test_command="flutter test" if ctx.has("test") else None,
        output_directory="build/web",
        port=80,
        toolchain_image="ghcr.io/cirruslabs/flutter:stable",
        confidence=85,
    )


def _detect_dotnet(ctx: ProjectContext) -> DetectionResult | None:
    csproj = sorted(ctx.root.glob("*.csproj"))
    if not csproj:
        return None
    assembly = csproj[0].stem
    return DetectionResult(
        framework="dotnet",
        language="csharp",
        package_manager="nuget",
        project_type=ProjectType.BACKEND,
        install_command="dotnet restore",
        build_command="dotnet publish -c Release -o out",
        start_command=f"dotnet {assembly}.dll",
        test_command="dotnet test --logger console --verbosity minimal",
        port=8080,
        env={"ASPNETCORE_URLS": "http://+:8080"},
        toolchain_image="mcr.microsoft.com/dotnet/sdk:8.0",
        confidence=85,
    )


def _detect_rust(ctx: ProjectContext) -> DetectionResult | None:
    if not ctx.has("Cargo.toml"):
        return None
    match = re.search(r'^name\s*=\s*"([^"]+)"', ctx.read("Cargo.toml"), re.MULTILINE)
    binary = match.group(1) if match else "app"
    return DetectionResult(
        framework="rust",
        language="rust",
        package_manager="cargo",
        project_type=ProjectType.BACKEND,
        build_command="cargo build --release",
        start_command=f"./{binary}",
        test_command="cargo test",
        port=8080,
        toolchain_image="rust:1-slim",
        confidence=85,
    )


def _detect_static(ctx: ProjectContext) -> DetectionResult | None:
    has_index = ctx.has("index.html")
    has_public = ctx.has("public", "index.html")
    if not has_index and not has_public:
        return None
    return DetectionResult(
        framework="static",
        language="html",
        project_type=ProjectType.STATIC,
        output_directory="public" if has_public else ".",
        port=80,
        confidence=60,
    )


# First match wins. Framework rules before their underlying libraries
# (next before react, nuxt before vue).
RULES: list[DetectionRule] = [
    DetectionRule("docker", _detect_dockerfile),
    DetectionRule("nextjs", _detect_nextjs),
    DetectionRule("nuxt", _detect_nuxt),
    DetectionRule("nestjs", _detect_nestjs),
    DetectionRule("react", _detect_react),
    DetectionRule("vue", _detect_vue),
    DetectionRule("svelte", _detect_svelte),
    DetectionRule("angular", _detect_angular),
    DetectionRule("express", _node_backend("express")),
    DetectionRule("fastify", _node_backend("fastify")),
    DetectionRule("node", _detect_node_generic),
    DetectionRule("python", _detect_python),
    DetectionRule("go", _detect_go),
    DetectionRule("maven", _detect_maven),
    DetectionRule("gradle", _detect_gradle),
    DetectionRule("php", _detect_php),
    DetectionRule("flutter", _detect_flutter),
    DetectionRule("dotnet", _detect_dotnet),
    DetectionRule("rust", _detect_rust),
    DetectionRule("static", _detect_static),
]


def _has_manifest(path: Path) -> bool:
    if any((path / name).exists() for name in MANIFESTS):
        return True
    return any(path.glob("*.csproj"))


def find_project_root(path: str | Path, root_directory: str | None = None, max_depth: int = 3) -> Path:
    """Locate the directory that actually holds the project manifest.

    An explicit ``root_directory`` wins when it exists. Otherwise the clone
    root is used if it has a manifest, else the shallowest subdirectory
    (breadth-first, up to ``max_depth``) that has one. Hidden directories,
    node_modules and logs are skipped.
    """
    base = Path(path)
    if root_directory and root_directory.strip("/") not in ("", "."):
        explicit = base / root_directory.strip("/")
        if explicit.is_dir():
            return explicit
        logger.warning("root_directory_missing", root_directory=root_directory, path=str(base))

    if _has_manifest(base):
        return base

    queue: deque[tuple[Path, int]] = deque([(base, 0)])
    while queue:
        current, depth = queue.popleft()
        if depth >= max_depth:
            continue
        try:
            children = sorted(entry for entry in current.iterdir() if entry.is_dir())
        except OSError:
            continue
        for child in children:
            if child.name.startswith(".") or child.name in SKIP_DIRS:
                continue
            if _has_manifest(child):
                logger.info("project_root_found", project_root=str(child))
                return child
            queue.append((child, depth + 1))

    return base


def _load_package_json(root: Path) -> dict[str, Any] | None:
    try:
        data = json.loads((root / "package.json").read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning("package_json_unreadable", error=str(e))
        return None
    return data if isinstance(data, dict) else None


def build_context(root: Path) -> ProjectContext:
    package_json = _load_package_json(root)
    deps: dict[str, str] = {}
    scripts: dict[str, str] = {}
    if package_json:
        deps = {
            **(package_json.get("dependencies") or {}),
            **(package_json.get("devDependencies") or {}),
        }
        scripts = package_json.get("scripts") or {}
    return ProjectContext(root=root, package_json=package_json, deps=deps, scripts=scripts)


def detect_project(path: str | Path, root_directory: str | None = None) -> DetectionResult:
    """Classify the checked-out tree at ``path``.

    Rules are tried in priority order; the first that matches wins. A rule
    that errors is skipped. Trees no rule recognizes fall back to a generic
    static result.

    Raises:
        DetectionError: ``path`` is not a directory
    """
    if not Path(path).is_dir():
        raise DetectionError(f"Project path does not exist: {path}")

    root = find_project_root(path, root_directory)
    ctx = build_context(root)
    logger.info("detection_started", project_root=str(root))

    for rule in RULES:
        try:
            result = rule.detect(ctx)
        except Exception as e:
            logger.warning("detection_rule_failed", rule=rule.name, error=str(e))
            continue
        if result is not None:
            result = result.model_copy(update={"project_root": str(root)})
            logger.info(
                "project_detected",
                framework=result.framework,
                language=result.language,
                confidence=result.confidence,
            )
            return result

    logger.warning("project_type_unknown", project_root=str(root))
    return DetectionResult(
        framework="unknown",
        language="unknown",
        package_manager=ctx.package_manager if ctx.package_json else None,
        project_type=ProjectType.STATIC,
        install_command=ctx.install_command if ctx.package_json else None,
        build_command=ctx.script("build"),
        start_command=ctx.script("start"),
        project_root=str(root),
        node_version=ctx.node_version if ctx.package_json else None,
        confidence=10,
    )


def load_pipeline_config(project_root: str | Path) -> PipelineConfig | None:
    """Commands pinned in the project's pipeline.json, or None.

    A missing file is the normal case. A file that is not a JSON object
    of the expected shape is logged and ignored.
    """
    path = Path(project_root) / PIPELINE_CONFIG_FILE
    try:
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
        config = PipelineConfig.model_validate(data)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning("pipeline_config_invalid", path=str(path), error=str(e))
        return None

    if config.post_deploy:
        logger.warning("pipeline_hook_ignored", hook="postDeploy", command=config.post_deploy)
    logger.info("pipeline_config_loaded", path=str(path))
    return config


def find_static_path(project_root: str | Path) -> Path:
    """First existing static output directory, falling back to the root."""
    root = Path(project_root)
    for name, family in STATIC_DIRS:
        candidate = root / name
        if candidate.is_dir():
            logger.info("static_path_resolved", directory=name, framework_family=family)
            return candidate
    logger.info("static_path_resolved", directory=".", framework_family="project root")
    return root


def ensure_index_html(static_path: str | Path) -> str | None:
    """Rename the alphabetically first .html file to index.html if none exists.

    Returns the renamed file's name, or None if nothing changed.
    """
    directory = Path(static_path)
    names = os.listdir(directory)
    if "index.html" in names:
        return None
    first_html = next(
        (
            name
            for name in sorted(names)
            if name.lower().endswith(".html") and (directory / name).is_file()
        ),
        None,
    )
    if first_html is None:
        return None
    (directory / first_html).rename(directory / "index.html")
    logger.info("index_html_created", renamed_from=first_html)
    return first_html
