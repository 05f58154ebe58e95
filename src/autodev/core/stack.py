"""Best-effort detection of a repository's language, framework and commands."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class DetectedStack:
    language: str
    framework: str | None = None
    test_command: str | None = None
    build_command: str | None = None
    lint_command: str | None = None
    package_manager: str = "unknown"
    description: str = "Unknown"


# First match wins, so meta-frameworks come before the libraries they build on.
NODE_FRAMEWORKS = [
    ("next", "Next.js"),
    ("nuxt", "Nuxt"),
    ("@sveltejs/kit", "SvelteKit"),
    ("svelte", "Svelte"),
    ("react", "React"),
    ("vue", "Vue"),
    ("express", "Express"),
    ("fastify", "Fastify"),
    ("@nestjs/core", "NestJS"),
    ("@remix-run/react", "Remix"),
    ("astro", "Astro"),
]

NODE_LOCKFILES = [
    ("bun.lockb", "bun"),
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
]


def detect_stack(repo_path: str | Path) -> DetectedStack:
    """Inspect marker files in ``repo_path`` and infer the project stack."""
    repo = Path(repo_path)

    if (repo / "package.json").exists():
        return _detect_node(repo)
    if (repo / "pyproject.toml").exists() or (repo / "setup.py").exists():
        return _detect_python(repo)
    if (repo / "Cargo.toml").exists():
        return DetectedStack(
            language="Rust",
            test_command="cargo test",
            build_command="cargo build",
            lint_command="cargo clippy",
            package_manager="cargo",
            description="Rust",
        )
    if (repo / "go.mod").exists():
        return DetectedStack(
            language="Go",
            test_command="go test ./...",
            build_command="go build ./...",
            lint_command="golangci-lint run",
            package_manager="go",
            description="Go",
        )
    if (repo / "pom.xml").exists():
        return DetectedStack(
            language="Java",
            test_command="mvn test",
            build_command="mvn compile",
            description="Java (Maven)",
        )
    if (repo / "build.gradle").exists() or (repo / "build.gradle.kts").exists():
        return DetectedStack(
            language="Java",
            test_command="./gradlew test",
            build_command="./gradlew build",
            description="Java (Gradle)",
        )
    return DetectedStack(language="Unknown")


def _detect_node(repo: Path) -> DetectedStack:
    try:
        pkg = json.loads((repo / "package.json").read_text())
    except (OSError, ValueError):
        logger.warning("Could not parse %s", repo / "package.json")
        pkg = {}
    if not isinstance(pkg, dict):
        pkg = {}

    deps = {**(pkg.get("dependencies") or {}), **(pkg.get("devDependencies") or {})}
    scripts = pkg.get("scripts") or {}

    if "typescript" in deps or "ts-node" in deps or (repo / "tsconfig.json").exists():
        language = "TypeScript"
    else:
        language = "JavaScript"

    framework = next((label for dep, label in NODE_FRAMEWORKS if dep in deps), None)
    pm = next((name for lockfile, name in NODE_LOCKFILES if (repo / lockfile).exists()), "npm")

    if "test" in scripts:
        test_command = f"{pm} test"
    elif "vitest" in deps:
        test_command = f"{pm} run vitest"
    elif "jest" in deps or "@jest/core" in deps or "mocha" in deps:
        test_command = f"{pm} test"
    elif "playwright" in deps or "@playwright/test" in deps:
        test_command = f"{pm} run playwright test"
    else:
        test_command = None

    if "build" in scripts or "vite" in deps or "next" in deps or "nuxt" in deps or "typescript" in deps:
        build_command = f"{pm} run build"
    else:
        build_command = None

    if "lint" in scripts or "eslint" in deps or "biome" in deps:
        lint_command = f"{pm} run lint"
    else:
        lint_command = None

    description = f"{language} + {framework}" if framework else language
    return DetectedStack(
        language=language,
        framework=framework,
        test_command=test_command,
        build_command=build_command,
        lint_command=lint_command,
        package_manager=pm,
        description=description,
    )


def _detect_python(repo: Path) -> DetectedStack:
    framework = None
    test_command = "pytest"

    manifest = ""
    for name in ("pyproject.toml", "setup.py"):
        path = repo / name
        if path.exists():
            manifest += path.read_text(errors="replace").lower()

    if "django" in manifest:
        framework = "Django"
        test_command = "python manage.py test"
    elif "fastapi" in manifest:
        framework = "FastAPI"
    elif "flask" in manifest:
        framework = "Flask"

    return DetectedStack(
        language="Python",
        framework=framework,
        test_command=test_command,
        lint_command="ruff check .",
        package_manager="pip",
        description=f"Python + {framework}" if framework else "Python",
    )
