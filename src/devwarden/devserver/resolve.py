"""Plan resolution: deterministic, local-first dev server detection.

Resolution order:
    1. User override (explicit user choice)
    2. Last-known-good (previously worked, script still exists)
    3. Framework detection (package.json dependencies)
    4. Generic script detection (dev, start, develop, serve)
    5. Monorepo workspaces and nested project directories
    6. Low-confidence fallback (never auto-started)

Whatever this module returns is still untrusted: the supervisor validates
every plan again right before launching it.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, replace
from typing import Any, Protocol, runtime_checkable

from devwarden.command import (
    Confidence,
    DetectionMeta,
    DevServerPlan,
    SafeCommand,
    extract_script_name,
    validate_plan,
)
from devwarden.devserver.store import DevConfigStore

logger = logging.getLogger(__name__)


@runtime_checkable
class PlanResolver(Protocol):
    """Anything that can turn a project path into a DevServerPlan."""

    def resolve(self, project_path: str) -> DevServerPlan | None: ...


@dataclass(frozen=True)
class FrameworkPattern:
    id: str
    packages: tuple[str, ...]
    prefer_script: str
    dev_port: int


FRAMEWORK_PATTERNS: tuple[FrameworkPattern, ...] = (
    FrameworkPattern("nextjs", ("next",), "dev", 3000),
    FrameworkPattern("nuxt", ("nuxt",), "dev", 3000),
    FrameworkPattern("remix", ("@remix-run/react", "@remix-run/dev"), "dev", 5173),
    FrameworkPattern("astro", ("astro",), "dev", 4321),
    FrameworkPattern("sveltekit", ("@sveltejs/kit",), "dev", 5173),
    FrameworkPattern("vite", ("vite",), "dev", 5173),
    FrameworkPattern("gatsby", ("gatsby",), "develop", 8000),
    FrameworkPattern("cra", ("react-scripts",), "start", 3000),
    FrameworkPattern("angular", ("@angular/core", "@angular/cli"), "start", 4200),
    FrameworkPattern("vue", ("vue", "@vue/cli-service"), "dev", 5173),
    FrameworkPattern("express", ("express",), "dev", 3000),
    FrameworkPattern("nestjs", ("@nestjs/core",), "start:dev", 3000),
)

GENERIC_SCRIPTS: tuple[str, ...] = ("dev", "start", "develop", "serve")

_PORT_RE = re.compile(r"^PORT\s*=\s*(\d+)", re.MULTILINE)


def detect_package_manager(project_path: str, default: str = "npm") -> str:
    """Pick the package manager from the lockfile present."""
    if _exists(project_path, "bun.lockb") or _exists(project_path, "bun.lock"):
        return "bun"
    if _exists(project_path, "pnpm-lock.yaml"):
        return "pnpm"
    if _exists(project_path, "yarn.lock"):
        return "yarn"
    return default


def build_run_command(manager: str, script: str) -> SafeCommand:
    """``<pm> start``, ``<pm> <script>`` (yarn/pnpm) or ``<pm> run <script>``."""
    if script == "start":
        return SafeCommand(bin=manager, args=("start",))
    if manager in ("yarn", "pnpm"):
        return SafeCommand(bin=manager, args=(script,))
    return SafeCommand(bin=manager, args=("run", script))


def read_port_from_env(project_path: str) -> int | None:
    for name in (".env", ".env.local", ".env.development"):
        try:
            with open(os.path.join(project_path, name)) as f:
                match = _PORT_RE.search(f.read())
        except OSError:
            continue
        if match:
            return int(match.group(1))
    return None


def _exists(*parts: str) -> bool:
    return os.path.exists(os.path.join(*parts))


def _read_package_json(path: str) -> dict[str, Any] | None:
    try:
        with open(os.path.join(path, "package.json")) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _scripts(pkg: dict[str, Any] | None) -> dict[str, Any]:
    scripts = (pkg or {}).get("scripts") or {}
    return scripts if isinstance(scripts, dict) else {}


class PackageJsonResolver:
    """Default ``PlanResolver``: reads package.json and lockfiles."""

    def __init__(self, store: DevConfigStore | None = None) -> None:
        self._store = store

    def resolve(self, project_path: str) -> DevServerPlan:
        plan = self._resolve(project_path, use_store=True)
        result = validate_plan(plan)
        if not result.ok and plan.confidence is not Confidence.LOW:
            logger.warning("Resolved plan for %s is invalid: %s", project_path, result.error)
            plan.reasons.append(f"Plan failed validation: {result.error}")
            plan.confidence = Confidence.LOW
        return plan

    def _resolve(
        self,
        project_path: str,
        use_store: bool,
        inherited_manager: str = "npm",
    ) -> DevServerPlan:
        reasons: list[str] = []

        if use_store and self._store is not None:
            stored = self._from_store(project_path, reasons)
            if stored is not None:
                return stored

        pkg = _read_package_json(project_path)
        manager = detect_package_manager(project_path, default=inherited_manager)

        if pkg is not None:
            plan = self._from_package_json(project_path, pkg, manager, reasons)
            if plan is not None:
                return plan

        nested = self._from_nested(project_path, pkg, manager, reasons)
        if nested is not None:
            return nested

        if pkg is not None and _scripts(pkg):
            scripts = _scripts(pkg)
            reasons.append(f"Has {len(scripts)} scripts but none match dev patterns")
            return DevServerPlan(
                cwd=project_path,
                manager=manager,
                command=build_run_command(manager, next(iter(scripts))),
                port=read_port_from_env(project_path) or 3000,
                confidence=Confidence.LOW,
                reasons=reasons,
                detection=DetectionMeta(framework="node"),
            )

        reasons.append("Could not determine dev command; needs manual configuration")
        return DevServerPlan(
            cwd=project_path,
            manager=manager,
            command=build_run_command(manager, "dev"),
            confidence=Confidence.LOW,
            reasons=reasons,
        )

    def _from_store(self, project_path: str, reasons: list[str]) -> DevServerPlan | None:
        config = self._store.get(project_path)
        if config is None:
            return None

        override = config.user_override
        if override is not None:
            command = override.command.to_safe()
            reasons.append("User-configured command")
            script = extract_script_name(command)
            pkg = _read_package_json(project_path)
            if script and pkg is not None and script not in _scripts(pkg):
                reasons.append(
                    f'User override script "{script}" no longer exists in package.json'
                )
            else:
                plan = DevServerPlan(
                    cwd=project_path,
                    manager=command.bin,
                    command=command,
                    port=override.port,
                    confidence=Confidence.HIGH,
                    reasons=reasons,
                    detection=DetectionMeta(used_user_override=True),
                )
                result = validate_plan(plan)
                if result.ok:
                    logger.info("Using user override for %s", project_path)
                    return plan
                reasons.append(f"User override failed validation: {result.error}")

        lkg = config.last_known_good
        if lkg is not None and lkg.script_name:
            pkg = _read_package_json(lkg.spawn_cwd or project_path)
            if pkg is None:
                reasons.append("Could not read package.json to validate last-known-good")
            elif lkg.script_name not in _scripts(pkg):
                reasons.append(
                    f'Last-known-good script "{lkg.script_name}" no longer exists in package.json'
                )
            else:
                command = lkg.command.to_safe()
                reasons.append(f'Last-known-good (script "{lkg.script_name}" still exists)')
                plan = DevServerPlan(
                    cwd=project_path,
                    manager=command.bin,
                    command=command,
                    port=lkg.port,
                    confidence=Confidence.HIGH,
                    reasons=reasons,
                    detection=DetectionMeta(
                        framework=lkg.framework,
                        script=lkg.script_name,
                        used_last_known_good=True,
                    ),
                    spawn_cwd=lkg.spawn_cwd,
                )
                result = validate_plan(plan)
                if result.ok:
                    logger.info("Using last-known-good for %s", project_path)
                    return plan
                reasons.append(f"Last-known-good failed validation: {result.error}")
        return None

    def _from_package_json(
        self,
        project_path: str,
        pkg: dict[str, Any],
        manager: str,
        reasons: list[str],
    ) -> DevServerPlan | None:
        deps: dict[str, Any] = {}
        for key in ("dependencies", "devDependencies"):
            if isinstance(pkg.get(key), dict):
                deps.update(pkg[key])
        scripts = _scripts(pkg)
        env_port = read_port_from_env(project_path)

        for pattern in FRAMEWORK_PATTERNS:
            if not any(p in deps for p in pattern.packages):
                continue
            script = pattern.prefer_script
            if script not in scripts:
                script = next((s for s in ("dev", "start", "develop") if s in scripts), None)
                if script is None:
                    reasons.append(f"Framework {pattern.id} detected but no matching script found")
                    continue
            port = env_port or pattern.dev_port
            reasons.append(f"Detected framework: {pattern.id}")
            reasons.append(f'Using script: "{script}"')
            logger.info(
                "Framework detected for %s: %s -> %s (port %d)",
                project_path, pattern.id, script, port,
            )
            return DevServerPlan(
                cwd=project_path,
                manager=manager,
                command=build_run_command(manager, script),
                port=port,
                confidence=Confidence.HIGH,
                reasons=reasons,
                detection=DetectionMeta(framework=pattern.id, script=script),
            )

        for script in GENERIC_SCRIPTS:
            if script in scripts:
                reasons.append(f'No known framework, using script: "{script}"')
                return DevServerPlan(
                    cwd=project_path,
                    manager=manager,
                    command=build_run_command(manager, script),
                    port=env_port or 3000,
                    confidence=Confidence.MEDIUM,
                    reasons=reasons,
                    detection=DetectionMeta(framework="node", script=script),
                )
        return None

    def _from_nested(
        self,
        project_path: str,
        pkg: dict[str, Any] | None,
        manager: str,
        reasons: list[str],
    ) -> DevServerPlan | None:
        """Delegate to a workspace or a nested project directory.

        Workspaces usually share the root lockfile, so a nested project
        without its own lockfile inherits the root package manager.
        """
        for candidate in self._nested_candidates(project_path, pkg):
            if candidate == project_path:
                continue
            sub_pkg = _read_package_json(candidate)
            if not any(s in _scripts(sub_pkg) for s in GENERIC_SCRIPTS):
                continue
            name = os.path.relpath(candidate, project_path)
            logger.info("Delegating %s to nested project %s", project_path, name)
            sub_plan = self._resolve(candidate, use_store=False, inherited_manager=manager)
            return replace(
                sub_plan,
                cwd=project_path,
                spawn_cwd=sub_plan.spawn_cwd or candidate,
                reasons=[*reasons, f"Resolved from nested project {name}", *sub_plan.reasons],
                detection=replace(sub_plan.detection, used_monorepo_workspace=True),
            )
        return None

    def _nested_candidates(self, project_path: str, pkg: dict[str, Any] | None) -> list[str]:
        candidates: list[str] = []
        workspaces = (pkg or {}).get("workspaces")
        if isinstance(workspaces, dict):
            workspaces = workspaces.get("packages")
        if isinstance(workspaces, list):
            for ws in workspaces:
                if not isinstance(ws, str):
                    continue
                base = os.path.normpath(os.path.join(project_path, ws.removesuffix("/*")))
                if not base.startswith(project_path + os.sep):
                    continue
                if ws.endswith("/*") and os.path.isdir(base):
                    candidates.extend(
                        os.path.join(base, d) for d in sorted(os.listdir(base))
                    )
                candidates.append(base)

        try:
            entries = sorted(os.scandir(project_path), key=lambda e: e.name)
        except OSError:
            return candidates
        for entry in entries:
            if entry.name.startswith(".") or entry.name == "node_modules":
                continue
            if entry.is_dir():
                candidates.append(entry.path)
        return candidates
