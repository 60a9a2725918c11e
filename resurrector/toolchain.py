import asyncio
import json
import logging
import re
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .config import ToolchainConfig
from .report import REPORT_PATH
from .schemas import (
    AnalysisResult,
    EntitySpec,
    GeneratedFile,
    GeneratedProject,
    QualityCheck,
    TransformationPlan,
    ValidationReport,
)

logger = logging.getLogger("uvicorn.error")

_SKIP_DIRS = {"node_modules", ".git", "gen"}
_CODE_SUFFIXES = {".cds", ".js"}

RECOMMENDATIONS = {
    "CDS Syntax": "Review CDS model definitions and ensure all files have valid syntax",
    "CAP Structure": "Ensure the db/ and srv/ folders and project descriptors are present",
    "Package.json Completeness": "Add missing dependencies: @sap/cds, @sap/xssec, and required scripts",
    "MTA Configuration": "Complete mta.yaml with all required modules and resources",
    "Security Configuration": "Configure xs-security.json with proper scopes and role templates",
    "Documentation": "Add a README with setup and deployment instructions",
}


class ToolchainUnavailableError(RuntimeError):
    """The build tool could not be launched or did not finish."""


class UnsafeFilePathError(ValueError):
    def __init__(self, rel_path: str):
        self.rel_path = rel_path
        super().__init__(f"Generated file path '{rel_path}' is outside the project directory")


def project_file(root: Path, rel_path: str) -> Path:
    """Resolve ``rel_path`` under ``root``, refusing absolute paths and escapes."""
    base = root.resolve()
    target = (root / rel_path).resolve()
    if Path(rel_path).is_absolute() or target == base or not target.is_relative_to(base):
        raise UnsafeFilePathError(rel_path)
    return target


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-") or "project"


def count_code_lines(project: GeneratedProject) -> int:
    total = 0
    for item in project.files:
        if Path(item.path).suffix in _CODE_SUFFIXES:
            total += sum(1 for line in item.content.splitlines() if line.strip())
    return total


def _cds_type(field: str) -> str:
    if field == "ID":
        return "UUID"
    if field.endswith("At"):
        return "Timestamp"
    if field.lower().endswith(("amount", "price", "value")):
        return "Decimal(15, 2)"
    return "String(255)"


def _render_entity(entity: EntitySpec) -> str:
    lines = [f"entity {entity.name} {{"]
    for field in entity.fields or ["ID"]:
        prefix = "key " if field == "ID" else ""
        lines.append(f"  {prefix}{field} : {_cds_type(field)};")
    lines.append("}")
    if entity.source_table:
        lines.insert(0, f"// replaces {entity.source_table}")
    return "\n".join(lines)


def render_schema(namespace: str, plan: TransformationPlan) -> str:
    body = "\n\n".join(_render_entity(entity) for entity in plan.entities)
    return f"namespace {namespace};\n\n{body}\n"


def render_service_cds(namespace: str, plan: TransformationPlan) -> str:
    lines = [f"using {namespace} as db from '../db/schema';", ""]
    for service in plan.services:
        lines.append(f"service {service.name} {{")
        for entity in plan.entities:
            lines.append(f"  entity {entity.name} as projection on db.{entity.name};")
        for op in service.operations:
            if op not in {"CREATE", "READ", "UPDATE", "DELETE"}:
                lines.append(f"  action {op}(input : String) returns String;")
        lines.append("}")
        lines.append("")
    return "\n".join(lines)


def render_service_js(plan: TransformationPlan) -> str:
    lines = ["const cds = require('@sap/cds');", "", "module.exports = cds.service.impl(async function () {"]
    for item in plan.business_logic:
        lines.append(f"  // {item}")
    for entity in plan.entities:
        lines.append(f"  this.before('CREATE', '{entity.name}', (req) => {{")
        lines.append("    if (!req.data) req.reject(400, 'Missing payload');")
        lines.append("  });")
    lines.append("});")
    return "\n".join(lines) + "\n"


def render_package_json(name: str) -> str:
    package = {
        "name": name,
        "version": "1.0.0",
        "description": f"{name} generated from legacy ABAP",
        "scripts": {"start": "cds-serve", "build": "cds build --production"},
        "dependencies": {"@sap/cds": "^7", "@sap/xssec": "^3", "express": "^4"},
        "devDependencies": {"@cap-js/sqlite": "^1"},
        "cds": {"requires": {"db": {"kind": "sqlite"}}},
    }
    return json.dumps(package, indent=2) + "\n"


def render_mta(name: str) -> str:
    return "\n".join(
        [
            "_schema-version: '3.1'",
            f"ID: {name}",
            "version: 1.0.0",
            "modules:",
            f"  - name: {name}-srv",
            "    type: nodejs",
            "    path: gen/srv",
            "    requires:",
            f"      - name: {name}-db",
            f"  - name: {name}-db-deployer",
            "    type: hdb",
            "    path: gen/db",
            "    requires:",
            f"      - name: {name}-db",
            "resources:",
            f"  - name: {name}-db",
            "    type: com.sap.xs.hdi-container",
            "",
        ]
    )


def render_xs_security(name: str) -> str:
    security = {
        "xsappname": name,
        "tenant-mode": "dedicated",
        "scopes": [{"name": "$XSAPPNAME.User", "description": "User"}],
        "role-templates": [
            {"name": "User", "description": "Default user", "scope-references": ["$XSAPPNAME.User"]}
        ],
    }
    return json.dumps(security, indent=2) + "\n"


CI_WORKFLOW_PATH = ".github/workflows/ci.yml"


def render_ci_workflow() -> str:
    return "\n".join(
        [
            "name: CI",
            "",
            "on:",
            "  push:",
            "    branches: [ main, develop ]",
            "  pull_request:",
            "    branches: [ main ]",
            "",
            "jobs:",
            "  build:",
            "    runs-on: ubuntu-latest",
            "    steps:",
            "      - name: Checkout code",
            "        uses: actions/checkout@v4",
            "      - name: Setup Node.js",
            "        uses: actions/setup-node@v4",
            "        with:",
            "          node-version: '18'",
            "      - name: Install dependencies",
            "        run: npm install",
            "      - name: Build CAP project",
            "        run: npm run build",
            "  validate:",
            "    runs-on: ubuntu-latest",
            "    steps:",
            "      - name: Checkout code",
            "        uses: actions/checkout@v4",
            "      - name: Setup Node.js",
            "        uses: actions/setup-node@v4",
            "        with:",
            "          node-version: '18'",
            "      - name: Install CDS tools",
            "        run: npm install -g @sap/cds-dk",
            "      - name: Validate CDS models",
            "        run: cds compile db --to sql",
            "",
        ]
    )


def render_readme(name: str, analysis: AnalysisResult, plan: TransformationPlan) -> str:
    entities = "\n".join(f"- {entity.name}" for entity in plan.entities)
    services = "\n".join(f"- {service.name}" for service in plan.services)
    return "\n".join(
        [
            f"# {name}",
            "",
            f"{analysis.documentation or 'Generated CAP project.'}",
            "",
            "## Architecture",
            "",
            "Entities:",
            entities,
            "",
            "Services:",
            services,
            "",
            "## Setup",
            "",
            "```",
            "npm install",
            "cds watch",
            "```",
            "",
            "## Deployment",
            "",
            "```",
            "mbt build && cf deploy mta_archives/*.mtar",
            "```",
            "",
        ]
    )


def quality_checks(project: GeneratedProject) -> List[QualityCheck]:
    files = {item.path: item.content for item in project.files}
    db_files = [path for path in files if path.startswith("db/")]
    srv_files = [path for path in files if path.startswith("srv/")]
    checks: List[QualityCheck] = []

    cds_ok = bool(db_files) and all(files[p].strip() and p.endswith(".cds") for p in db_files)
    checks.append(
        QualityCheck(
            name="CDS Syntax",
            passed=cds_ok,
            message="CDS files are valid" if cds_ok else "CDS syntax validation failed",
            details={"file_count": len(db_files)},
        )
    )

    structure = {
        "has_db": bool(db_files),
        "has_srv": bool(srv_files),
        "has_package_json": "package.json" in files,
        "has_mta_yaml": "mta.yaml" in files,
    }
    checks.append(
        QualityCheck(
            name="CAP Structure",
            passed=all(structure.values()),
            message="CAP project structure is complete"
            if all(structure.values())
            else "CAP project structure is incomplete",
            details=structure,
        )
    )

    try:
        pkg = json.loads(files.get("package.json") or "")
        deps = pkg.get("dependencies") or {}
        pkg_details = {
            "has_name": bool(pkg.get("name")),
            "has_version": bool(pkg.get("version")),
            "has_scripts": bool(pkg.get("scripts")),
            "has_cds_dependency": "@sap/cds" in deps,
            "has_xssec_dependency": "@sap/xssec" in deps,
        }
        checks.append(
            QualityCheck(
                name="Package.json Completeness",
                passed=all(pkg_details.values()),
                message="package.json is complete"
                if all(pkg_details.values())
                else "package.json is missing required fields",
                details=pkg_details,
            )
        )
    except ValueError as exc:
        checks.append(
            QualityCheck(
                name="Package.json Completeness",
                passed=False,
                message="package.json is invalid JSON",
                details={"error": str(exc)},
            )
        )

    mta = files.get("mta.yaml") or ""
    mta_details = {
        "has_modules": "modules:" in mta,
        "has_resources": "resources:" in mta,
        "has_db_module": "type: hdb" in mta or "hdi-container" in mta,
        "has_service_module": "type: nodejs" in mta,
    }
    checks.append(
        QualityCheck(
            name="MTA Configuration",
            passed=all(mta_details.values()),
            message="mta.yaml is properly configured"
            if all(mta_details.values())
            else "mta.yaml configuration is incomplete",
            details=mta_details,
        )
    )

    try:
        security = json.loads(files.get("xs-security.json") or "")
        sec_details = {
            "has_xsappname": bool(security.get("xsappname")),
            "has_scopes": bool(security.get("scopes")),
            "has_role_templates": bool(security.get("role-templates")),
        }
        checks.append(
            QualityCheck(
                name="Security Configuration",
                passed=all(sec_details.values()),
                severity="warning",
                message="xs-security.json is properly configured"
                if all(sec_details.values())
                else "xs-security.json configuration is incomplete",
                details=sec_details,
            )
        )
    except ValueError as exc:
        checks.append(
            QualityCheck(
                name="Security Configuration",
                passed=False,
                severity="warning",
                message="xs-security.json is invalid JSON",
                details={"error": str(exc)},
            )
        )

    readme = files.get("README.md") or ""
    doc_ok = bool(readme) and ("Setup" in readme or "Installation" in readme) and "Deploy" in readme
    checks.append(
        QualityCheck(
            name="Documentation",
            passed=doc_ok,
            severity="info",
            message="Documentation is complete" if doc_ok else "Documentation is incomplete",
        )
    )
    return checks


class Toolchain:
    """Local project generation and the build check run against it."""

    def __init__(self, config: ToolchainConfig, work_dir: str):
        self.config = config
        self.work_dir = Path(work_dir)

    async def _run(self, args: List[str], cwd: Path, timeout_s: float) -> Tuple[int, str]:
        def _runner() -> Tuple[int, str]:
            completed = subprocess.run(
                args,
                cwd=str(cwd),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=timeout_s,
                encoding="utf-8",
                errors="replace",
            )
            return completed.returncode, completed.stdout or ""

        try:
            return await asyncio.to_thread(_runner)
        except (FileNotFoundError, PermissionError) as exc:
            raise ToolchainUnavailableError(f"Build tool '{args[0]}' is not available: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ToolchainUnavailableError(f"'{' '.join(args)}' did not finish within {timeout_s:g}s") from exc

    def project_dir(self, project_name: str) -> Path:
        millis = int(time.time() * 1000)
        return self.work_dir / f"resurrection-{slugify(project_name)}-{millis}"

    async def _scaffold(self, root: Path, name: str) -> bool:
        if not self.config.scaffold_command:
            return False
        args = [part.replace("{name}", name) for part in self.config.scaffold_command]
        try:
            code, output = await self._run(args, root, self.config.scaffold_timeout_s)
        except ToolchainUnavailableError as exc:
            logger.warning("Scaffold command unavailable, writing project skeleton directly: %s", exc)
            return False
        if code != 0:
            logger.warning("Scaffold command exited with %s, writing project skeleton directly: %s", code, output[-500:])
            return False
        return True

    async def generate(
        self,
        project_name: str,
        analysis: AnalysisResult,
        plan: TransformationPlan,
        *,
        extra_files: Optional[Dict[str, str]] = None,
    ) -> GeneratedProject:
        name = slugify(project_name)
        root = self.project_dir(project_name)
        for rel_path in extra_files or {}:
            project_file(root, rel_path)
        await asyncio.to_thread(root.mkdir, parents=True, exist_ok=True)
        await self._scaffold(root, name)

        namespace = name.replace("-", ".")
        contents: Dict[str, str] = {
            "package.json": render_package_json(name),
            ".gitignore": "node_modules/\ngen/\n*.db\n",
            "db/schema.cds": render_schema(namespace, plan),
            "srv/service.cds": render_service_cds(namespace, plan),
            "srv/service.js": render_service_js(plan),
            "README.md": render_readme(name, analysis, plan),
            "mta.yaml": render_mta(name),
            "xs-security.json": render_xs_security(name),
            CI_WORKFLOW_PATH: render_ci_workflow(),
        }
        contents.update(extra_files or {})
        if analysis.report:
            contents[REPORT_PATH] = analysis.report

        await asyncio.to_thread(_write_files, root, contents)
        files = await asyncio.to_thread(_collect_files, root)
        logger.info("Generated project %s with %s files", root, len(files))
        return GeneratedProject(path=str(root), name=name, files=files)

    async def validate(self, project: GeneratedProject) -> ValidationReport:
        checks = quality_checks(project)
        diagnostics: List[str] = []
        exit_code: Optional[int] = None
        if self.config.validate_command:
            exit_code, output = await self._run(
                list(self.config.validate_command), Path(project.path), self.config.validate_timeout_s
            )
            lines = [line.rstrip() for line in output.splitlines() if line.strip()]
            if exit_code != 0:
                diagnostics.append(f"{' '.join(self.config.validate_command)} exited with code {exit_code}")
                diagnostics.extend(lines[-50:])
            else:
                diagnostics.extend(line for line in lines if "warn" in line.lower())
        for check in checks:
            if not check.passed:
                diagnostics.append(f"[{check.severity}] {check.name}: {check.message}")

        passed_count = sum(1 for check in checks if check.passed)
        score = round(passed_count / len(checks) * 100) if checks else 0
        errors_ok = all(check.passed for check in checks if check.severity == "error")
        return ValidationReport(
            passed=errors_ok and (exit_code in (None, 0)),
            score=score,
            checks=checks,
            diagnostics=diagnostics,
            recommendations=[RECOMMENDATIONS[c.name] for c in checks if not c.passed and c.name in RECOMMENDATIONS],
            build_exit_code=exit_code,
        )


def _write_files(root: Path, contents: Dict[str, str]) -> None:
    for rel_path, content in contents.items():
        target = project_file(root, rel_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content.encode("utf-8"))


def _collect_files(root: Path) -> List[GeneratedFile]:
    files: List[GeneratedFile] = []
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        rel = path.relative_to(root)
        if rel.parts and rel.parts[0] in _SKIP_DIRS:
            continue
        try:
            content = path.read_bytes().decode("utf-8")
        except UnicodeDecodeError:
            continue
        files.append(GeneratedFile(path=rel.as_posix(), content=content))
    return files
