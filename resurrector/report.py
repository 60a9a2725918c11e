"""Functional Requirements Specification (FRS) built from an analysis result.

``build_report`` is a pure function: it reads the job record, the analysis and
optionally the transformation plan and returns Markdown text.
"""

from datetime import datetime, timezone
from typing import List, Optional

from .heuristics import TABLE_MODULES
from .schemas import AnalysisResult, Job, TransformationPlan

REPORT_NAME = "FRS.md"
REPORT_PATH = f"docs/{REPORT_NAME}"

BUSINESS_DOMAINS = {
    "SD": "Sales & Distribution",
    "MM": "Materials Management",
    "FI": "Financial Accounting",
    "CO": "Controlling",
    "HR": "Human Resources",
    "PP": "Production Planning",
    "CUSTOM": "Custom Development",
}

TABLE_DESCRIPTIONS = {
    "VBAK": "Sales Document Header",
    "VBAP": "Sales Document Items",
    "KNA1": "Customer Master (General)",
    "KONV": "Conditions (Pricing)",
    "MARA": "Material Master",
    "EKKO": "Purchase Order Header",
    "EKPO": "Purchase Order Items",
    "BKPF": "Accounting Document Header",
    "BSEG": "Accounting Document Line Items",
    "LFA1": "Vendor Master",
}

PATTERN_DESCRIPTIONS = {
    "SAP Pricing Procedure": "Condition-based pricing with discounts and taxes",
    "SAP Authorization": "Role-based access control using authorization objects",
    "SAP Number Range": "Configurable number range for document numbering",
    "SAP Batch Processing": "Large-scale data processing in batches",
}


def business_domain(module: str) -> str:
    return BUSINESS_DOMAINS.get(module, "Unknown")


def complexity_classification(complexity: int) -> str:
    if complexity <= 3:
        return "Low - Simple transformation"
    if complexity <= 6:
        return "Medium - Moderate complexity"
    return "High - Complex transformation requiring careful review"


def _matching_table(entity_name: str, tables: List[str]) -> Optional[str]:
    normalized = entity_name.upper()
    for table in tables:
        if table in normalized or normalized in table:
            return table
    return None


def _title(job: Job, generated_on: str) -> str:
    return "\n".join(
        [
            "# Functional Requirements Specification (FRS)",
            "",
            f"**Project:** {job.name}",
            f"**Generated:** {generated_on}",
            f"**Resurrection ID:** {job.id}",
            "",
            "---",
        ]
    )


def _overview(job: Job, analysis: AnalysisResult) -> str:
    scope = job.description or (
        "This resurrection transforms legacy ABAP code into a cloud-native CAP application "
        "while preserving its business logic."
    )
    return "\n".join(
        [
            "## 1. Overview",
            "",
            "### 1.1 Purpose",
            "",
            f'Functional requirements and transformation details for "{job.name}".',
            "",
            "### 1.2 Scope",
            "",
            scope,
            "",
            "### 1.3 Module Classification",
            "",
            f"- **SAP Module:** {analysis.module}",
            f"- **Complexity Score:** {analysis.complexity}/10",
            f"- **Business Domain:** {business_domain(analysis.module)}",
        ]
    )


def _source_analysis(analysis: AnalysisResult) -> str:
    lines = [
        "## 2. Original ABAP Analysis",
        "",
        "### 2.1 Module Information",
        "",
        f"- **Module:** {analysis.module}",
        f"- **Complexity:** {analysis.complexity}/10",
        f"- **Classification:** {complexity_classification(analysis.complexity)}",
        "",
    ]
    if analysis.tables:
        lines += ["### 2.2 Database Tables Used", "", "| Table | Description | Module |", "|-------|-------------|--------|"]
        for table in analysis.tables:
            description = TABLE_DESCRIPTIONS.get(table, "Custom or unknown table")
            lines.append(f"| {table} | {description} | {TABLE_MODULES.get(table, 'CUSTOM')} |")
        lines.append("")
    if analysis.business_logic:
        lines += ["### 2.3 Business Logic Identified", ""]
        lines += [f"- **{item}**" for item in analysis.business_logic]
        lines.append("")
    if analysis.patterns:
        lines += ["### 2.4 SAP Patterns Detected", ""]
        for pattern in analysis.patterns:
            lines.append(f"- **{pattern}**")
            lines.append(f"  - {PATTERN_DESCRIPTIONS.get(pattern, 'SAP-specific implementation pattern')}")
        lines.append("")
    if analysis.dependencies:
        lines += ["### 2.5 Dependencies", ""]
        lines += [f"- {dep}" for dep in analysis.dependencies]
        lines.append("")
    return "\n".join(lines).rstrip()


def _transformation_mapping(analysis: AnalysisResult, plan: TransformationPlan) -> str:
    lines = [
        "## 3. Transformation Mapping",
        "",
        "### 3.1 Target Framework",
        "",
        "- **Framework:** SAP Cloud Application Programming (CAP) Model",
        "- **Language:** Node.js with CDS",
        "- **API Protocol:** OData V4",
        "",
    ]
    if plan.entities:
        lines += ["### 3.2 Entity Mapping", "", "| ABAP Table | CAP Entity | Fields |", "|------------|------------|--------|"]
        for entity in plan.entities:
            table = entity.source_table or _matching_table(entity.name, analysis.tables)
            lines.append(f"| {table or 'N/A'} | {entity.name} | {len(entity.fields)} |")
        lines.append("")
    if plan.services:
        lines += ["### 3.3 Service Mapping", ""]
        for service in plan.services:
            lines += [f"#### {service.name}", "", "**Operations:**"]
            lines += [f"- {op}" for op in service.operations]
            lines.append("")
    if plan.business_logic:
        lines += ["### 3.4 Business Logic Preservation", ""]
        lines += [f"- **{item}**" for item in plan.business_logic]
        lines.append("")
    return "\n".join(lines).rstrip()


def _quality_metrics(job: Job) -> str:
    original = job.original_loc or 0
    transformed = job.transformed_loc or 0
    saved = job.loc_saved or 0
    reduction = round(saved / original * 100) if original > 0 else 0
    quality = job.quality_score or 0
    return "\n".join(
        [
            "## 4. Quality Metrics",
            "",
            "### 4.1 Code Reduction",
            "",
            f"- **Original ABAP LOC:** {original:,}",
            f"- **Transformed CAP LOC:** {transformed:,}",
            f"- **Lines Saved:** {saved:,}",
            f"- **Reduction Percentage:** {reduction}%",
            "",
            "### 4.2 Quality Score",
            "",
            f"- **Overall Quality Score:** {quality:g}/100",
        ]
    )


def _business_logic(analysis: AnalysisResult) -> str:
    lines = ["## 5. Business Logic Preservation", "", "### 5.1 Critical Business Rules", ""]
    if analysis.business_logic:
        for idx, item in enumerate(analysis.business_logic, start=1):
            lines += [f"{idx}. **{item}**", "   - Implementation: CAP service handler", ""]
    else:
        lines += ["No specific business logic patterns were identified in the ABAP code.", ""]
    lines += [
        "### 5.2 Validation Strategy",
        "",
        "1. **Unit Tests:** Test individual service operations",
        "2. **Integration Tests:** Test end-to-end workflows",
        "3. **Comparison Testing:** Compare ABAP and CAP outputs for the same inputs",
    ]
    return "\n".join(lines)


def _technical_details() -> str:
    return "\n".join(
        [
            "## 6. Technical Details",
            "",
            "### 6.1 Architecture",
            "",
            "- **CDS Modeling:** Declarative data model in `db/schema.cds`",
            "- **OData V4 Services:** Service definitions in `srv/service.cds`",
            "- **Service Handlers:** Business logic in `srv/service.js`",
            "",
            "### 6.2 Security",
            "",
            "- **Authorization:** Role-based access control declared in `xs-security.json`",
        ]
    )


def _recommendations(analysis: AnalysisResult) -> str:
    items: List[str] = []
    if analysis.complexity >= 7:
        items.append("- **High Complexity:** Consider splitting the service into smaller services")
        items.append("- **Code Review:** Review the generated handlers before production use")
    items.append("- **Unit Tests:** Cover every service operation")
    if len(analysis.tables) > 5:
        items.append("- **Performance:** Index the fields used by the original SELECT statements")
    items.append("- **Monitoring:** Set up application logging and alerting")
    return "\n".join(
        [
            "## 7. Recommendations",
            "",
            "### 7.1 Next Steps",
            "",
            *items,
            "",
            "### 7.2 Deployment Checklist",
            "",
            "- [ ] Review and validate all business logic",
            "- [ ] Complete unit and integration testing",
            "- [ ] Configure the production database",
            "- [ ] Plan go-live and rollback strategy",
        ]
    )


def build_report(
    analysis: AnalysisResult,
    job: Job,
    plan: Optional[TransformationPlan] = None,
    *,
    generated_on: Optional[str] = None,
) -> str:
    generated_on = generated_on or datetime.now(timezone.utc).date().isoformat()
    sections = [_title(job, generated_on), _overview(job, analysis), _source_analysis(analysis)]
    if plan is not None:
        sections.append(_transformation_mapping(analysis, plan))
    sections += [
        _quality_metrics(job),
        _business_logic(analysis),
        _technical_details(),
        _recommendations(analysis),
    ]
    return "\n\n".join(sections) + "\n"
