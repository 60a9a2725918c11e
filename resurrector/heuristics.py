"""Rule-based analysis and planning used when no tool server covers the role."""

import re
from typing import Dict, List, Optional

from .schemas import AnalysisResult, EntitySpec, ServiceSpec, TransformationPlan

TABLE_MODULES: Dict[str, str] = {
    "VBAK": "SD",
    "VBAP": "SD",
    "KNA1": "SD",
    "KONV": "SD",
    "LIKP": "SD",
    "MARA": "MM",
    "EKKO": "MM",
    "EKPO": "MM",
    "LFA1": "MM",
    "BKPF": "FI",
    "BSEG": "FI",
    "PA0001": "HR",
    "AFKO": "PP",
    "CSKS": "CO",
}

TABLE_ENTITIES: Dict[str, str] = {
    "VBAK": "SalesOrder",
    "VBAP": "SalesOrderItem",
    "KNA1": "Customer",
    "KONV": "PricingCondition",
    "LIKP": "Delivery",
    "MARA": "Material",
    "EKKO": "PurchaseOrder",
    "EKPO": "PurchaseOrderItem",
    "LFA1": "Vendor",
    "BKPF": "AccountingDocument",
    "BSEG": "AccountingDocumentItem",
}

PATTERN_RULES = [
    ("SAP Pricing Procedure", re.compile(r"\bKONV\b|PRICING|CONDITION", re.IGNORECASE)),
    ("SAP Authorization", re.compile(r"AUTHORITY-CHECK", re.IGNORECASE)),
    ("SAP Number Range", re.compile(r"NUMBER_GET_NEXT", re.IGNORECASE)),
    ("SAP Batch Processing", re.compile(r"PACKAGE\s+SIZE|BACKGROUND", re.IGNORECASE)),
]

_TABLE_RE = re.compile(
    r"\b(?:FROM|JOIN|UPDATE|MODIFY|INSERT\s+INTO|TABLES:?)\s+([A-Z][A-Z0-9_]{2,15})\b", re.IGNORECASE
)
_LOCAL_PREFIXES = ("LT_", "GT_", "LS_", "GS_", "WA_", "IT_", "LV_", "GV_")
_DEPENDENCY_RE = re.compile(
    r"\b(?:CALL\s+FUNCTION\s+'([A-Z0-9_/]+)'|PERFORM\s+([A-Z0-9_]+)|SUBMIT\s+([A-Z0-9_]+))",
    re.IGNORECASE,
)
_BRANCH_RE = re.compile(r"^\s*(IF|ELSEIF|CASE|WHEN|LOOP|DO|WHILE|SELECT)\b", re.IGNORECASE | re.MULTILINE)
_COMMENT_RE = re.compile(r"^\s*(?:\*|\")\s*(.+?)\s*$", re.MULTILINE)
_KEYWORDS = {"TABLE", "DATA", "INTO", "TABLES", "CORRESPONDING", "FIELDS", "SINGLE"}


def _unique(items: List[str]) -> List[str]:
    seen: List[str] = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return seen


def infer_module(tables: List[str], default: str = "CUSTOM") -> str:
    counts: Dict[str, int] = {}
    for table in tables:
        module = TABLE_MODULES.get(table)
        if module:
            counts[module] = counts.get(module, 0) + 1
    if not counts:
        return default
    return max(counts.items(), key=lambda item: item[1])[0]


def complexity_score(source: str) -> int:
    """1-10 score from branching density and size."""
    lines = [line for line in source.splitlines() if line.strip()]
    branches = len(_BRANCH_RE.findall(source))
    score = 1 + branches // 3 + len(lines) // 200
    return max(1, min(10, score))


def analyze_source(source: str, module_hint: Optional[str] = None) -> AnalysisResult:
    tables = _unique(
        [
            m.upper()
            for m in _TABLE_RE.findall(source)
            if m.upper() not in _KEYWORDS and not m.upper().startswith(_LOCAL_PREFIXES)
        ]
    )
    dependencies = _unique([next(g for g in groups if g).upper() for groups in _DEPENDENCY_RE.findall(source)])
    patterns = [name for name, rule in PATTERN_RULES if rule.search(source)]
    business_logic = _unique(
        [
            comment
            for comment in _COMMENT_RE.findall(source)
            if len(comment) > 8 and not set(comment) <= {"*", "-", "=", " "}
        ]
    )[:20]
    module = module_hint if module_hint and module_hint != "CUSTOM" else infer_module(tables)
    complexity = complexity_score(source)
    documentation = (
        f"Legacy {module} source with {len(tables)} table reference(s), "
        f"{len(dependencies)} dependency call(s) and complexity {complexity}/10."
    )
    return AnalysisResult(
        business_logic=business_logic,
        dependencies=dependencies,
        tables=tables,
        patterns=patterns,
        module=module,
        complexity=complexity,
        documentation=documentation,
    )


def entity_name_for_table(table: str) -> str:
    known = TABLE_ENTITIES.get(table.upper())
    if known:
        return known
    parts = re.split(r"[_\W]+", table.lower())
    return "".join(part.capitalize() for part in parts if part) or "Entity"


def plan_transformation(analysis: AnalysisResult) -> TransformationPlan:
    entities: List[EntitySpec] = [
        EntitySpec(
            name=entity_name_for_table(table),
            fields=["ID", "createdAt", "modifiedAt"],
            source_table=table,
        )
        for table in analysis.tables
    ]
    if not entities:
        entities.append(EntitySpec(name=f"{analysis.module.capitalize()}Record", fields=["ID", "description"]))

    operations = ["CREATE", "READ", "UPDATE", "DELETE"]
    services = [ServiceSpec(name=f"{entities[0].name}Service", operations=operations)]
    if "SAP Pricing Procedure" in analysis.patterns:
        services.append(ServiceSpec(name="PricingService", operations=["calculatePrice"]))
    if "SAP Authorization" in analysis.patterns:
        services.append(ServiceSpec(name="AuthorizationService", operations=["checkAuthorization"]))

    return TransformationPlan(
        entities=entities,
        services=services,
        business_logic=list(analysis.business_logic),
        patterns=list(analysis.patterns),
    )
