#!/usr/bin/env python3
"""
clinical_schema.py

Clinical Argument Knowledge Graph Schema v1.0

Layout:
=======
1. CLOSED VOCABULARIES - 15 node types, 14 edge types, 3 coverage statuses
2. OPEN ATTRIBUTES - Node attributes are a free map of primitive values;
   required keys per node type are advisory (they live in the prompt)
3. REFERENTIAL INTEGRITY - Node ids are unique, every edge endpoint resolves
4. RISK PROJECTION - Optional sub-document attached after the coverage pass

Validation is binary: a payload either passes every check or a SchemaError
names the first class of violation found. Nothing is repaired here.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import json

SCHEMA_VERSION = "1.0.0"

AttributeValue = Union[str, int, float, bool]


# =============================================================================
# ENUMS - Constrained vocabularies
# =============================================================================

class NodeType(str, Enum):
    """Types of nodes in the clinical graph (case-sensitive)."""
    POPULATION = "Population"
    INTERVENTION = "Intervention"
    COMPARATOR = "Comparator"
    OUTCOME = "Outcome"
    CONDITION = "Condition"
    MEDICATION = "Medication"
    PROCEDURE = "Procedure"
    ANATOMY = "Anatomy"
    FINDING = "Finding"
    EVIDENCE = "Evidence"
    MECHANISM = "Mechanism"
    GUIDELINE = "Guideline"
    TIME_FRAME = "TimeFrame"
    RISK_FACTOR = "RiskFactor"
    SETTING = "Setting"


class EdgeType(str, Enum):
    """Types of directed relations between nodes."""
    TREATS = "treats"
    CAUSES = "causes"
    CONTRAINDICATED_FOR = "contraindicated_for"
    INDICATES = "indicates"
    ADMINISTERED_TO = "administered_to"
    COMPARED_WITH = "compared_with"
    MEASURED_IN = "measured_in"
    ASSOCIATED_WITH = "associated_with"
    SUPPORTS = "supports"
    LOCATED_IN = "located_in"
    OCCURS_DURING = "occurs_during"
    INCREASES_RISK_OF = "increases_risk_of"
    DECREASES_RISK_OF = "decreases_risk_of"
    PART_OF = "part_of"


class CoverageStatus(str, Enum):
    """Whether a transcript shows a risk factor being discussed."""
    ADDRESSED = "addressed"
    NOT_ADDRESSED = "not_addressed"
    UNCERTAIN = "uncertain"


NODE_TYPES = {nt.value for nt in NodeType}
EDGE_TYPES = {et.value for et in EdgeType}
COVERAGE_STATUSES = {cs.value for cs in CoverageStatus}

# Legacy argument-graph types the model sometimes drifts back to
FORBIDDEN_NODE_TYPES = (
    "Actor", "CausalClaim", "Assumption", "Recommendation", "OutcomeMetric", "TimeRef"
)


class SchemaError(Exception):
    """Decoded graph violates the node/edge contract."""

    def __init__(self, path: str, message: str, errors: Optional[List[str]] = None):
        self.path = path
        self.message = message
        self.errors = errors or [f"{path}: {message}"]
        super().__init__(f"Invalid KG schema at {path}: {message}")


# =============================================================================
# ATTRIBUTES
# =============================================================================

def coerce_attribute_value(value: Any) -> Optional[AttributeValue]:
    """Reduce a model-supplied attribute value to a primitive.

    Strings, numbers and booleans pass through. Lists and objects become
    compact JSON strings. None yields None (the caller drops the key).
    """
    if value is None:
        return None
    if isinstance(value, (str, bool, int, float)):
        return value
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def coerce_attributes(raw: Any) -> Dict[str, AttributeValue]:
    if not isinstance(raw, dict):
        return {}
    attrs: Dict[str, AttributeValue] = {}
    for key, value in raw.items():
        coerced = coerce_attribute_value(value)
        if coerced is not None:
            attrs[str(key)] = coerced
    return attrs


# =============================================================================
# NODES AND EDGES
# =============================================================================

@dataclass
class GraphNode:
    """A typed node extracted from the source text."""
    id: str
    type: NodeType
    label: str = ""
    attributes: Dict[str, AttributeValue] = field(default_factory=dict)
    source_span: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "GraphNode":
        span = data.get("source_span")
        return cls(
            id=data["id"],
            type=NodeType(data["type"]),
            label=str(data.get("label") or ""),
            attributes=coerce_attributes(data.get("attributes")),
            source_span=span if isinstance(span, str) else None,
        )

    def to_dict(self) -> Dict:
        d = {
            "id": self.id,
            "type": self.type.value,
            "label": self.label,
            "attributes": dict(self.attributes),
        }
        if self.source_span is not None:
            d["source_span"] = self.source_span
        return d


@dataclass
class GraphEdge:
    """A directed edge between two declared nodes."""
    source: str
    target: str
    type: EdgeType

    @classmethod
    def from_dict(cls, data: Dict) -> "GraphEdge":
        return cls(source=data["source"], target=data["target"], type=EdgeType(data["type"]))

    def to_dict(self) -> Dict:
        return {"source": self.source, "type": self.type.value, "target": self.target}


# =============================================================================
# RISK PROJECTION
# =============================================================================

@dataclass
class RiskFactorCoverage:
    """Coverage classification of one RiskFactor node against a transcript."""
    id: str
    label: str = ""
    status: CoverageStatus = CoverageStatus.UNCERTAIN
    doctor_quote: str = ""
    patient_quote: str = ""
    rationale: str = ""

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "label": self.label,
            "status": self.status.value,
            "doctor_quote": self.doctor_quote,
            "patient_quote": self.patient_quote,
            "rationale": self.rationale,
        }


@dataclass
class RiskProjection:
    """Result of the coverage pass over all RiskFactor nodes."""
    risk_factors: List[RiskFactorCoverage] = field(default_factory=list)
    summary: str = ""

    def get(self, node_id: str) -> Optional[RiskFactorCoverage]:
        """Return the entry for a node id (last one wins on duplicates)."""
        found = None
        for rf in self.risk_factors:
            if rf.id == node_id:
                found = rf
        return found

    def to_dict(self) -> Dict:
        return {
            "risk_factors": [rf.to_dict() for rf in self.risk_factors],
            "summary": self.summary,
        }


# =============================================================================
# THE COMPLETE DOCUMENT
# =============================================================================

@dataclass
class GraphDocument:
    """The complete extracted knowledge graph artifact."""
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)
    summary: str = ""
    risk_projection: Optional[RiskProjection] = None

    @classmethod
    def from_dict(cls, payload: Dict) -> "GraphDocument":
        """Build a document from a payload that already passed validation."""
        summary = payload.get("summary")
        return cls(
            nodes=[GraphNode.from_dict(n) for n in payload["nodes"]],
            edges=[GraphEdge.from_dict(e) for e in payload["edges"]],
            summary=summary.strip() if isinstance(summary, str) else "",
        )

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def nodes_of_type(self, node_type: NodeType) -> List[GraphNode]:
        return [n for n in self.nodes if n.type == node_type]

    def risk_factor_nodes(self) -> List[GraphNode]:
        return self.nodes_of_type(NodeType.RISK_FACTOR)

    def counts(self) -> Dict[str, int]:
        return {"nodes": len(self.nodes), "edges": len(self.edges)}

    def to_dict(self) -> Dict:
        d = {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "summary": self.summary,
        }
        if self.risk_projection is not None:
            d["risk_projection"] = self.risk_projection.to_dict()
        return d

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)


# =============================================================================
# VALIDATION
# =============================================================================

def _is_nonempty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _check_top_level(payload: Any) -> List[str]:
    if not isinstance(payload, dict):
        return [f"$: expected an object, got {type(payload).__name__}"]
    errors = []
    for key in ("nodes", "edges"):
        if key not in payload:
            errors.append(f"$.{key}: required field missing")
        elif not isinstance(payload[key], list):
            errors.append(f"$.{key}: expected an array, got {type(payload[key]).__name__}")
    if "summary" in payload and not isinstance(payload["summary"], str):
        errors.append("$.summary: expected a string")
    return errors


def _check_nodes(nodes: List[Any]) -> List[str]:
    errors = []
    for i, node in enumerate(nodes):
        if not isinstance(node, dict):
            errors.append(f"nodes[{i}]: expected an object")
            continue
        if not _is_nonempty_string(node.get("id")):
            errors.append(f"nodes[{i}].id: must be a non-empty string")
        node_type = node.get("type")
        if not (isinstance(node_type, str) and node_type in NODE_TYPES):
            errors.append(f"nodes[{i}].type: {node_type!r} is not an allowed node type")
        if "attributes" in node and node["attributes"] is not None \
                and not isinstance(node["attributes"], dict):
            errors.append(f"nodes[{i}].attributes: expected an object")
        span = node.get("source_span")
        if span is not None and not isinstance(span, str):
            errors.append(f"nodes[{i}].source_span: expected a string")
    return errors


def _check_edges(edges: List[Any]) -> List[str]:
    errors = []
    for i, edge in enumerate(edges):
        if not isinstance(edge, dict):
            errors.append(f"edges[{i}]: expected an object")
            continue
        for end in ("source", "target"):
            if not _is_nonempty_string(edge.get(end)):
                errors.append(f"edges[{i}].{end}: must be a non-empty string")
        edge_type = edge.get("type")
        if not (isinstance(edge_type, str) and edge_type in EDGE_TYPES):
            errors.append(f"edges[{i}].type: {edge_type!r} is not an allowed edge type")
    return errors


def _check_unique_ids(nodes: List[Dict]) -> List[str]:
    errors = []
    seen = set()
    for i, node in enumerate(nodes):
        if node["id"] in seen:
            errors.append(f"nodes[{i}].id: Duplicate node id: {node['id']}")
        seen.add(node["id"])
    return errors


def _check_endpoints(nodes: List[Dict], edges: List[Dict]) -> List[str]:
    ids = {n["id"] for n in nodes}
    errors = []
    for i, edge in enumerate(edges):
        if edge["source"] not in ids:
            errors.append(f"edges[{i}].source: Edge source not found: {edge['source']}")
        if edge["target"] not in ids:
            errors.append(f"edges[{i}].target: Edge target not found: {edge['target']}")
    return errors


def _raise_first(errors: List[str]) -> None:
    if not errors:
        return
    path, _, message = errors[0].partition(": ")
    if len(errors) > 1:
        message = f"{message} (+{len(errors) - 1} more)"
    raise SchemaError(path, message, errors)


def validate_graph_payload(payload: Any) -> Dict:
    """Validate a decoded graph payload and return it unchanged.

    Check classes run in order (top level, nodes, edges, id uniqueness,
    edge endpoints); the first class with violations raises SchemaError
    listing every violation of that class.
    """
    _raise_first(_check_top_level(payload))
    _raise_first(_check_nodes(payload["nodes"]))
    _raise_first(_check_edges(payload["edges"]))
    _raise_first(_check_unique_ids(payload["nodes"]))
    _raise_first(_check_endpoints(payload["nodes"], payload["edges"]))
    return payload
