#!/usr/bin/env python3
"""
test_clinical_schema.py

Schema validation and document model tests.

Usage:
    python -m pytest test_clinical_schema.py -v
"""

import copy
import json

import pytest

from clinical_schema import (
    EDGE_TYPES,
    NODE_TYPES,
    CoverageStatus,
    GraphDocument,
    NodeType,
    RiskFactorCoverage,
    RiskProjection,
    SchemaError,
    coerce_attributes,
    validate_graph_payload,
)


def _valid_payload() -> dict:
    return {
        "nodes": [
            {"id": "m1", "type": "Medication", "label": "Lisinopril",
             "attributes": {"dosage": "10 mg", "route": "oral"}, "source_span": "lisinopril 10 mg"},
            {"id": "o1", "type": "Outcome", "label": "Systolic BP reduction",
             "attributes": {"metric_name": "systolic BP", "value": 14, "direction": "decrease",
                            "unit": "mmHg", "timeframe": "6 months"}},
            {"id": "r1", "type": "RiskFactor", "label": "Angioedema",
             "attributes": {"severity": "high", "diagnostics_needed": True}},
        ],
        "edges": [
            {"source": "m1", "type": "treats", "target": "o1"},
            {"source": "r1", "type": "increases_risk_of", "target": "o1"},
        ],
        "summary": "Lisinopril lowered systolic pressure.",
    }


class TestVocabularies:

    def test_node_vocabulary_size(self):
        assert len(NODE_TYPES) == 15
        assert "RiskFactor" in NODE_TYPES and "TimeFrame" in NODE_TYPES

    def test_edge_vocabulary_size(self):
        assert len(EDGE_TYPES) == 14
        assert "contraindicated_for" in EDGE_TYPES

    def test_coverage_statuses(self):
        assert {s.value for s in CoverageStatus} == {"addressed", "not_addressed", "uncertain"}


class TestValidGraphs:

    def test_valid_payload_passes_unchanged(self):
        payload = _valid_payload()
        snapshot = copy.deepcopy(payload)
        assert validate_graph_payload(payload) is payload
        assert payload == snapshot

    def test_validation_is_idempotent(self):
        payload = _valid_payload()
        once = copy.deepcopy(validate_graph_payload(payload))
        assert validate_graph_payload(validate_graph_payload(payload)) == once

    def test_empty_graph_is_valid(self):
        assert validate_graph_payload({"nodes": [], "edges": []}) == {"nodes": [], "edges": []}

    def test_extra_fields_are_allowed(self):
        payload = _valid_payload()
        payload["nodes"][0]["name"] = "Lisinopril"
        payload["edges"][0]["weight"] = 0.5
        payload["meta"] = {"source": "test"}
        validate_graph_payload(payload)


class TestTopLevel:

    def test_non_object_payload(self):
        with pytest.raises(SchemaError) as exc:
            validate_graph_payload([1, 2])
        assert exc.value.path == "$"

    @pytest.mark.parametrize("missing", ["nodes", "edges"])
    def test_required_fields(self, missing):
        payload = _valid_payload()
        del payload[missing]
        with pytest.raises(SchemaError) as exc:
            validate_graph_payload(payload)
        assert exc.value.path == f"$.{missing}"

    def test_nodes_must_be_array(self):
        payload = _valid_payload()
        payload["nodes"] = {"m1": {}}
        with pytest.raises(SchemaError, match="expected an array"):
            validate_graph_payload(payload)

    def test_summary_must_be_string(self):
        payload = _valid_payload()
        payload["summary"] = ["not", "text"]
        with pytest.raises(SchemaError) as exc:
            validate_graph_payload(payload)
        assert exc.value.path == "$.summary"


class TestNodeChecks:

    def test_unknown_node_type(self):
        payload = _valid_payload()
        payload["nodes"][1]["type"] = "Assumption"
        with pytest.raises(SchemaError) as exc:
            validate_graph_payload(payload)
        assert exc.value.path == "nodes[1].type"
        assert "Assumption" in exc.value.message

    def test_node_type_is_case_sensitive(self):
        payload = _valid_payload()
        payload["nodes"][0]["type"] = "medication"
        with pytest.raises(SchemaError):
            validate_graph_payload(payload)

    def test_blank_node_id(self):
        payload = _valid_payload()
        payload["nodes"][2]["id"] = "   "
        with pytest.raises(SchemaError) as exc:
            validate_graph_payload(payload)
        assert exc.value.path == "nodes[2].id"

    def test_attributes_must_be_object(self):
        payload = _valid_payload()
        payload["nodes"][0]["attributes"] = "10 mg"
        with pytest.raises(SchemaError) as exc:
            validate_graph_payload(payload)
        assert exc.value.path == "nodes[0].attributes"

    @pytest.mark.parametrize("bad_type", [["RiskFactor"], {"name": "RiskFactor"}, 3, None])
    def test_non_string_node_type(self, bad_type):
        payload = _valid_payload()
        payload["nodes"][2]["type"] = bad_type
        with pytest.raises(SchemaError) as exc:
            validate_graph_payload(payload)
        assert exc.value.path == "nodes[2].type"

    def test_all_violations_of_first_class_listed(self):
        payload = _valid_payload()
        payload["nodes"][0]["type"] = "Actor"
        payload["nodes"][2]["type"] = "Recommendation"
        with pytest.raises(SchemaError) as exc:
            validate_graph_payload(payload)
        assert len(exc.value.errors) == 2
        assert "+1 more" in str(exc.value)


class TestEdgeChecks:

    def test_unknown_edge_type(self):
        payload = _valid_payload()
        payload["edges"][1]["type"] = "worsens"
        with pytest.raises(SchemaError) as exc:
            validate_graph_payload(payload)
        assert exc.value.path == "edges[1].type"

    @pytest.mark.parametrize("bad_type", [{"name": "causes"}, ["causes"], 0])
    def test_non_string_edge_type(self, bad_type):
        payload = _valid_payload()
        payload["edges"][0]["type"] = bad_type
        with pytest.raises(SchemaError) as exc:
            validate_graph_payload(payload)
        assert exc.value.path == "edges[0].type"

    def test_missing_edge_target(self):
        payload = _valid_payload()
        del payload["edges"][0]["target"]
        with pytest.raises(SchemaError) as exc:
            validate_graph_payload(payload)
        assert exc.value.path == "edges[0].target"


class TestReferentialIntegrity:

    def test_duplicate_node_id_named(self):
        payload = _valid_payload()
        payload["nodes"].append({"id": "o1", "type": "Finding", "label": "dup"})
        with pytest.raises(SchemaError) as exc:
            validate_graph_payload(payload)
        assert "o1" in str(exc.value)
        assert exc.value.path == "nodes[3].id"

    def test_dangling_edge_source(self):
        payload = _valid_payload()
        payload["edges"].append({"source": "x9", "type": "causes", "target": "o1"})
        with pytest.raises(SchemaError, match="Edge source not found: x9"):
            validate_graph_payload(payload)

    def test_dangling_edge_target(self):
        payload = _valid_payload()
        payload["edges"][0]["target"] = "missing"
        with pytest.raises(SchemaError, match="Edge target not found: missing"):
            validate_graph_payload(payload)

    def test_edge_class_reported_before_duplicates(self):
        payload = _valid_payload()
        payload["nodes"].append({"id": "m1", "type": "Medication"})
        payload["edges"][0]["type"] = "cures"
        with pytest.raises(SchemaError) as exc:
            validate_graph_payload(payload)
        assert exc.value.path == "edges[0].type"


class TestGraphDocument:

    def test_from_dict_builds_typed_nodes(self):
        doc = GraphDocument.from_dict(_valid_payload())
        assert [n.id for n in doc.nodes] == ["m1", "o1", "r1"]
        assert doc.get_node("r1").type is NodeType.RISK_FACTOR
        assert [n.id for n in doc.risk_factor_nodes()] == ["r1"]
        assert doc.counts() == {"nodes": 3, "edges": 2}

    def test_to_dict_keeps_shape(self):
        payload = _valid_payload()
        out = GraphDocument.from_dict(payload).to_dict()
        assert out["nodes"][0] == payload["nodes"][0]
        assert out["edges"] == payload["edges"]
        assert out["summary"] == payload["summary"]
        assert "risk_projection" not in out

    def test_to_json_includes_projection(self):
        doc = GraphDocument.from_dict(_valid_payload())
        doc.risk_projection = RiskProjection(
            risk_factors=[RiskFactorCoverage(id="r1", status=CoverageStatus.ADDRESSED)],
            summary="Angioedema discussed.",
        )
        parsed = json.loads(doc.to_json())
        assert parsed["risk_projection"]["risk_factors"][0]["status"] == "addressed"
        assert parsed["risk_projection"]["summary"] == "Angioedema discussed."

    def test_attributes_coerced_to_primitives(self):
        attrs = coerce_attributes({"value": 4, "flag": False, "ranges": [1, 2], "note": None})
        assert attrs == {"value": 4, "flag": False, "ranges": "[1,2]"}
