#!/usr/bin/env python3
"""
risk_projection.py

Second model pass: classify whether each RiskFactor node of a graph was
discussed in a clinical session transcript, then fold the classification
back onto the graph.

Only a minimized view of the risk nodes (id, label, attributes, source_span)
is sent to the model, never the whole document.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from clinical_schema import (
    COVERAGE_STATUSES,
    CoverageStatus,
    GraphDocument,
    RiskFactorCoverage,
    RiskProjection,
)
from model_gateway import GatewayError, ModelGateway
from response_decoder import DecodeError, decode_model_json

logger = logging.getLogger("RiskProjection")

NO_RISK_FACTORS_SUMMARY = "No risk factors detected in knowledge graph."

RISK_PROJECTION_PROMPT = """You are a clinical QA assistant that ensures risk factors from a knowledge graph were properly discussed in a clinical session transcript.

For each provided risk factor node, determine whether the clinician explicitly addressed it in the session (e.g., offered mitigation, counseling, follow-up diagnostics, or monitoring). Classify using ONLY these statuses:
- addressed: the clinician acknowledged the risk and documented a plan or next step.
- not_addressed: the risk factor was not mentioned or handled by the clinician.
- uncertain: there is insufficient evidence to decide.

Output must be valid JSON matching this schema:
{
  "risk_factors": [
    {
      "id": "<node id>",
      "label": "<risk label>",
      "status": "addressed|not_addressed|uncertain",
      "doctor_quote": "brief quote from the doctor supporting the classification or empty string",
      "patient_quote": "brief quote from the patient if relevant or empty string",
      "rationale": "1-2 sentence explanation tying the transcript back to the classification"
    }
  ],
  "summary": "2 sentence overview highlighting addressed vs missing risk factors"
}

Use empty strings when quotes are unavailable. Quote only the minimal necessary span from the transcript. Respond with JSON only."""


class ProjectionError(Exception):
    """The coverage pass could not produce a usable result."""


def _clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_status(raw: Any) -> CoverageStatus:
    """Map a model status onto the three allowed values, defaulting to uncertain."""
    status = raw.strip().lower() if isinstance(raw, str) else ""
    if status in COVERAGE_STATUSES:
        return CoverageStatus(status)
    return CoverageStatus.UNCERTAIN


def normalize_projection(payload: Any) -> RiskProjection:
    """Validate and normalize a decoded coverage reply."""
    if not isinstance(payload, dict) or not isinstance(payload.get("risk_factors"), list):
        raise ProjectionError("Risk factor projection response missing risk_factors array")

    entries: List[RiskFactorCoverage] = []
    for rf in payload["risk_factors"]:
        if not isinstance(rf, dict) or not _clean_str(rf.get("id")):
            logger.debug(f"Dropping risk factor entry without id: {rf!r}")
            continue
        entries.append(RiskFactorCoverage(
            id=rf["id"].strip(),
            label=_clean_str(rf.get("label")),
            status=normalize_status(rf.get("status")),
            doctor_quote=_clean_str(rf.get("doctor_quote")),
            patient_quote=_clean_str(rf.get("patient_quote")),
            rationale=_clean_str(rf.get("rationale")),
        ))

    return RiskProjection(risk_factors=entries, summary=_clean_str(payload.get("summary")))


def minimal_risk_nodes(document: GraphDocument) -> List[Dict]:
    return [
        {
            "id": n.id,
            "label": n.label,
            "attributes": dict(n.attributes),
            "source_span": n.source_span or "",
        }
        for n in document.risk_factor_nodes()
    ]


def build_projection_prompt(transcript: str, risk_nodes: List[Dict]) -> str:
    return (
        f"{RISK_PROJECTION_PROMPT}\n\n"
        f"Session Record Transcript:\n\"\"\"{transcript}\"\"\"\n\n"
        f"Risk Factor Nodes (JSON array):\n{json.dumps(risk_nodes, indent=2, ensure_ascii=False)}"
    )


class RiskCoverageProjector:
    """Runs the coverage pass; holds no state between projections."""

    def __init__(
            self,
            gateway: ModelGateway,
            model: Optional[str] = None,
            temperature: Optional[float] = 0,
            max_output_tokens: Optional[int] = 1600
    ):
        self.gateway = gateway
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    async def project(self, transcript: str, document: GraphDocument) -> Optional[RiskProjection]:
        """Classify every RiskFactor node of `document` against `transcript`.

        Returns None for an empty transcript and an empty projection when the
        graph has no RiskFactor nodes; neither case calls the model.
        """
        transcript = transcript.strip() if isinstance(transcript, str) else ""
        if not transcript:
            return None

        risk_nodes = minimal_risk_nodes(document)
        if not risk_nodes:
            return RiskProjection(risk_factors=[], summary=NO_RISK_FACTORS_SUMMARY)

        logger.info(f"Projecting coverage for {len(risk_nodes)} risk factors")
        params = self.gateway.build_params(
            build_projection_prompt(transcript, risk_nodes),
            model=self.model,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
        )
        try:
            text = await self.gateway.complete(params)
            payload = decode_model_json(text, "Risk factor projection")
        except (GatewayError, DecodeError) as e:
            raise ProjectionError(str(e)) from e

        projection = normalize_projection(payload)
        logger.info(f"  → {len(projection.risk_factors)} risk factors classified")
        return projection


def merge_risk_projection(document: GraphDocument, projection: RiskProjection) -> GraphDocument:
    """Attach the projection and annotate matching RiskFactor nodes in place."""
    document.risk_projection = projection
    for node in document.risk_factor_nodes():
        info = projection.get(node.id)
        if info is None:
            continue
        node.attributes["coverage_status"] = info.status.value
        if info.doctor_quote:
            node.attributes["doctor_quote"] = info.doctor_quote
        if info.patient_quote:
            node.attributes["patient_quote"] = info.patient_quote
        if info.rationale:
            node.attributes["coverage_rationale"] = info.rationale
    return document
