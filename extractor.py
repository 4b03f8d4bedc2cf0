#!/usr/bin/env python3
"""
extractor.py

Clinical Argument Knowledge Graph Extractor

Pipeline:
=========
    Source text
         │
         ▼
    ┌──────────────────────┐
    │  Extraction prompt   │  ← vocabularies, attribute rules, summary shape
    └──────────┬───────────┘
               ▼
    ┌──────────────────────┐
    │    ModelGateway      │  ← drops unsupported params, max 3 attempts
    └──────────┬───────────┘
               ▼
    ┌──────────────────────┐
    │   ResponseDecoder    │  ← fences, brace span, repair pass
    └──────────┬───────────┘
               ▼
    ┌──────────────────────┐
    │   SchemaValidator    │  ← closed types, unique ids, edge endpoints
    └──────────┬───────────┘
               ▼
    ┌──────────────────────┐
    │   Label backfill     │
    └──────────┬───────────┘
               ▼
    ┌──────────────────────┐
    │ Risk coverage pass   │  ← optional, failures are not fatal
    └──────────┬───────────┘
               ▼
      GraphDocument (→ data/kg.json)

Failures before the coverage pass abort the extraction; no partial graph is
ever returned.
"""

import os
import sys
import json
import asyncio
import argparse
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv

from clinical_schema import (
    FORBIDDEN_NODE_TYPES,
    EdgeType,
    GraphDocument,
    NodeType,
    SchemaError,
    validate_graph_payload,
)
from model_gateway import (
    DEFAULT_MODEL,
    GatewayError,
    ModelConfig,
    ModelGateway,
    env_float,
    env_int,
)
from response_decoder import DecodeError, decode_model_json
from risk_projection import ProjectionError, RiskCoverageProjector, merge_risk_projection

__all__ = [
    "ClinicalGraphExtractor",
    "ExtractionConfig",
    "extract_to_kg",
    "graph_counts",
    "write_graph_json",
    "GatewayError",
    "DecodeError",
    "SchemaError",
    "ProjectionError",
]

# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("ClinicalKGExtractor")

DEFAULT_OUTPUT = Path("data") / "kg.json"

GraphWriter = Callable[[Path, GraphDocument], None]


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class ExtractionConfig:
    """Per-extraction options."""

    # Primary extraction call
    model: str = DEFAULT_MODEL
    temperature: Optional[float] = 0.2
    max_output_tokens: Optional[int] = 4000

    # Coverage pass; risk_model falls back to `model`
    project_risk_coverage: bool = True
    risk_model: Optional[str] = None
    risk_temperature: Optional[float] = 0
    risk_max_output_tokens: Optional[int] = 1600

    # Persistence
    write_file: bool = True
    output_path: Optional[str] = None
    base_dir: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides: Any) -> "ExtractionConfig":
        """Defaults from the environment (.env honoured); keyword overrides win."""
        load_dotenv()
        toggle = os.environ.get("PROJECT_RISK_PROJECTION")
        risk_model = (
            os.environ.get("RISK_MODEL")
            or os.environ.get("RISK_PROJECTION_MODEL")
            or os.environ.get("ANALYZE_MODEL")
        )
        config = cls(
            model=(os.environ.get("MODEL") or DEFAULT_MODEL).strip(),
            temperature=env_float("TEMPERATURE", 0.2),
            max_output_tokens=env_int("MAX_OUTPUT_TOKENS", 4000),
            project_risk_coverage=toggle is None or toggle.strip().lower() != "false",
            risk_model=risk_model.strip() if risk_model else None,
            risk_temperature=env_float("RISK_TEMPERATURE", 0),
            risk_max_output_tokens=env_int("RISK_MAX_OUTPUT_TOKENS", 1600),
            output_path=os.environ.get("KG_OUTPUT_PATH") or None,
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(config, key, value)
        return config

    def resolve_output_path(self) -> Path:
        base = Path(self.base_dir) if self.base_dir else Path.cwd()
        if self.output_path:
            out = Path(self.output_path)
            return out if out.is_absolute() else base / out
        return base / DEFAULT_OUTPUT


# =============================================================================
# EXTRACTION PROMPT
# =============================================================================

def _bullets(values) -> str:
    return ", ".join(values)


EXTRACTION_PROMPT = f"""You are an expert medical information extraction and knowledge graph assistant specializing in identifying both explicit and implicit medical information.

Your task: Extract a comprehensive knowledge graph from medical text, paying special attention to hidden assumptions and unstated risks.

IMPORTANT: You MUST use ONLY these exact node types (case-sensitive):
- {NodeType.POPULATION.value} (patient groups, cohorts, clinics, demographics)
- {NodeType.INTERVENTION.value} (treatments, procedures, deployments, systems, technologies)
- {NodeType.COMPARATOR.value} (control groups, baseline methods, alternative treatments)
- {NodeType.OUTCOME.value} (results, metrics, improvements - ALWAYS include metric_name, value, direction, unit, timeframe in attributes)
- {NodeType.CONDITION.value} (diseases, diagnoses, medical problems, symptoms)
- {NodeType.MEDICATION.value} (drugs, dosages, formulations)
- {NodeType.PROCEDURE.value} (medical procedures, diagnostic tests, surgical operations)
- {NodeType.ANATOMY.value} (body parts, organs, anatomical structures)
- {NodeType.FINDING.value} (clinical observations, discoveries, patterns)
- {NodeType.EVIDENCE.value} (studies, data, research supporting claims)
- {NodeType.MECHANISM.value} (biological/technical mechanisms, pathways, how interventions work)
- {NodeType.GUIDELINE.value} (recommendations, protocols, clinical guidelines, standards)
- {NodeType.TIME_FRAME.value} (durations, periods, timing, schedules)
- {NodeType.RISK_FACTOR.value} (risks, adverse factors, complications, limitations, biases)
- {NodeType.SETTING.value} (locations, care settings, healthcare facilities)

FORBIDDEN node types (DO NOT USE): {_bullets(FORBIDDEN_NODE_TYPES)}

Allowed edge types: {_bullets(et.value for et in EdgeType)}

Output schema (MUST follow exactly):
{{
  "nodes": [
    {{ "id": "string", "type": "<Allowed node type>", "label": "string", "attributes": {{"...": "..."}}, "source_span": "string" }}
  ],
  "edges": [
    {{ "source": "nodeId", "type": "<Allowed edge type>", "target": "nodeId" }}
  ],
  "summary": "string (comprehensive 2-3 sentence summary highlighting key interventions, outcomes, critical assumptions, and remaining risk factors requiring diagnostic confirmation)"
}}

CRITICAL EXTRACTION RULES:

1. IMPLICIT ASSUMPTIONS (Create RiskFactor nodes for ALL of these):
   - Causality assumptions: correlation presented as causation
   - Generalizability: will results apply to different populations or settings?
   - Unmeasured confounders: concurrent changes that could explain outcomes
   - Measurement validity: do metrics measure the intended outcome?
   - Sustainability: will improvements persist beyond the study period?
   - Implementation requirements: hidden resource, expertise or infrastructure needs
   - Selection bias: is the studied population representative?
   - Time-dependent bias: seasonal effects, learning curves, novelty effects
   - Missing comparisons: alternatives that were not evaluated
   - Data quality: incomplete data, coding changes, documentation shifts

2. NODE ATTRIBUTE REQUIREMENTS:
   - Outcome nodes: MUST include metric_name, value, direction, unit, timeframe
   - Population nodes: include demographics (size, age, gender, conditions)
   - Medication nodes: include dosage, route, frequency when available
   - Intervention nodes: include technical details and deployment specifics
   - RiskFactor nodes: include severity, likelihood, and whether additional diagnostics are required to confirm it
   - Attribute values must be strings, numbers or booleans

3. QUALITY STANDARDS:
   - Extract ALL numerical values and attach them to the right nodes
   - Identify ALL time periods and create TimeFrame nodes
   - Link every outcome to its intervention via edges
   - Connect risk factors to the outcomes they affect
   - Create Evidence nodes for supporting data or studies mentioned
   - Every edge source and target MUST be the id of a node you declared
   - Node ids MUST be unique

4. SUMMARY REQUIREMENTS:
   - First sentence: key intervention and primary outcomes
   - Second sentence: critical assumptions or limitations identified
   - Third sentence: remaining risk factors that may need confirmation through additional diagnostics

Return ONLY valid JSON. No additional text."""


def build_extraction_prompt(source_text: str) -> str:
    return f'{EXTRACTION_PROMPT}\n\nText to analyze:\n\n"""{source_text}"""'


# =============================================================================
# POST-PROCESSING
# =============================================================================

_LABEL_FIELDS = ("name", "title", "text", "value")
_ATTRIBUTE_LABEL_FIELDS = ("label", "name", "title")


def _first_present(*candidates: Any) -> Optional[str]:
    for value in candidates:
        if value is None or value == "" or value is False:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def backfill_labels(payload: Dict) -> Dict:
    """Fill missing node labels from alternate fields, then the id; trim all labels."""
    for node in payload.get("nodes", []):
        if not isinstance(node, dict):
            continue
        label = node.get("label")
        if not label or (isinstance(label, str) and not label.strip()):
            attrs = node.get("attributes") if isinstance(node.get("attributes"), dict) else {}
            label = _first_present(
                *(node.get(k) for k in _LABEL_FIELDS),
                *(attrs.get(k) for k in _ATTRIBUTE_LABEL_FIELDS),
                node.get("id"),
            )
        node["label"] = str(label).strip() if label is not None else ""
    return payload


# =============================================================================
# PERSISTENCE
# =============================================================================

def write_graph_json(path: Path, document: GraphDocument) -> None:
    """Write the pretty-printed document in one write, creating parent dirs."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(document.to_json(indent=2), encoding="utf-8")
    logger.info(f"Wrote {path}")


def graph_counts(document: GraphDocument) -> Dict[str, Any]:
    """Acknowledgment payload for API or CLI callers."""
    return {"ok": True, **document.counts()}


# =============================================================================
# EXTRACTOR
# =============================================================================

class ClinicalGraphExtractor:
    """Main extraction orchestrator."""

    def __init__(
            self,
            gateway: ModelGateway,
            config: ExtractionConfig = None,
            writer: Optional[GraphWriter] = write_graph_json
    ):
        self.gateway = gateway
        self.config = config or ExtractionConfig()
        self.writer = writer

    def make_projector(self) -> RiskCoverageProjector:
        return RiskCoverageProjector(
            self.gateway,
            model=self.config.risk_model or self.config.model,
            temperature=self.config.risk_temperature,
            max_output_tokens=self.config.risk_max_output_tokens,
        )

    async def extract_graph(self, source_text: str) -> GraphDocument:
        """Primary pass only: prompt, call, decode, validate, backfill."""
        params = self.gateway.build_params(
            build_extraction_prompt(source_text),
            model=self.config.model,
            temperature=self.config.temperature,
            max_output_tokens=self.config.max_output_tokens,
        )
        text = await self.gateway.complete(params)
        payload = decode_model_json(text, "Knowledge graph extraction")
        validate_graph_payload(payload)
        backfill_labels(payload)
        return GraphDocument.from_dict(payload)

    async def extract(self, source_text: str) -> GraphDocument:
        """Extract a complete graph document from source text."""
        logger.info(f"Starting extraction with {self.config.model} ({len(source_text)} chars)")

        document = await self.extract_graph(source_text)
        logger.info(f"  → {len(document.nodes)} nodes, {len(document.edges)} edges")

        if self.config.project_risk_coverage:
            try:
                projection = await self.make_projector().project(source_text, document)
            except ProjectionError as e:
                logger.warning(f"  ⚠ Risk coverage projection skipped: {e}")
                projection = None
            if projection is not None:
                merge_risk_projection(document, projection)

        if self.config.write_file and self.writer is not None:
            self.writer(self.config.resolve_output_path(), document)

        return document


def extract_to_kg(
        source_text: str,
        config: Optional[ExtractionConfig] = None,
        gateway: Optional[ModelGateway] = None,
        writer: Optional[GraphWriter] = write_graph_json
) -> GraphDocument:
    """Synchronous entry point for CLIs, HTTP handlers and batch jobs."""
    config = config or ExtractionConfig.from_env()
    gateway = gateway or ModelGateway.from_config(ModelConfig.from_env())
    extractor = ClinicalGraphExtractor(gateway, config, writer=writer)
    return asyncio.run(extractor.extract(source_text))


# =============================================================================
# CLI INTERFACE
# =============================================================================

DEFAULT_TEXT = """Over twelve months, 240 adults with stage 1 hypertension at two community clinics were started on lisinopril 10 mg once daily together with a pharmacist-led home blood pressure monitoring program. Mean systolic pressure fell by 14 mmHg at six months compared with a usual-care cohort at a neighbouring clinic, and emergency visits for hypertensive urgency dropped by 22%. The clinic director argues the monitoring program, not the medication change, drove most of the improvement, and recommends rolling it out to all primary care sites.

However, the comparison clinic served an older population with more diabetes, and the intervention clinics also gained a new nurse practitioner during the study. Adherence was self-reported. Several patients reported a persistent dry cough and one developed angioedema, which led to discontinuation; potassium and creatinine were not routinely rechecked after initiation.

The recommendation assumes that the blood pressure reduction will persist after the pharmacist visits end, that the effect generalizes to sites without pharmacist staffing, and that ACE-inhibitor adverse reactions are rare enough not to offset the benefit."""


def resolve_input_text(args: List[str]) -> str:
    """One existing file path → its contents; other words → joined text; nothing → sample."""
    if not args:
        return DEFAULT_TEXT
    if len(args) == 1:
        candidate = Path(args[0])
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        if candidate.is_file():
            return candidate.read_text(encoding="utf-8")
    return " ".join(args).strip()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Extract a clinical knowledge graph from text")
    parser.add_argument("inputs", nargs="*", help="Text file path, or the text itself")
    parser.add_argument("--model", help="Extraction model (env MODEL)")
    parser.add_argument("--temperature", type=float)
    parser.add_argument("--max-output-tokens", type=int)
    parser.add_argument("--risk-model", help="Coverage pass model (defaults to --model)")
    parser.add_argument("--no-risk-projection", action="store_true",
                        help="Skip the risk coverage pass")
    parser.add_argument("--output", help="Output path (default data/kg.json)")
    parser.add_argument("--base-dir", help="Directory relative output paths resolve against")
    parser.add_argument("--no-write", action="store_true", help="Do not write the JSON artifact")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = build_arg_parser().parse_args(argv)

    text = resolve_input_text(args.inputs)
    if not text.strip():
        logger.error("Missing text")
        return 2

    config = ExtractionConfig.from_env(
        model=args.model,
        temperature=args.temperature,
        max_output_tokens=args.max_output_tokens,
        risk_model=args.risk_model,
        output_path=args.output,
        base_dir=args.base_dir,
    )
    if args.no_risk_projection:
        config.project_risk_coverage = False
    if args.no_write:
        config.write_file = False

    try:
        document = extract_to_kg(text, config)
    except (GatewayError, DecodeError, SchemaError, ValueError) as e:
        logger.error(f"Extraction failed: {e}")
        return 1

    print(json.dumps(graph_counts(document)))
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
