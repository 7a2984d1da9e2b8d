import json
import re
from typing import Any, Dict

from smartpause.services.prompts import compute_deterministic_values
from smartpause.utils.time import epoch_ms, utc_now

REQUIRED_SECTIONS = (
    "executiveBrief",
    "valueLedger",
    "scenarios",
    "options",
    "executionPlan",
    "evidenceRegister",
)
OPTIONAL_SECTIONS = (
    "patternAnalysis",
    "causalImpactTable",
    "gcasNarrative",
    "segmentValueMath",
    "courseCorrection",
    "checkpointRule",
    "financingNarrative",
    "preconditionsNarrative",
    "governorNarrative",
    "selfTestNarrative",
)
STRUCTURED_FIELDS = (
    "gcasAssessment",
    "causalImpactRows",
    "segmentBreakdown",
    "courseCorrections",
    "checkpointGate",
    "portfolioRecommendation",
    "financingLeverage",
    "valueLedgerSummary",
    "criticalPreconditions",
    "governorDecision",
    "selfTest",
)
MISSING_SECTION = "Not provided by the model."

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


class ReportParseError(ValueError):
    """The model's response did not contain a usable report object."""


def extract_json(text: str) -> Any:
    cleaned = _FENCE_RE.sub("", text).strip()
    start = min(
        (pos for pos in (cleaned.find("{"), cleaned.find("[")) if pos != -1),
        default=-1,
    )
    if start == -1:
        raise ReportParseError("no JSON object found in model response")
    closer = "]" if cleaned[start] == "[" else "}"
    end = cleaned.rfind(closer)
    if end < start:
        raise ReportParseError("unterminated JSON object in model response")
    candidate = cleaned[start : end + 1]
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    repaired = _CONTROL_RE.sub("", _TRAILING_COMMA_RE.sub(r"\1", candidate))
    try:
        return json.loads(repaired)
    except json.JSONDecodeError as exc:
        raise ReportParseError(f"model response is not valid JSON: {exc.msg}") from exc


def parse_report(text: str) -> Dict[str, Any]:
    parsed = extract_json(text)
    if not isinstance(parsed, dict):
        raise ReportParseError("model response is not a JSON object")
    brief = parsed.get("executiveBrief")
    if not isinstance(brief, str) or not brief.strip():
        raise ReportParseError("model response is missing executiveBrief")
    return parsed


def _default_integrity() -> Dict[str, Any]:
    return {
        "completeness": 0,
        "evidenceQuality": 0,
        "confidence": 0,
        "missingData": ["Integrity metrics not provided by the model"],
    }


def assemble_report(
    parsed: Dict[str, Any],
    wizard_data: Dict[str, Any],
    tier: str,
    output_mode: str,
) -> Dict[str, Any]:
    sections: Dict[str, Any] = {
        name: parsed.get(name) or MISSING_SECTION for name in REQUIRED_SECTIONS
    }
    for name in OPTIONAL_SECTIONS:
        if parsed.get(name) is not None:
            sections[name] = parsed[name]

    report: Dict[str, Any] = {
        "id": f"RPT-{epoch_ms()}",
        "generatedAt": utc_now(),
        "tier": tier,
        "outputMode": output_mode,
        "integrity": parsed.get("integrity") or _default_integrity(),
        "sections": sections,
        "deterministic": compute_deterministic_values(wizard_data),
    }
    for name in STRUCTURED_FIELDS:
        if parsed.get(name) is not None:
            report[name] = parsed[name]

    company = (wizard_data.get("companyBasics") or {}).get("companyName") or "Unknown"
    report["inputSummary"] = f"Company: {company}, Tier: {tier}"
    return report
