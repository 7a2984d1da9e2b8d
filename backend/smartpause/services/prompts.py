import copy
from typing import Any, Dict, List, Optional

MAX_TOKENS = {"prospect": 10000, "executive": 16000, "full": 24000}

BASE_SYSTEM = """You are the SmartPause Diagnostic Engine.
Use only the OBSERVED and INFERRED values supplied in the user prompt; label
anything else UNKNOWN. Label every claim [OBSERVED], [INFERRED] or [ASSUMED].
Reason in order: evidence, patterns, causal impact, governor assessment."""

TIER_INSTRUCTIONS = {
    "prospect": """TIER: PROSPECT SNAPSHOT
Produce a one-page triage: executiveBrief, valueLedger, a single-paragraph
scenarios section, options limited to the top recommendation, and
executionPlan set to "Execution roadmap not included in Prospect tier.\"""",
    "executive": """TIER: EXECUTIVE
Produce executiveBrief, valueLedger, scenarios (Base/Bear/Tail), options,
a 7-day executionPlan, evidenceRegister and the GCAS narrative sections.""",
    "full": """TIER: FULL
Produce all sections including patternAnalysis, causalImpactTable,
segmentValueMath, courseCorrection, checkpointRule, financingNarrative,
preconditionsNarrative, governorNarrative and selfTestNarrative, with a
7/30/90-day executionPlan.""",
}

JSON_SCHEMA_INSTRUCTION = """Respond with a single JSON object. Required keys:
executiveBrief, valueLedger, scenarios, options, executionPlan,
evidenceRegister (markdown strings) and integrity
({completeness, evidenceQuality, confidence, missingData}). Optional keys are
passed through unchanged."""

OBSERVED_OVERRIDES = {
    "enterpriseValue_m": ("dealEconomics", "enterpriseValue"),
    "equityCheck_m": ("dealEconomics", "equityCheck"),
    "entryEbitda_m": ("dealEconomics", "entryEbitda"),
    "ebitdaMargin_pct": ("dealEconomics", "ebitdaMargin"),
    "usRevenuePct": ("dealEconomics", "usRevenuePct"),
    "exportExposurePct": ("dealEconomics", "exportExposurePct"),
    "cashOnHand_m": ("runwayInputs", "cashOnHand"),
    "monthlyBurn_m": ("runwayInputs", "monthlyBurn"),
    "debtMaturityMonths": ("runwayInputs", "debtMaturity"),
}

SCENARIO_BANDS = (("Base", 0.95, 1.05), ("Bear", 0.75, 0.85), ("Tail", 0.55, 0.65))


def get_max_tokens(tier: str) -> int:
    return MAX_TOKENS.get(tier, MAX_TOKENS["full"])


def get_system_prompt(tier: str) -> str:
    instructions = TIER_INSTRUCTIONS.get(tier, TIER_INSTRUCTIONS["full"])
    return "\n\n".join([BASE_SYSTEM, instructions, JSON_SCHEMA_INSTRUCTION])


def apply_normalized_intake(
    wizard_data: Dict[str, Any], normalized_intake: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
    """Return a copy of ``wizard_data`` with normalized observed values applied."""
    merged = copy.deepcopy(wizard_data)
    observed = (normalized_intake or {}).get("observed")
    if not isinstance(observed, dict):
        return merged
    for key, (section, field) in OBSERVED_OVERRIDES.items():
        if observed.get(key) is None:
            continue
        target = merged.get(section)
        if not isinstance(target, dict):
            # Deal economics are only overridden when the intake captured them.
            if section == "dealEconomics":
                continue
            target = merged.setdefault(section, {})
        target[field] = str(observed[key])
    return merged


def _number(section: Optional[Dict[str, Any]], field: str) -> Optional[float]:
    if not section:
        return None
    value = section.get(field)
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def compute_deterministic_values(wizard_data: Dict[str, Any]) -> Dict[str, Optional[float]]:
    deal = wizard_data.get("dealEconomics") or {}
    runway_inputs = wizard_data.get("runwayInputs") or {}

    ev = _number(deal, "enterpriseValue")
    equity = _number(deal, "equityCheck")
    ebitda = _number(deal, "entryEbitda")
    margin = _number(deal, "ebitdaMargin")
    us_revenue = _number(deal, "usRevenuePct")
    export_exposure = _number(deal, "exportExposurePct")
    cash = _number(runway_inputs, "cashOnHand")
    burn = _number(runway_inputs, "monthlyBurn")

    debt = ev - equity if ev is not None and equity is not None else None
    has_ebitda = ebitda is not None and ebitda > 0
    return {
        "ev": ev,
        "equity": equity,
        "debt": debt,
        "ebitda": ebitda,
        "ebitdaMargin": margin,
        "cash": cash,
        "burn": burn,
        "runway": cash / burn if cash is not None and burn else None,
        "entryMultiple": ev / ebitda if ev is not None and has_ebitda else None,
        "entryLeverage": debt / ebitda if debt is not None and has_ebitda else None,
        "impliedRevenue": (
            ebitda / (margin / 100) if ebitda is not None and margin else None
        ),
        "usRevenuePct": us_revenue,
        "nonUsRevenuePct": 100 - us_revenue if us_revenue is not None else None,
        "exportExposurePct": export_exposure,
    }


def fmt(value: Optional[float], decimals: int = 1) -> str:
    return f"{value:.{decimals}f}" if value is not None else "UNKNOWN"


def _scaled(value: Optional[float], factor: float) -> Optional[float]:
    return value * factor if value is not None else None


def _text(section: Dict[str, Any], field: str, default: str = "Not specified") -> str:
    value = section.get(field)
    return str(value) if value not in (None, "") else default


def build_user_prompt(wizard_data: Dict[str, Any], tier: str) -> str:
    dv = compute_deterministic_values(wizard_data)
    company = wizard_data.get("companyBasics") or {}
    situation = wizard_data.get("situation") or {}
    runway_inputs = wizard_data.get("runwayInputs") or {}
    deal = wizard_data.get("dealEconomics") or {}
    signals = wizard_data.get("signalChecklist") or {}
    metrics = wizard_data.get("operatingMetrics") or {}

    signal_lines = [f"- {signal}" for signal in signals.get("signals") or []]
    sensitivities = ", ".join(deal.get("macroSensitivities") or []) or "None specified"
    deal_type = _text(deal, "dealType", "UNKNOWN")
    if deal_type == "other" and deal.get("dealTypeOther"):
        deal_type = f"other ({deal['dealTypeOther']})"

    lines: List[str] = [
        f"Analyze the following company diagnostic data at the {tier.upper()} tier level.",
        "",
        "OBSERVED VALUES (from intake, do not change):",
        f"- Enterprise Value: ${fmt(dv['ev'])}M",
        f"- Equity Check: ${fmt(dv['equity'])}M",
        f"- Entry EBITDA: ${fmt(dv['ebitda'])}M",
        f"- EBITDA Margin: {fmt(dv['ebitdaMargin'])}%",
        f"- Cash on Hand: ${fmt(dv['cash'])}M",
        f"- Monthly Burn: ${fmt(dv['burn'])}M",
        f"- US Revenue Mix: {fmt(dv['usRevenuePct'], 0)}%",
        f"- Export Exposure: {fmt(dv['exportExposurePct'], 0)}%",
        f"- Debt Maturity Window: {_text(runway_inputs, 'debtMaturity', 'UNKNOWN')}",
        "",
        "INFERRED VALUES (pre-computed, use exactly):",
        f"- Total Debt (EV - Equity): ${fmt(dv['debt'])}M",
        f"- Entry Leverage (Debt / EBITDA): {fmt(dv['entryLeverage'], 2)}x",
        f"- Entry Multiple (EV / EBITDA): {fmt(dv['entryMultiple'], 2)}x",
        f"- Runway (Cash / Burn): {fmt(dv['runway'])} months",
        f"- Implied Revenue: ${fmt(dv['impliedRevenue'])}M",
        f"- Non-US Revenue Mix: {fmt(dv['nonUsRevenuePct'], 0)}%",
        "",
        "Company:",
        f"- Name: {_text(company, 'companyName')}",
        f"- Industry: {_text(company, 'industry')}",
        f"- Revenue: {_text(company, 'revenue')}",
        f"- Employees: {_text(company, 'employees')}",
        f"- Founded: {_text(company, 'founded')}",
        "",
        "Situation:",
        f"- Type: {_text(situation, 'title', 'General Assessment')}",
        f"- Category: {_text(situation, 'category')}",
        f"- Urgency: {_text(situation, 'urgency', 'medium')}",
        f"- Description: {_text(situation, 'description')}",
        "",
        "Deal Economics:",
        f"- Deal Type: {deal_type}",
        f"- Macro Sensitivities: {sensitivities}",
        f"- Time Horizon: {deal.get('timeHorizonMonths') or 36} months",
        "",
        "Operating Metrics:",
        f"- Annual EBITDA: {_text(metrics, 'annualEbitda', 'Not provided')}",
        f"- Gross Margin: {_text(metrics, 'grossMargin', 'Not provided')}",
        f"- Revenue Growth YoY: {_text(metrics, 'revenueGrowthYoY', 'Not provided')}",
        "",
        "Warning Signals:",
        *(signal_lines or ["- None selected"]),
        "",
        f"Additional Notes: {_text(signals, 'notes', 'None provided')}",
        "",
        "Deterministic scenario bands (use exactly):",
    ]
    for name, low, high in SCENARIO_BANDS:
        lines.append(
            f"- {name}: EBITDA [{fmt(_scaled(dv['ebitda'], low))}M, "
            f"{fmt(_scaled(dv['ebitda'], high))}M]"
        )
    lines.append(
        f"- Equity = max(Scenario_EV - ${fmt(dv['debt'])}M debt, 0). No negative equity."
    )
    lines.append("")
    lines.append("Return the JSON object described in the system prompt.")
    return "\n".join(lines)
