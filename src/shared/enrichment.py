"""
Secure Score control enrichment.

Fuses the tenant's current control scores (secureScores.controlScores,
authoritative for current values) with the control profile catalog
(secureScoreControlProfiles, authoritative for reference metadata) into
display-ready control records. Pure: no I/O, never raises, one output record
per input control in input order.
"""
import math

STATUS_IMPLEMENTED     = "Implemented"
STATUS_PARTIAL         = "Partial"
STATUS_NOT_IMPLEMENTED = "Not Implemented"

IMPLEMENTED_RATIO = 0.9
PARTIAL_RATIO     = 0.6
DEFAULT_MAX_SCORE = 5
UNRANKED          = 999

# (keywords, action type) checked in order against the lower-cased control name
_ACTION_KEYWORDS = (
    (("policy", "rule"),          "Policy"),
    (("enable", "configure"),     "Configuration"),
    (("review", "monitor"),       "Review"),
    (("training", "awareness"),   "Training"),
)

_REMEDIATIONS = (
    (("mfa",),
     "Configure Multi-Factor Authentication for all users through Azure AD"),
    (("conditional",),
     "Set up Conditional Access policies to control access based on risk factors"),
    (("admin", "privileged"),
     "Review and limit administrative privileges using Privileged Identity Management"),
)
GENERIC_REMEDIATION = "Implement this security control as recommended by Microsoft Secure Score"
UNNAMED_REMEDIATION = "Review and implement this security control"


def _number(value) -> float:
    if isinstance(value, bool):
        return 0.0
    if not isinstance(value, (int, float, str)):
        return 0.0
    try:
        parsed = float(value)
    except (OverflowError, ValueError):
        return 0.0
    return parsed if math.isfinite(parsed) else 0.0


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def find_profile(control_name: str, profiles: list) -> dict | None:
    """Match by controlName, then id, then title. First hit wins."""
    if not control_name:
        return None
    candidates = [p for p in profiles if isinstance(p, dict)]
    for key in ("controlName", "id", "title"):
        for profile in candidates:
            if profile.get(key) == control_name:
                return profile
    return None


def estimate_max_score(current_score: float, profile: dict | None) -> float:
    """
    Profile maxScore if stated; else estimate from rank; else from the
    current score, so every control ends up with a usable denominator.
    """
    if profile:
        stated = _number(profile.get("maxScore"))
        if stated > 0:
            return stated
        rank = _number(profile.get("rank"))
        if rank:
            return max(DEFAULT_MAX_SCORE, math.ceil(10 - rank / 10))
    estimate = current_score / 0.8
    if current_score > 0 and math.isfinite(estimate):
        return math.ceil(estimate)
    return DEFAULT_MAX_SCORE


def implementation_status(current_score, max_score) -> str:
    current, maximum = _number(current_score), _number(max_score)
    if not current or not maximum:
        return STATUS_NOT_IMPLEMENTED
    ratio = current / maximum
    if ratio >= IMPLEMENTED_RATIO:
        return STATUS_IMPLEMENTED
    if ratio >= PARTIAL_RATIO:
        return STATUS_PARTIAL
    return STATUS_NOT_IMPLEMENTED


def infer_action_type(control_name: str) -> str:
    name = (control_name or "").lower()
    for keywords, action_type in _ACTION_KEYWORDS:
        if any(k in name for k in keywords):
            return action_type
    return "Other"


def remediation_text(control_name: str, description: str | None = None) -> str:
    if not control_name:
        return UNNAMED_REMEDIATION
    name = control_name.lower()
    for keywords, text in _REMEDIATIONS:
        if any(k in name for k in keywords):
            return text
    return description or GENERIC_REMEDIATION


def enrich_control(control: dict, profiles: list) -> dict:
    control = control if isinstance(control, dict) else {}
    name = _text(control.get("controlName"))
    profile = find_profile(name, profiles) or {}
    current = _number(control.get("score"))
    max_score = estimate_max_score(current, profile)

    threats = profile.get("threats")
    rank = _number(profile.get("rank"))
    return {
        "controlName":          name or "Unknown Control",
        "title":                _text(profile.get("title")) or _text(profile.get("displayName")),
        "category":             _text(control.get("controlCategory")) or "General",
        "currentScore":         current,
        "maxScore":             max_score,
        "description":          (_text(profile.get("description"))
                                 or _text(control.get("description"))
                                 or "No description available"),
        "implementationStatus": implementation_status(current, max_score),
        "actionType":           _text(profile.get("actionType")) or infer_action_type(name),
        "remediation":          (_text(profile.get("remediationImpact"))
                                 or _text(profile.get("remediation"))
                                 or remediation_text(name, _text(control.get("description")))),
        "scoreGap":             max(0.0, max_score - current),
        "rank":                 int(rank) if rank else UNRANKED,
        "userImpact":           _text(profile.get("userImpact")) or "Medium",
        "implementationCost":   _text(profile.get("implementationCost")) or "Medium",
        "threats":              list(threats) if isinstance(threats, list) else [],
    }


def enrich(control_scores, profiles) -> list[dict]:
    """Enrich every raw control score with its profile, preserving input order."""
    profiles = profiles if isinstance(profiles, list) else []
    if not isinstance(control_scores, list):
        return []
    return [enrich_control(c, profiles) for c in control_scores]
