# npm_inspector/ai_analyzer.py
import os
import json
import logging
from datetime import datetime, timezone

from openai import OpenAI, APIError  # Import OpenAI library

from .errors import ErrorKind, InspectorError
from .models import NO_SUMMARY, SEVERITY_CRITICAL, SEVERITY_HIGH, SEVERITY_LOW, SEVERITY_MEDIUM, SEVERITY_UNKNOWN

logger = logging.getLogger(__name__)

# Any OpenAI-compatible endpoint works; set ai_base_url (e.g. OpenRouter) to go through a proxy
DEFAULT_MODEL = os.environ.get("NPM_INSPECTOR_MODEL", "gpt-4o")
DEFAULT_TIMEOUT = 30
MAX_TOKENS = 1000
TEMPERATURE = 0.7
API_KEY_PLACEHOLDER = "YOUR_OPENAI_API_KEY_HERE"

RISK_LEVELS = ("Low", "Medium", "High", "Critical")
MAINTENANCE_STATUSES = ("Active", "Stale", "Abandoned", "Unknown")
LICENSE_TYPES = ("Permissive", "Copyleft", "Proprietary", "Unknown")

SYSTEM_PROMPT = """You are a security analyst reviewing an npm package. Analyze the package data and vulnerabilities provided. Provide a plain-English risk assessment suitable for developers of all skill levels.

Your response must be in JSON format with the following structure:
{
  "riskLevel": "Low|Medium|High|Critical",
  "concerns": ["concern1", "concern2", ...],
  "recommendations": ["recommendation1", "recommendation2", ...],
  "complexityAssessment": "paragraph describing dependency complexity",
  "maintenanceStatus": "Active|Stale|Abandoned|Unknown",
  "licenseCompatibility": "Permissive|Copyleft|Proprietary|Unknown",
  "maintenanceNotes": "brief note about maintenance status and license implications"
}

- riskLevel must be one of: Low, Medium, High, Critical
- concerns must be an array of 2-5 key security concern strings
- recommendations must be an array of 2-5 actionable recommendation strings
- complexityAssessment must be a single paragraph describing dependency complexity
- maintenanceStatus: Active (updated within 1 year), Stale (1-2 years), Abandoned (>2 years), Unknown
- licenseCompatibility: Permissive (MIT/Apache/BSD), Copyleft (GPL/LGPL), Proprietary, Unknown
- maintenanceNotes: brief assessment of maintenance health and license implications

Consider open issues count as indicator of active maintenance."""


def get_api_key(config: dict) -> str | None:
    """
    Retrieves the OpenAI API key.
    Prioritizes environment variable OPENAI_API_KEY, then config file.
    """
    api_key = os.environ.get("OPENAI_API_KEY")
    if api_key:
        logger.info("Using OpenAI API key from OPENAI_API_KEY environment variable.")
        return api_key

    # Fallback to config file (less secure for keys)
    api_keys = (config or {}).get("api_keys") or {}
    api_key = api_keys.get("openai") if isinstance(api_keys, dict) else None
    if api_key and api_key != API_KEY_PLACEHOLDER:
        logger.info("Using OpenAI API key from config.yaml.")
        return api_key
    if api_key == API_KEY_PLACEHOLDER:
        logger.warning("Found placeholder OpenAI API key in config.yaml.")

    logger.warning("OpenAI API key not found in environment variables or config.yaml. AI summary will be skipped.")
    return None


def _days_since(iso_date: str, now: datetime) -> int | None:
    try:
        published = datetime.fromisoformat(iso_date.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if published.tzinfo is None:
        published = published.replace(tzinfo=timezone.utc)
    return (now - published).days


def build_user_prompt(package, vulnerabilities, now: datetime | None = None) -> str:
    """Plain-text digest of the package and its advisories for the user message."""
    now = now or datetime.now(timezone.utc)
    counts = {SEVERITY_CRITICAL: 0, SEVERITY_HIGH: 0, SEVERITY_MEDIUM: 0, SEVERITY_LOW: 0, SEVERITY_UNKNOWN: 0}
    for vuln in vulnerabilities:
        counts[vuln.severity if vuln.severity in counts else SEVERITY_UNKNOWN] += 1

    lines = [
        f"Package: {package.name} v{package.version}",
        f"Dependencies: {len(package.dependencies)} direct dependencies",
        f"Vulnerabilities: {counts[SEVERITY_CRITICAL]} Critical, {counts[SEVERITY_HIGH]} High, "
        f"{counts[SEVERITY_MEDIUM]} Medium, {counts[SEVERITY_LOW]} Low",
        "",
    ]
    if vulnerabilities:
        # vulnerabilities arrive sorted worst-first
        lines.append("Top Vulnerabilities:")
        for vuln in vulnerabilities[:5]:
            lines.append(f"- {vuln.id}: {vuln.summary or NO_SUMMARY}")
    else:
        lines.append("No known vulnerabilities found.")

    lines.append("")
    lines.append(f"License: {package.license or 'Unknown'}")

    if package.last_publish_date:
        days_ago = _days_since(package.last_publish_date, now)
        if days_ago is not None:
            lines.append(f"Last Published: {days_ago} days ago ({package.last_publish_date[:10]})")
            if days_ago > 730:
                lines.append("WARNING: Package has not been updated in over 2 years (potentially abandoned)")
            elif days_ago > 365:
                lines.append("WARNING: Package has not been updated in over 1 year")

    if package.github_stats is not None:
        lines.append(f"Open Issues: {package.github_stats.open_issues}")

    return "\n".join(lines)


def parse_summary(content: str) -> dict:
    """Decodes and validates the model's JSON answer. Raises InspectorError(AI_ERROR) on any violation."""
    try:
        parsed = json.loads(content)
    except (TypeError, json.JSONDecodeError) as e:
        raise InspectorError(ErrorKind.AI_ERROR, "Failed to parse AI response as JSON", cause=e)
    if not isinstance(parsed, dict):
        raise InspectorError(ErrorKind.AI_ERROR, "Invalid AI response: expected a JSON object")

    required = ("riskLevel", "concerns", "recommendations", "complexityAssessment")
    if any(not parsed.get(field) for field in required):
        raise InspectorError(ErrorKind.AI_ERROR, "Invalid AI response: missing required fields")
    if parsed["riskLevel"] not in RISK_LEVELS:
        raise InspectorError(ErrorKind.AI_ERROR, f"Invalid riskLevel: {parsed['riskLevel']}")
    for field in ("concerns", "recommendations"):
        if not isinstance(parsed[field], list) or not parsed[field]:
            raise InspectorError(ErrorKind.AI_ERROR, f"Invalid {field}: must be non-empty array")
    if not isinstance(parsed["complexityAssessment"], str) or not parsed["complexityAssessment"].strip():
        raise InspectorError(ErrorKind.AI_ERROR, "Invalid complexityAssessment: must be non-empty string")

    if parsed.get("maintenanceStatus") and parsed["maintenanceStatus"] not in MAINTENANCE_STATUSES:
        raise InspectorError(ErrorKind.AI_ERROR, f"Invalid maintenanceStatus: {parsed['maintenanceStatus']}")
    if parsed.get("licenseCompatibility") and parsed["licenseCompatibility"] not in LICENSE_TYPES:
        raise InspectorError(ErrorKind.AI_ERROR, f"Invalid licenseCompatibility: {parsed['licenseCompatibility']}")
    if parsed.get("maintenanceNotes") and not isinstance(parsed["maintenanceNotes"], str):
        raise InspectorError(ErrorKind.AI_ERROR, "Invalid maintenanceNotes: must be a string")
    return parsed


def generate_summary(package, vulnerabilities, api_key: str, model: str | None = None,
                     base_url: str | None = None, timeout: float = DEFAULT_TIMEOUT, client=None) -> dict:
    """
    Asks an OpenAI-compatible chat completion endpoint for a risk summary.
    Returns the validated summary dict; raises InspectorError(AI_ERROR) on failure.
    """
    if not api_key and client is None:
        raise InspectorError(ErrorKind.AI_ERROR, "AI summary skipped: OpenAI API key not available.")
    model = model or DEFAULT_MODEL
    client = client or OpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    logger.info(f"Sending request to AI API ({model}) for summary...")
    try:
        chat_completion = client.chat.completions.create(
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(package, vulnerabilities)},
            ],
            model=model,
            temperature=TEMPERATURE,
            max_tokens=MAX_TOKENS,
            response_format={"type": "json_object"},
        )
    except APIError as e:
        status = getattr(e, "status_code", None)
        logger.error(f"AI API returned an API Error: {status} {e}")
        raise InspectorError(ErrorKind.AI_ERROR, f"AI summary failed: API Error ({status or 'no response'})", status, e)

    if not chat_completion.choices or not chat_completion.choices[0].message:
        raise InspectorError(ErrorKind.AI_ERROR, "AI summary generation failed: unexpected response structure from API.")
    summary = parse_summary(chat_completion.choices[0].message.content)
    logger.info("Received summary from AI API.")
    return summary
