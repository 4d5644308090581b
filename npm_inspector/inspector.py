# npm_inspector/inspector.py
import logging
import time
from datetime import datetime, timezone

from .errors import ErrorKind, InspectorError
from .models import SEVERITY_RANK, SEVERITY_UNKNOWN
from .osv_scanner import OsvClient
from .registry_client import RegistryClient, validate_package_name
from .resolver import DependencyResolver
from .scanner import VulnerabilityScanner

logger = logging.getLogger(__name__)

SEVERITY_GROUPS = ("critical", "high", "medium", "low", "unknown")
TOP_VULNERABILITY_COUNT = 3


def group_by_severity(vulnerabilities) -> dict:
    """Buckets records by lower-cased severity, each bucket ordered by CVSS score (highest first)."""
    grouped = {severity: [] for severity in SEVERITY_GROUPS}
    for vuln in vulnerabilities:
        bucket = vuln.severity.lower() if vuln.severity in SEVERITY_RANK else SEVERITY_UNKNOWN.lower()
        grouped[bucket].append(vuln)
    for severity in SEVERITY_GROUPS:
        grouped[severity].sort(key=lambda v: -(v.cvss_score or 0.0))
    return grouped


def build_report(package, resolution, vulnerabilities, ai_summary, started: float) -> dict:
    grouped = group_by_severity(vulnerabilities)
    return {
        "packageInfo": {
            "name": package.name,
            "version": package.version,
            "description": package.description,
            "license": package.license,
            "repository": package.repository,
            "maintainers": list(package.maintainers),
        },
        "maintenanceInfo": {
            "lastPublishDate": package.last_publish_date,
            "githubStats": package.github_stats.to_dict() if package.github_stats else None,
            "maintenanceStatus": (ai_summary or {}).get("maintenanceStatus") or "Unknown",
            "maintenanceNotes": (ai_summary or {}).get("maintenanceNotes"),
            "licenseCompatibility": (ai_summary or {}).get("licenseCompatibility") or "Unknown",
        },
        "dependencyTree": {
            "direct": sorted(package.dependencies),
            "directCount": len(package.dependencies),
            "transitive": sorted(resolution.transitive),
            "transitiveCount": len(resolution.transitive),
            "total": len(resolution.all_dependencies),
            "skipped": sorted(resolution.skipped),
        },
        "vulnerabilities": [vuln.to_dict() for vuln in vulnerabilities],
        "vulnerabilitiesBySeverity": {
            severity: [vuln.to_dict() for vuln in grouped[severity]] for severity in SEVERITY_GROUPS
        },
        "topVulnerabilities": [vuln.to_dict() for vuln in vulnerabilities[:TOP_VULNERABILITY_COUNT]],
        "totalVulns": len(vulnerabilities),
        "criticalCount": len(grouped["critical"]),
        "highCount": len(grouped["high"]),
        "mediumCount": len(grouped["medium"]),
        "lowCount": len(grouped["low"]),
        "aiSummary": ai_summary,
        "metadata": {
            "analyzedAt": datetime.now(timezone.utc).isoformat(),
            "analysisTime": int((time.monotonic() - started) * 1000),
        },
    }


def inspect_package(package_name: str, registry=None, resolver=None, scanner=None, summarizer=None,
                    include_github_stats: bool = True) -> dict:
    """
    Runs one full analysis and returns the report dictionary.

    Only an invalid name or an unreachable root package is fatal. Dependency
    resolution degrades to a partial set, a failed vulnerability check to an
    empty list and a failed summary to None; each is logged as a warning.
    `summarizer` is a callable (package, vulnerabilities) -> dict, or None to skip.
    """
    logger.info(f"Starting analysis for: {package_name}")
    registry = registry or RegistryClient()
    resolver = resolver or DependencyResolver(registry)
    scanner = scanner or VulnerabilityScanner(OsvClient(timeout=registry.timeout))

    try:
        validate_package_name(package_name)
        started = time.monotonic()

        package = registry.fetch_package_data(package_name, include_github_stats=include_github_stats)
        logger.info(f"Found {len(package.dependencies)} direct dependencies for {package.name}@{package.version}")

        resolution = resolver.resolve(package.name, package.version, package.dependencies)
        all_dependencies = resolution.all_dependencies
        logger.info(f"Total dependencies to check: {len(all_dependencies)} (direct + transitive)")

        vulnerabilities = []
        if all_dependencies:
            try:
                vulnerabilities = scanner.check_vulnerabilities(all_dependencies)
            except InspectorError as e:
                logger.warning(f"Failed to check vulnerabilities for {package_name}: {e}")
                logger.warning("Continuing analysis without vulnerability data")
        else:
            logger.info("No dependencies to check for vulnerabilities")

        ai_summary = None
        if summarizer is not None:
            try:
                ai_summary = summarizer(package, vulnerabilities)
                logger.info(f"Generated AI summary for {package_name} - Risk level: {ai_summary.get('riskLevel')}")
            except InspectorError as e:
                logger.warning(f"Failed to generate AI summary for {package_name}: {e}")
                logger.warning("Continuing analysis without AI summary")

        report = build_report(package, resolution, vulnerabilities, ai_summary, started)
    except InspectorError:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error during analysis of {package_name}")
        raise InspectorError(ErrorKind.ANALYSIS_ERROR, "Failed to analyze package. Please try again.", cause=e)

    logger.info(
        f"Analyzed {package_name} in {report['metadata']['analysisTime']} ms: "
        f"{report['dependencyTree']['total']} dependencies, {report['totalVulns']} vulnerabilities"
    )
    return report
