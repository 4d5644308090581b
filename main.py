# main.py
import argparse
import functools
import html  # For HTML escaping
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import yaml  # For config file

from npm_inspector import ai_analyzer
from npm_inspector.cache import build_cache
from npm_inspector.errors import InspectorError
from npm_inspector.http_client import DEFAULT_TIMEOUT
from npm_inspector.inspector import inspect_package
from npm_inspector.osv_scanner import OsvClient
from npm_inspector.registry_client import RegistryClient
from npm_inspector.resolver import DependencyResolver
from npm_inspector.scanner import VulnerabilityScanner

logger = logging.getLogger("npm_inspector")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# --- Config File Handling ---
CONFIG_FILENAME = "config.yaml"


def load_config(config_path: str = CONFIG_FILENAME) -> dict:
    config = {}
    path = Path(config_path)
    if path.is_file():
        logger.info(f"Attempting to load configuration from '{path.resolve()}'...")
        try:
            with open(path, 'r', encoding='utf-8') as f:
                loaded_yaml = yaml.safe_load(f)
            if isinstance(loaded_yaml, dict):
                config = loaded_yaml
                logger.info(f"Successfully loaded configuration from {path.resolve()}")
            else:
                logger.warning(f"Config file '{path.resolve()}' does not contain a valid dictionary structure.")
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML configuration file '{path.resolve()}': {e}")
        except OSError as e:
            logger.error(f"Could not read configuration '{path.resolve()}': {e}")
    else:
        logger.debug(f"Configuration file '{config_path}' not found in current directory. Using defaults/CLI args.")
    return config


def setup_logging(verbose: bool = False):
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    # keep urllib3/openai chatter out of INFO output
    for noisy in ("urllib3", "httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# --- Filtering ---
SEVERITY_ORDER = {"UNKNOWN": 0, "LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}


def effective_ignore_ids(config: dict, cli_ignore: Optional[str]) -> set:
    # Config 'ignore_vulnerabilities' is expected to be a list
    config_ignored_list = config.get('ignore_vulnerabilities', [])
    if not isinstance(config_ignored_list, list):
        logger.warning(f"'ignore_vulnerabilities' in config is not a list, ignoring config ignores. Found: {type(config_ignored_list)}")
        config_ignored_list = []
    ignored = {str(v).strip().lower() for v in config_ignored_list}
    if cli_ignore:
        ignored |= {v.strip().lower() for v in cli_ignore.split(',') if v.strip()}
    return ignored


def filter_vulnerabilities(vulnerabilities: list[dict], severity_threshold: Optional[str], ignore_ids: set) -> list[dict]:
    """Applies the minimum-severity and ignore-list filters to report vulnerabilities (order preserved)."""
    filtered = list(vulnerabilities)
    if severity_threshold:
        threshold_str = severity_threshold.upper()
        if threshold_str not in SEVERITY_ORDER:
            logger.warning(f"Invalid severity threshold '{severity_threshold}'. Ignoring filter.")
        else:
            threshold_value = SEVERITY_ORDER[threshold_str]
            original_count = len(filtered)
            filtered = [v for v in filtered if SEVERITY_ORDER.get(str(v.get('severity')).upper(), 0) >= threshold_value]
            logger.info(f"Filtered {original_count - len(filtered)} vulnerabilities below {threshold_str}. Remaining: {len(filtered)}")

    if ignore_ids:
        original_count = len(filtered)
        filtered = [
            v for v in filtered
            if str(v.get('id')).lower() not in ignore_ids and str(v.get('cveId')).lower() not in ignore_ids
        ]
        logger.info(f"Ignored {original_count - len(filtered)} specified vulnerabilities. Remaining: {len(filtered)}")
    return filtered


# --- Reporting Functions ---
def format_text_report(report: dict, vulnerabilities: list[dict]) -> str:
    info = report['packageInfo']; tree = report['dependencyTree']; maintenance = report['maintenanceInfo']
    lines = ["", "--- Package Inspection Report (Text) ---"]
    lines.append(f"Package:      {info['name']}@{info['version']}")
    if info.get('description'):
        lines.append(f"Description:  {info['description']}")
    lines.append(f"License:      {info['license']} ({maintenance['licenseCompatibility']})")
    lines.append(f"Repository:   {info['repository'] or 'N/A'}")
    lines.append(f"Last publish: {maintenance['lastPublishDate'] or 'Unknown'}")
    if maintenance['githubStats']:
        lines.append(f"Open issues:  {maintenance['githubStats']['openIssues']}")
    lines.append(f"Maintenance:  {maintenance['maintenanceStatus']}")
    lines.append(f"Dependencies: {tree['directCount']} direct, {tree['transitiveCount']} transitive, {tree['total']} checked")
    if tree['skipped']:
        lines.append(f"Skipped:      {', '.join(tree['skipped'])} (no exact version could be resolved)")

    lines.append("")
    if not vulnerabilities:
        lines.append("No vulnerabilities found.")
    else:
        lines.append(f"Found {len(vulnerabilities)} vulnerabilities:")
        for vuln in vulnerabilities:
            score = vuln['cvssScore'] if vuln['cvssScore'] is not None else 'N/A'
            lines.append(f"  - Package:  {vuln['package']}")
            lines.append(f"    ID:       {vuln['id']}" + (f" ({vuln['cveId']})" if vuln['cveId'] else ""))
            lines.append(f"    Severity: {vuln['severity']} ({score})")
            lines.append(f"    Desc:     {vuln['description']}")
            lines.append("-" * 20)

    summary = report.get('aiSummary')
    if summary:
        lines.append("")
        lines.append(f"AI Risk Level: {summary['riskLevel']}")
        lines.append("Concerns:")
        lines.extend(f"  * {item}" for item in summary['concerns'])
        lines.append("Recommendations:")
        lines.extend(f"  * {item}" for item in summary['recommendations'])
        lines.append(f"Complexity: {summary['complexityAssessment']}")
        if summary.get('maintenanceNotes'):
            lines.append(f"Maintenance notes: {summary['maintenanceNotes']}")
    lines.append("--- End Report ---")
    return "\n".join(lines)


def format_json_report(report: dict, vulnerabilities: list[dict]) -> str:
    output_data = dict(report)
    output_data['vulnerabilities'] = vulnerabilities
    return json.dumps(output_data, indent=2)


HTML_CSS = """<style>
body { font-family: sans-serif; margin: 20px; background-color: #f4f7f6; color: #333; }
table { border-collapse: collapse; margin: 1em 0; width: 100%; box-shadow: 0 2px 8px rgba(0,0,0,0.1); background-color: #fff; }
th, td { border: 1px solid #ddd; padding: 10px 15px; text-align: left; vertical-align: top; }
th { background-color: #6c7ae0; color: white; font-weight: bold; text-transform: uppercase; letter-spacing: 0.05em; }
tr:nth-child(even) { background-color: #f9f9f9; }
caption { caption-side: top; font-size: 1.5em; font-weight: bold; margin-bottom: 15px; text-align: left; color: #444; }
.severity-CRITICAL { color: #FF0000; font-weight: bold; } .severity-HIGH { color: #FF8C00; font-weight: bold; }
.severity-MEDIUM { color: #DAA520; } .severity-LOW { color: #32CD32; } .severity-UNKNOWN { color: #808080; }
pre { white-space: pre-wrap; word-wrap: break-word; margin: 0; font-family: inherit; font-size: 0.95em; }
h1 { color: #333; border-bottom: 2px solid #6c7ae0; padding-bottom: 10px;}
p { line-height: 1.6; }
</style>"""


def format_html_report(report: dict, vulnerabilities: list[dict]) -> str:
    info = report['packageInfo']; tree = report['dependencyTree']; maintenance = report['maintenanceInfo']
    title = html.escape(f"{info['name']}@{info['version']}")
    html_content = f"""<!DOCTYPE html><html lang="en"><head><title>npm Inspector Report: {title}</title><meta charset="UTF-8">{HTML_CSS}</head><body><h1>npm Inspector Report: {title}</h1>"""
    html_content += (
        f"<p>License: {html.escape(info['license'])} ({html.escape(maintenance['licenseCompatibility'])})<br>"
        f"Maintenance: {html.escape(maintenance['maintenanceStatus'])}<br>"
        f"Dependencies: {tree['directCount']} direct, {tree['transitiveCount']} transitive, {tree['total']} checked</p>"
    )
    if not vulnerabilities:
        html_content += "<p>No vulnerabilities found.</p>"
    else:
        html_content += f"<p>Found {len(vulnerabilities)} vulnerabilities.</p><table><caption>Vulnerability Details</caption><thead><tr><th>Severity</th><th>Score</th><th>Vulnerability ID</th><th>CVE</th><th>Package</th><th>Description</th></tr></thead><tbody>\n"
        for vuln in vulnerabilities:
            severity_class = f"severity-{vuln['severity'].upper()}"
            score_str = str(vuln['cvssScore']) if vuln['cvssScore'] is not None else "N/A"
            html_content += (
                f"""<tr><td class="{severity_class}">{html.escape(vuln['severity'])}</td><td>{html.escape(score_str)}</td>"""
                f"""<td>{html.escape(vuln['id'])}</td><td>{html.escape(vuln['cveId'] or 'N/A')}</td>"""
                f"""<td>{html.escape(vuln['package'])}</td><td><pre>{html.escape(vuln['description'])}</pre></td></tr>\n"""
            )
        html_content += "</tbody></table>"

    summary = report.get('aiSummary')
    if summary:
        html_content += f"<h2>AI Risk Assessment: {html.escape(summary['riskLevel'])}</h2><ul>"
        html_content += "".join(f"<li>{html.escape(str(item))}</li>" for item in summary['concerns'])
        html_content += "</ul><h3>Recommendations</h3><ul>"
        html_content += "".join(f"<li>{html.escape(str(item))}</li>" for item in summary['recommendations'])
        html_content += f"</ul><p>{html.escape(summary['complexityAssessment'])}</p>"
    html_content += "\n</body></html>"
    return html_content


def write_report(content: str, output_filename: Optional[str]):
    if not output_filename:
        print(content)
        return
    path = Path(output_filename)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(content)
    print(f"Report saved to: {path.resolve()}")


def build_parser(config: dict) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="npm package security and maintenance inspector")
    parser.add_argument("package", type=str, help="npm package name to inspect (e.g. express or @babel/core).")

    network_group = parser.add_argument_group('Network Options')
    network_group.add_argument("--timeout", type=float, default=config.get('timeout', DEFAULT_TIMEOUT), help="Per-request timeout in seconds.")
    network_group.add_argument("--cache", type=str, choices=['memory', 'sqlite', 'none'], default=config.get('cache', 'memory'), help="Cache backend for registry and OSV responses.")
    network_group.add_argument("--no-github", action="store_true", help="Skip GitHub maintenance signals.")

    ai_group = parser.add_argument_group('AI Summary Options')
    ai_group.add_argument("--model", type=str, default=config.get('model', None), help="Chat model used for the AI summary.")
    ai_group.add_argument("--no-ai", action="store_true", help="Skip the AI summary.")

    output_group = parser.add_argument_group('Output and Filtering Options')
    output_group.add_argument("--format", type=str, choices=['text', 'json', 'html'], default=str(config.get('format', 'text')).lower(), help="Output format.")
    output_group.add_argument("-o", "--output-file", type=str, default=config.get('output_file', None), help="Path to save report output.")
    output_group.add_argument("--severity-threshold", type=str.upper, choices=list(SEVERITY_ORDER), default=config.get('severity_threshold', None), help="Minimum severity to report.")
    output_group.add_argument("--ignore", type=str, default=None, help="Comma-separated vulnerability IDs to ignore (e.g., CVE-2020-123,GHSA-abc-123).")
    output_group.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser


# --- Main Execution Logic ---
def main(argv: Optional[list[str]] = None) -> int:
    config = load_config()
    args = build_parser(config).parse_args(argv)
    setup_logging(args.verbose)

    cache = build_cache(args.cache)
    registry = RegistryClient(timeout=args.timeout, cache=cache)
    resolver = DependencyResolver(registry)
    scanner = VulnerabilityScanner(OsvClient(timeout=args.timeout), cache=cache)

    summarizer = None
    if not args.no_ai:
        api_key = ai_analyzer.get_api_key(config)
        if api_key:
            summarizer = functools.partial(
                ai_analyzer.generate_summary,
                api_key=api_key,
                model=args.model or os.environ.get("NPM_INSPECTOR_MODEL"),
                base_url=config.get('ai_base_url'),
                timeout=args.timeout,
            )

    try:
        report = inspect_package(
            args.package,
            registry=registry,
            resolver=resolver,
            scanner=scanner,
            summarizer=summarizer,
            include_github_stats=not args.no_github,
        )
    except InspectorError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        close = getattr(cache, "close", None)
        if close is not None:
            close()

    vulnerabilities = filter_vulnerabilities(
        report['vulnerabilities'], args.severity_threshold, effective_ignore_ids(config, args.ignore),
    )
    if args.format == 'json':
        content = format_json_report(report, vulnerabilities)
    elif args.format == 'html':
        content = format_html_report(report, vulnerabilities)
    else:
        content = format_text_report(report, vulnerabilities)

    try:
        write_report(content, args.output_file)
    except OSError as e:
        print(f"Error writing report to {args.output_file}: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
