# npm_inspector/scanner.py
import logging
import time
from concurrent.futures import ThreadPoolExecutor

from cvss import CVSS2, CVSS3, CVSS4  # For parsing OSV CVSS vectors

from .errors import InspectorError
from .models import NO_DESCRIPTION, NO_SUMMARY, VulnerabilityRecord, classify_severity
from .osv_scanner import validate_dependencies

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 1000
DETAIL_CHUNK_SIZE = 10

# OSV severity types in order of preference, with the parser for each
CVSS_PARSERS = (
    ("CVSS_V3", CVSS3),
    ("CVSS_V4", CVSS4),
    ("CVSS_V2", CVSS2),
)


def parse_cvss_score(severity_list) -> float | None:
    """
    Base score of the preferred CVSS vector in an OSV `severity` array.
    CVSS v3 wins over v4, which wins over v2. Returns None when no vector is
    present or the chosen one cannot be parsed.
    """
    if not isinstance(severity_list, list) or not severity_list:
        return None
    for severity_type, parser in CVSS_PARSERS:
        entry = next(
            (s for s in severity_list if isinstance(s, dict) and s.get("type") == severity_type),
            None,
        )
        if entry is None:
            continue
        vector_string = entry.get("score")
        if not isinstance(vector_string, str) or not vector_string:
            return None
        try:
            return float(parser(vector_string).base_score)
        except Exception as e_cvss:
            logger.warning(f"Failed CVSS parse for vector '{vector_string}': {e_cvss}")
            return None
    return None


def cache_key_for(dependencies: dict) -> str:
    return "osv:" + ",".join(f"{name}@{dependencies[name]}" for name in sorted(dependencies))


def build_record(details: dict, package_name: str) -> VulnerabilityRecord:
    cvss_score = parse_cvss_score(details.get("severity") or [])
    aliases = details.get("aliases") if isinstance(details.get("aliases"), list) else []
    cve_id = next((alias for alias in aliases if isinstance(alias, str) and alias.startswith("CVE-")), None)
    summary_text = details.get("summary") or ""
    details_text = details.get("details") or ""
    return VulnerabilityRecord(
        package=package_name,
        id=details.get("id") or "Unknown",
        severity=classify_severity(cvss_score),
        cvss_score=cvss_score,
        cve_id=cve_id,
        summary=summary_text or NO_SUMMARY,
        details=details_text,
        description=summary_text or details_text or NO_DESCRIPTION,
        references=list(details.get("references") or []),
        published=details.get("published"),
        modified=details.get("modified"),
    )


class VulnerabilityScanner:
    """
    Correlates exact npm versions with OSV advisories.

    Queries are batched, advisory ids are fetched once each (in chunks of
    concurrent requests), records fan out to every package that matched, and
    the result is deduplicated by (package, id) and sorted worst-first.
    """

    def __init__(self, osv_client, cache=None, batch_size: int = MAX_BATCH_SIZE,
                 detail_concurrency: int = DETAIL_CHUNK_SIZE):
        self.osv_client = osv_client
        self.cache = cache
        self.batch_size = batch_size
        self.detail_concurrency = detail_concurrency

    def check_vulnerabilities(self, dependencies: dict) -> list[VulnerabilityRecord]:
        started = time.monotonic()
        validate_dependencies(dependencies)
        if not dependencies:
            logger.info("No dependencies to check")
            return []

        cache_key = cache_key_for(dependencies)
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info(f"Cache hit for dependencies. Found {len(cached)} vulnerabilities.")
                return [VulnerabilityRecord.from_dict(item) for item in cached]

        vuln_id_to_packages, failed_batches = self._query_advisory_ids(dependencies)
        if not vuln_id_to_packages:
            logger.info("OSV batch query returned no vulnerabilities.")
            if not failed_batches:
                self._store(cache_key, [])
            return []

        unique_ids = list(vuln_id_to_packages)
        logger.info(f"Found {len(unique_ids)} unique OSV IDs potentially affecting packages. Fetching details...")
        details_by_id = self._fetch_details(unique_ids)

        unique_findings = {}
        for vuln_id in unique_ids:
            details = details_by_id.get(vuln_id)
            if details is None:
                continue
            for package_name in vuln_id_to_packages[vuln_id]:
                record = build_record(details, package_name)
                if record.key not in unique_findings:
                    unique_findings[record.key] = record

        records = sorted(unique_findings.values(), key=VulnerabilityRecord.sort_key)
        # partial results are not cached
        if not failed_batches:
            self._store(cache_key, records)

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(f"OSV scan completed in {elapsed_ms:.0f} ms. Found {len(records)} unique vulnerabilities.")
        return records

    def _query_advisory_ids(self, dependencies: dict) -> dict:
        """
        Runs the batch queries. Returns (advisory id -> package names, number of
        failed batches); ids and names keep first-seen order. A failed batch is
        skipped, and the last error is raised only when every batch failed.
        """
        entries = list(dependencies.items())
        batches = [entries[i:i + self.batch_size] for i in range(0, len(entries), self.batch_size)]
        logger.info(f"Checking {len(entries)} dependencies in {len(batches)} batch(es)")

        vuln_id_to_packages = {}
        failed_batches = 0
        last_error = None
        for batch_index, batch in enumerate(batches, start=1):
            try:
                id_lists = self.osv_client.query_batch(dict(batch))
            except InspectorError as e:
                logger.warning(f"OSV query failed for batch {batch_index}/{len(batches)} ({len(batch)} packages): {e}")
                failed_batches += 1
                last_error = e
                continue
            if len(id_lists) != len(batch):
                logger.warning(f"Batch response length mismatch: expected {len(batch)}, got {len(id_lists)}")

            found = 0
            for (package_name, _), vuln_ids in zip(batch, id_lists):
                for vuln_id in vuln_ids:
                    packages = vuln_id_to_packages.setdefault(vuln_id, [])
                    if package_name not in packages:
                        packages.append(package_name)
                    found += 1
            logger.info(f"Found {found} potential vulnerabilities in batch {batch_index}/{len(batches)}")

        if failed_batches == len(batches):
            raise last_error
        if failed_batches:
            logger.warning(f"{failed_batches} of {len(batches)} OSV batches failed; results are partial.")
        return vuln_id_to_packages, failed_batches

    def _fetch_details(self, vuln_ids: list[str]) -> dict:
        details_by_id = {}
        fetch_errors = 0
        with ThreadPoolExecutor(max_workers=self.detail_concurrency) as executor:
            for i in range(0, len(vuln_ids), self.detail_concurrency):
                chunk = vuln_ids[i:i + self.detail_concurrency]
                # the whole chunk completes before the next one is submitted
                for vuln_id, details in zip(chunk, executor.map(self.osv_client.get_vuln_details, chunk)):
                    if details is None:
                        fetch_errors += 1
                        continue
                    details_by_id[vuln_id] = details
                logger.debug(f"Fetched {min(i + self.detail_concurrency, len(vuln_ids))}/{len(vuln_ids)} vulnerability details")
        if fetch_errors > 0:
            logger.warning(f"Failed detail fetch for {fetch_errors} OSV IDs.")
        return details_by_id

    def _store(self, cache_key: str, records: list[VulnerabilityRecord]):
        if self.cache is not None:
            self.cache.set(cache_key, [record.to_dict() for record in records])
