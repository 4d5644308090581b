# npm_inspector/osv_scanner.py
import logging
import time
from urllib.parse import quote

import requests

from .errors import ErrorKind, InspectorError
from .http_client import DEFAULT_TIMEOUT, request_json
from .registry_client import NPM_NAME_PATTERN

logger = logging.getLogger(__name__)

OSV_API_URL = "https://api.osv.dev"
OSV_API_BATCH_URL = f"{OSV_API_URL}/v1/querybatch"
OSV_API_VULN_URL = f"{OSV_API_URL}/v1/vulns/"  # Note the trailing slash
OSV_ECOSYSTEM = "npm"
SERVICE_NAME = "OSV API"


def validate_dependencies(dependencies) -> bool:
    """
    Checks that `dependencies` maps valid npm package names to version strings.
    An empty mapping is valid. Raises InspectorError(VALIDATION_ERROR) otherwise.
    """
    if not isinstance(dependencies, dict):
        raise InspectorError(ErrorKind.VALIDATION_ERROR, "Dependencies must be a mapping of package name to version")
    for package_name, version in dependencies.items():
        if not package_name or not isinstance(package_name, str):
            raise InspectorError(ErrorKind.VALIDATION_ERROR, "Package name must be a non-empty string")
        if len(package_name) > 214:
            raise InspectorError(ErrorKind.VALIDATION_ERROR, f"Invalid package name '{package_name}'. Must be between 1 and 214 characters.")
        if not NPM_NAME_PATTERN.match(package_name):
            raise InspectorError(
                ErrorKind.VALIDATION_ERROR,
                f"Invalid package name '{package_name}'. Use lowercase letters, numbers, hyphens, underscores, dots, and optionally a @scope/ prefix.",
            )
        if not isinstance(version, str):
            raise InspectorError(ErrorKind.VALIDATION_ERROR, f"Version for package '{package_name}' must be a string")
    return True


def build_batch_query(dependencies: dict) -> dict:
    return {
        "queries": [
            {"package": {"name": package_name, "ecosystem": OSV_ECOSYSTEM}, "version": version}
            for package_name, version in dependencies.items()
        ]
    }


class OsvClient:
    """Thin client for the two OSV endpoints the scanner needs."""

    def __init__(self, session=None, timeout: float = DEFAULT_TIMEOUT, sleep=time.sleep):
        self.session = session or requests.Session()
        self.timeout = timeout
        self._sleep = sleep

    def query_batch(self, dependencies: dict) -> list[list[str]]:
        """
        Queries the OSV batch endpoint for exact npm versions.
        Returns one list of advisory ids per query, in query order. Terminal
        failures raise InspectorError.
        """
        logger.info(f"Querying OSV API for {len(dependencies)} npm packages...")
        data = request_json(
            self.session, "POST", OSV_API_BATCH_URL,
            service=SERVICE_NAME, context="querybatch", timeout=self.timeout,
            json_body=build_batch_query(dependencies), sleep=self._sleep,
        )
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise InspectorError(ErrorKind.VALIDATION_ERROR, "Invalid OSV API response: missing results array")

        id_lists = []
        for result in results:
            vulns = result.get("vulns") if isinstance(result, dict) else None
            if not isinstance(vulns, list):
                id_lists.append([])
                continue
            id_lists.append([entry["id"] for entry in vulns if isinstance(entry, dict) and entry.get("id")])
        return id_lists

    def get_vuln_details(self, vuln_id: str) -> dict | None:
        """
        Fetches the full OSV record for one advisory id.
        Returns None (after logging) when the record cannot be fetched.
        """
        if not vuln_id:
            return None
        try:
            details = request_json(
                self.session, "GET", OSV_API_VULN_URL + quote(vuln_id, safe=""),
                service=SERVICE_NAME, context=vuln_id, timeout=self.timeout, sleep=self._sleep,
            )
        except InspectorError as e:
            logger.warning(f"Failed to fetch details for {vuln_id}: {e.kind} {e.message}")
            return None
        if not isinstance(details, dict):
            logger.warning(f"Discarding malformed OSV record for {vuln_id}")
            return None
        return details
